# tests/unit/test_cache.py
"""
Unit tests for fingerprints and the two-tier cache
"""

import json
from collections import OrderedDict

import pytest

from workflow_engine.cache import MISS, MemoryCacheTier, TieredCache, canonical_json, compute_fingerprint
from workflow_engine.cache.tiers import CacheEntry


class TestFingerprint:
    """Test canonical encoding and fingerprint stability"""

    def test_key_order_does_not_matter(self):
        a = compute_fingerprint("analysis", {"x": 1, "y": [1, 2]})
        b = compute_fingerprint("analysis", OrderedDict([("y", [1, 2]), ("x", 1)]))
        assert a == b

    def test_tuples_and_lists_are_equal(self):
        assert canonical_json({"items": (1, 2)}) == canonical_json({"items": [1, 2]})

    def test_integer_floats_match_ints(self):
        assert compute_fingerprint("cap", {"n": 1.0}) == compute_fingerprint("cap", {"n": 1})

    def test_sets_are_sorted(self):
        assert canonical_json({"tags": {"b", "a"}}) == '{"tags":["a","b"]}'

    def test_capability_context_and_version_are_part_of_fingerprint(self):
        base = compute_fingerprint("cap", {"n": 1})

        assert compute_fingerprint("other", {"n": 1}) != base
        assert compute_fingerprint("cap", {"n": 1}, {"locale": "en"}) != base
        assert compute_fingerprint("cap", {"n": 1}, engine_version="engine-next") != base

    def test_fingerprint_is_sha256_hex(self):
        fingerprint = compute_fingerprint("cap", {})
        assert len(fingerprint) == 64
        int(fingerprint, 16)


class TestMemoryCacheTier:
    """Test TTL and LRU eviction"""

    def test_ttl_expiry(self, clock):
        tier = MemoryCacheTier("local", max_entries=4, default_ttl=10, clock=clock)
        tier.put(CacheEntry("fp", "value", clock(), ttl=10))

        clock.advance(5)
        assert tier.get("fp").value == "value"

        clock.advance(6)
        assert tier.get("fp") is None
        assert tier.evictions == 1

    def test_lru_eviction(self, clock):
        tier = MemoryCacheTier("local", max_entries=2, default_ttl=None, clock=clock)
        tier.put(CacheEntry("a", 1, clock(), None))
        tier.put(CacheEntry("b", 2, clock(), None))

        tier.get("a")
        tier.put(CacheEntry("c", 3, clock(), None))

        assert "a" in tier
        assert "b" not in tier
        assert "c" in tier
        assert len(tier) == 2

    def test_values_are_copied(self, clock):
        tier = MemoryCacheTier("local", max_entries=2, default_ttl=None, clock=clock)
        value = {"items": [1]}
        tier.put(CacheEntry("fp", value, clock(), None))

        value["items"].append(2)
        fetched = tier.get("fp")
        fetched.value["items"].append(3)

        assert tier.get("fp").value == {"items": [1]}

    def test_cleanup_expired(self, clock):
        tier = MemoryCacheTier("shared", max_entries=10, default_ttl=5, clock=clock)
        tier.put(CacheEntry("old", 1, clock(), ttl=5))
        tier.put(CacheEntry("forever", 2, clock(), ttl=None))

        clock.advance(6)

        assert tier.cleanup_expired() == 1
        assert "forever" in tier

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            MemoryCacheTier("bad", max_entries=0, default_ttl=None)


class TestTieredCache:
    """Test two-tier lookups, promotion and persistence"""

    @pytest.fixture
    def cache(self, clock):
        return TieredCache.create(local_max_entries=2, local_ttl=10, shared_max_entries=10, shared_ttl=100, clock=clock)

    def test_miss_then_hit(self, cache):
        assert cache.get("fp") is MISS

        cache.put("fp", {"output": 1})

        assert cache.get("fp") == {"output": 1}
        stats = cache.get_metrics()
        assert stats.misses == 1
        assert stats.local_hits == 1
        assert stats.hit_rate == 0.5

    def test_shared_hit_is_promoted(self, cache, clock):
        cache.put("fp", "value")

        clock.advance(20)
        assert cache.local.get("fp") is None

        assert cache.get("fp") == "value"
        assert cache.get_metrics().shared_hits == 1
        assert cache.local.get("fp") is not None

    def test_local_ttl_never_exceeds_tier_ttl(self, cache, clock):
        cache.put("fp", "value", ttl=1000)

        clock.advance(50)

        assert cache.local.get("fp") is None
        assert cache.get("fp") == "value"

    def test_capability_ttl_shorter_than_tiers(self, cache, clock):
        cache.put("fp", "value", ttl=2)

        clock.advance(3)

        assert cache.get("fp") is MISS

    def test_bypass_forces_miss(self, cache):
        cache.put("fp", "value")

        assert cache.get("fp", bypass=True) is MISS
        assert cache.get_metrics().bypassed == 1

    def test_invalidate(self, cache):
        cache.put("fp", "value")
        assert cache.invalidate("fp") is True
        assert cache.get("fp") is MISS

    def test_other_engine_version_never_served(self, clock):
        cache = TieredCache.create(clock=clock)
        cache.shared.put(CacheEntry("fp", "stale", clock(), ttl=None, engine_version="engine-0.1"))

        assert cache.get("fp") is MISS

    def test_save_and_load_round_trip(self, cache, clock, tmp_path):
        path = tmp_path / "cache.json"
        cache.put("keep", {"output": [1, 2]})
        cache.put("skip", object())

        assert cache.save(path) == 1

        restored = TieredCache.create(clock=clock)
        assert restored.load(path) == 1
        assert restored.get("keep") == {"output": [1, 2]}

    def test_load_ignores_other_engine_version(self, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text(json.dumps({"engine_version": "engine-0.1", "entries": [
            {"fingerprint": "fp", "value": 1, "created_at": 0, "ttl": None, "engine_version": "engine-0.1", "hit_count": 0}
        ]}))

        cache = TieredCache.create()

        assert cache.load(path) == 0
        assert cache.get("fp") is MISS

    def test_load_missing_file(self, tmp_path):
        assert TieredCache.create().load(tmp_path / "missing.json") == 0
