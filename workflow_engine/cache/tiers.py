"""
Two-tier memoization cache.

An in-process tier (small bound, short TTL) sits in front of a shared tier
(larger bound, longer TTL). Hits in the shared tier are promoted to the local
tier; writes go to both. Both tiers evict by TTL and by least-recently-used
order, and are safe for concurrent readers and writers: every operation holds
the tier lock, and values are copied in and out so no caller ever observes a
half-written entry.
"""

from __future__ import annotations

import copy
import json
import time
from collections import OrderedDict
from dataclasses import dataclass, asdict
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from .._version import ENGINE_VERSION
from ..engine_logging import get_logger

logger = get_logger(__name__)


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


@dataclass
class CacheEntry:
    """A cached value with its freshness window"""
    fingerprint: str
    value: Any
    created_at: float
    ttl: Optional[float]
    engine_version: str = ENGINE_VERSION
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return self.ttl is not None and (now - self.created_at) > self.ttl

    def remaining_ttl(self, now: float) -> Optional[float]:
        if self.ttl is None:
            return None
        return max(0.0, self.ttl - (now - self.created_at))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CacheEntry:
        return cls(**data)


@dataclass
class CacheStats:
    """Snapshot of cache effectiveness"""
    hits: int
    local_hits: int
    shared_hits: int
    misses: int
    bypassed: int
    evictions: int
    local_size: int
    shared_size: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class MemoryCacheTier:
    """Bounded LRU map of fingerprint -> CacheEntry with TTL expiry."""

    def __init__(self, name: str, max_entries: int, default_ttl: Optional[float], clock: Callable[[], float] = time.time):
        if max_entries < 1:
            raise ValueError(f"Cache tier {name} needs max_entries >= 1")
        self.name = name
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = Lock()
        self.evictions = 0

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None

            if entry.is_expired(self._clock()):
                del self._entries[fingerprint]
                self.evictions += 1
                return None

            entry.hit_count += 1
            self._entries.move_to_end(fingerprint)
            return copy.deepcopy(entry)

    def put(self, entry: CacheEntry) -> None:
        entry = copy.deepcopy(entry)
        with self._lock:
            self._entries[entry.fingerprint] = entry
            self._entries.move_to_end(entry.fingerprint)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug(f"Evicted {evicted[:12]} from {self.name} tier (LRU)")

    def delete(self, fingerprint: str) -> bool:
        with self._lock:
            return self._entries.pop(fingerprint, None) is not None

    def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            return removed

    def cleanup_expired(self) -> int:
        """
        Remove all expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [fp for fp, entry in self._entries.items() if entry.is_expired(now)]
            for fingerprint in expired:
                del self._entries[fingerprint]
            self.evictions += len(expired)
            return len(expired)

    def snapshot(self) -> List[CacheEntry]:
        with self._lock:
            return [copy.deepcopy(entry) for entry in self._entries.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, fingerprint: object) -> bool:
        with self._lock:
            return fingerprint in self._entries


class TieredCache:
    """
    Local tier backed by a shared tier.

    ``get`` checks local then shared (promoting shared hits), ``put`` writes
    both. The local copy never outlives the local tier's TTL.
    """

    def __init__(
        self,
        local: MemoryCacheTier,
        shared: MemoryCacheTier,
        engine_version: str = ENGINE_VERSION,
        persist_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.local = local
        self.shared = shared
        self.engine_version = engine_version
        self.persist_path = Path(persist_path) if persist_path else None
        self._clock = clock
        self._lock = Lock()
        self._metrics = {
            "local_hits": 0,
            "shared_hits": 0,
            "misses": 0,
            "bypassed": 0,
        }

    @classmethod
    def create(
        cls,
        local_max_entries: int = 256,
        local_ttl: Optional[float] = 60.0,
        shared_max_entries: int = 4096,
        shared_ttl: Optional[float] = 3600.0,
        persist_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ) -> TieredCache:
        return cls(
            local=MemoryCacheTier("local", local_max_entries, local_ttl, clock=clock),
            shared=MemoryCacheTier("shared", shared_max_entries, shared_ttl, clock=clock),
            persist_path=persist_path,
            clock=clock,
        )

    def _count(self, metric: str) -> None:
        with self._lock:
            self._metrics[metric] += 1

    def get(self, fingerprint: str, bypass: bool = False) -> Any:
        """
        Look up a fingerprint.

        Args:
            fingerprint: Fingerprint from ``compute_fingerprint``
            bypass: Force a miss without touching either tier

        Returns:
            The cached value, or MISS
        """
        if bypass:
            self._count("bypassed")
            return MISS

        entry = self.local.get(fingerprint)
        if entry is not None and entry.engine_version == self.engine_version:
            self._count("local_hits")
            logger.debug(f"Local cache hit for {fingerprint[:12]}")
            return entry.value

        entry = self.shared.get(fingerprint)
        if entry is not None and entry.engine_version == self.engine_version:
            self._count("shared_hits")
            self.local.put(self._local_copy(entry))
            logger.debug(f"Shared cache hit for {fingerprint[:12]}, promoted to local tier")
            return entry.value

        self._count("misses")
        logger.debug(f"Cache miss for {fingerprint[:12]}")
        return MISS

    def _local_copy(self, entry: CacheEntry) -> CacheEntry:
        now = self._clock()
        remaining = entry.remaining_ttl(now)
        local_ttl = self.local.default_ttl
        if remaining is None:
            ttl = local_ttl
        elif local_ttl is None:
            ttl = remaining
        else:
            ttl = min(remaining, local_ttl)
        return CacheEntry(
            fingerprint=entry.fingerprint,
            value=entry.value,
            created_at=now,
            ttl=ttl,
            engine_version=entry.engine_version,
        )

    def put(self, fingerprint: str, value: Any, ttl: Optional[float] = None) -> None:
        """
        Store a value in both tiers.

        Args:
            fingerprint: Fingerprint of the unit of work
            value: Value to cache (copied)
            ttl: Capability-specific TTL; defaults to each tier's TTL. The
                local tier never keeps an entry longer than its own TTL.
        """
        now = self._clock()
        shared_ttl = ttl if ttl is not None else self.shared.default_ttl
        self.shared.put(CacheEntry(fingerprint, value, now, shared_ttl, self.engine_version))

        local_ttl = self.local.default_ttl
        if ttl is not None:
            local_ttl = ttl if local_ttl is None else min(ttl, local_ttl)
        self.local.put(CacheEntry(fingerprint, value, now, local_ttl, self.engine_version))

    def invalidate(self, fingerprint: str) -> bool:
        removed_local = self.local.delete(fingerprint)
        removed_shared = self.shared.delete(fingerprint)
        return removed_local or removed_shared

    def clear(self) -> int:
        removed = self.local.clear() + self.shared.clear()
        logger.info(f"Cleared {removed} cache entries")
        return removed

    def cleanup_expired(self) -> int:
        return self.local.cleanup_expired() + self.shared.cleanup_expired()

    def get_metrics(self) -> CacheStats:
        with self._lock:
            metrics = dict(self._metrics)
        return CacheStats(
            hits=metrics["local_hits"] + metrics["shared_hits"],
            local_hits=metrics["local_hits"],
            shared_hits=metrics["shared_hits"],
            misses=metrics["misses"],
            bypassed=metrics["bypassed"],
            evictions=self.local.evictions + self.shared.evictions,
            local_size=len(self.local),
            shared_size=len(self.shared),
        )

    def save(self, path: Optional[Path] = None) -> int:
        """
        Persist the shared tier as a JSON snapshot.

        Entries whose values are not JSON serializable are skipped.

        Returns:
            Number of entries written
        """
        target = Path(path) if path else self.persist_path
        if target is None:
            return 0

        now = self._clock()
        entries = []
        for entry in self.shared.snapshot():
            if entry.is_expired(now):
                continue
            try:
                json.dumps(entry.value)
            except (TypeError, ValueError):
                logger.debug(f"Skipping non-serializable cache entry {entry.fingerprint[:12]}")
                continue
            entries.append(entry.to_dict())

        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, 'w', encoding='utf-8') as f:
            json.dump({"engine_version": self.engine_version, "entries": entries}, f, indent=2)

        logger.info(f"Persisted {len(entries)} cache entries to {target}")
        return len(entries)

    def load(self, path: Optional[Path] = None) -> int:
        """
        Load a snapshot written by ``save`` into the shared tier.

        Snapshots from another engine version are ignored entirely.

        Returns:
            Number of entries loaded
        """
        source = Path(path) if path else self.persist_path
        if source is None or not source.exists():
            return 0

        try:
            with open(source, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read cache snapshot {source}: {e}")
            return 0

        if data.get("engine_version") != self.engine_version:
            logger.info(
                f"Ignoring cache snapshot {source}: engine version {data.get('engine_version')} != {self.engine_version}"
            )
            return 0

        now = self._clock()
        loaded = 0
        for raw in data.get("entries", []):
            entry = CacheEntry.from_dict(raw)
            if entry.engine_version != self.engine_version or entry.is_expired(now):
                continue
            self.shared.put(entry)
            loaded += 1

        logger.info(f"Loaded {loaded} cache entries from {source}")
        return loaded
