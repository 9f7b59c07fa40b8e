"""
Memoization layer: fingerprints and the two-tier cache
"""

from .fingerprint import canonical_json, compute_fingerprint
from .tiers import MISS, CacheEntry, CacheStats, MemoryCacheTier, TieredCache

__all__ = ['canonical_json', 'compute_fingerprint', 'MISS', 'CacheEntry', 'CacheStats', 'MemoryCacheTier', 'TieredCache']
