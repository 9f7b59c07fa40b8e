# workflow_engine/runtime/services.py
"""
Process-wide engine services shared by every run: executor registry, cache,
circuit breakers, resilience policy and batch aggregator.

EngineServices is reference counted. The first ``init`` loads persisted cache
and breaker snapshots (when paths are configured); the last ``shutdown``
flushes pending batches and writes the snapshots back.
"""

import asyncio
import random
from pathlib import Path
from typing import Dict, Optional

from ..batch import BatchAggregator, BatchConfig
from ..cache.tiers import TieredCache
from ..config import EngineConfig, get_engine_config
from ..engine_logging import get_logger
from ..registry import ExecutorRegistry
from ..resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from ..resilience.policy import ResiliencePolicy
from ..resilience.retry import RetryPolicy

logger = get_logger(__name__)


class EngineServices:
    """Shared state for all runs of one process"""

    def __init__(
        self,
        registry: Optional[ExecutorRegistry] = None,
        cache: Optional[TieredCache] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        batch_config: Optional[BatchConfig] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        breaker_path: Optional[Path] = None,
        concurrency_limit: int = 8,
        max_recursion_depth: int = 10,
        state_path: Optional[Path] = None,
        rng: Optional[random.Random] = None,
    ):
        self.registry = registry or ExecutorRegistry()
        self.cache = cache or TieredCache.create()
        self.breakers = breakers or CircuitBreakerRegistry(breaker_config)
        self.policy = ResiliencePolicy(self.breakers, retry_policy, rng)
        self.batcher = BatchAggregator(self.registry, batch_config)
        self.breaker_path = Path(breaker_path) if breaker_path else None
        self.concurrency_limit = concurrency_limit
        self.max_recursion_depth = max_recursion_depth
        self.state_path = Path(state_path) if state_path else None

        # fingerprint -> future of the dispatch computing it
        self.inflight: Dict[str, asyncio.Future] = {}
        self._refs = 0

    @classmethod
    def from_config(cls, config: Optional[EngineConfig] = None, registry: Optional[ExecutorRegistry] = None) -> "EngineServices":
        """Build services from an EngineConfig (the global one by default)."""
        config = config or get_engine_config()
        return cls(
            registry=registry,
            cache=config.build_cache(),
            retry_policy=config.retry_policy(),
            batch_config=config.batch_config(),
            breaker_config=config.breaker_config(),
            breaker_path=config.breaker_persist_path,
            concurrency_limit=config.concurrency_limit,
            max_recursion_depth=config.max_recursion_depth,
            state_path=config.state_path,
        )

    @property
    def active(self) -> bool:
        return self._refs > 0

    async def init(self) -> "EngineServices":
        self._refs += 1
        if self._refs == 1:
            loaded_cache = self.cache.load()
            loaded_breakers = self.breakers.load(self.breaker_path) if self.breaker_path else 0
            logger.info(f"Engine services started ({loaded_cache} cache entries, {loaded_breakers} breakers restored)")
        return self

    async def shutdown(self) -> None:
        if self._refs == 0:
            return
        self._refs -= 1
        if self._refs > 0:
            return

        await self.batcher.close()
        saved_cache = self.cache.save()
        saved_breakers = self.breakers.save(self.breaker_path) if self.breaker_path else 0
        logger.info(f"Engine services stopped ({saved_cache} cache entries, {saved_breakers} breakers persisted)")

    async def __aenter__(self) -> "EngineServices":
        return await self.init()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()


# Global services instance
_services: Optional[EngineServices] = None


def get_services() -> EngineServices:
    """Get global engine services instance"""
    global _services
    if _services is None:
        _services = EngineServices.from_config()
    return _services


def reset_services() -> None:
    global _services
    _services = None
