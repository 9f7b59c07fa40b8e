# tests/conftest.py
"""
Pytest configuration and shared fixtures for workflow engine tests.
"""

import os
import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from workflow_engine.cache.tiers import TieredCache
from workflow_engine.registry import ExecutorRegistry
from workflow_engine.resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from workflow_engine.resilience.retry import RetryPolicy
from workflow_engine.runtime.services import EngineServices


class FakeClock:
    """Manually advanced clock for TTL and cooldown tests"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy with negligible backoff"""
    return RetryPolicy(max_retries=3, base_delay_s=0.001, max_delay_s=0.01, jitter=0.0)


@pytest.fixture
def registry() -> ExecutorRegistry:
    return ExecutorRegistry()


@pytest.fixture
def services(registry, fast_retry) -> EngineServices:
    """Isolated engine services: fresh cache, breakers and registry per test"""
    return EngineServices(
        registry=registry,
        cache=TieredCache.create(),
        breakers=CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=5, cooldown_s=30.0)),
        retry_policy=fast_retry,
        concurrency_limit=4,
    )


@pytest.fixture(autouse=True)
def test_env(monkeypatch):
    """Keep engine configuration independent of the developer's environment"""
    monkeypatch.setenv("APP_ENV", "test")
    for name in list(os.environ):
        if name.startswith("ENGINE_"):
            monkeypatch.delenv(name, raising=False)
