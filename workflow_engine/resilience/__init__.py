"""
Resilience subsystem: retry with backoff, per-capability circuit breakers,
and the policy that combines them around executor calls
"""

from .retry import RetryPolicy
from .circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry, CircuitBreakerState, CircuitState
from .policy import CallOutcome, ResiliencePolicy

__all__ = [
    'RetryPolicy',
    'CircuitBreakerConfig',
    'CircuitBreakerRegistry',
    'CircuitBreakerState',
    'CircuitState',
    'CallOutcome',
    'ResiliencePolicy',
]
