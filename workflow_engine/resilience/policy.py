"""
Resilience policy applied around every executor call: circuit breaker
admission, per-attempt timeout, and retry with backoff for transient failures.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..cancellation import CancellationToken
from ..engine_logging import get_logger
from ..errors import CircuitOpenError, ErrorClass, RunCancelledError, StepTimeoutError, classify_error
from .circuit_breaker import CircuitBreakerRegistry
from .retry import RetryPolicy

logger = get_logger(__name__)


@dataclass
class CallOutcome:
    """Result of a call made under the resilience policy"""
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    dispatched: int = 0

    @property
    def error_class(self) -> Optional[ErrorClass]:
        return classify_error(self.error) if self.error is not None else None


class ResiliencePolicy:
    """
    Wraps a single unit of work in breaker + timeout + retry.

    An OPEN breaker rejects an attempt without dispatch; the rejection still
    uses up one attempt so a step facing an open circuit finishes quickly.
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        default_retry: Optional[RetryPolicy] = None,
        rng: Optional[random.Random] = None,
    ):
        self.breakers = breakers
        self.default_retry = default_retry or RetryPolicy()
        self.rng = rng or random.Random()

    async def call(
        self,
        capability: str,
        invoke: Callable[[], Awaitable[Any]],
        *,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_s: Optional[float] = None,
        token: Optional[CancellationToken] = None,
        step_id: Optional[str] = None,
    ) -> CallOutcome:
        """
        Run ``invoke`` until it succeeds, fails non-transiently, or the retry
        budget is exhausted.

        Args:
            capability: Capability whose breaker guards the call
            invoke: Zero-argument coroutine factory performing one attempt
            retry_policy: Step override; defaults to the policy default
            timeout_s: Wall-clock limit per attempt
            token: Run cancellation token, checked before each attempt and
                during backoff
            step_id: For log records only

        Returns:
            CallOutcome with the value or the last error and attempt count
        """
        policy = retry_policy or self.default_retry
        label = step_id or capability
        outcome = CallOutcome(ok=False)

        for attempt in range(1, policy.max_attempts + 1):
            if token is not None and token.cancelled:
                outcome.error = RunCancelledError(f"Run cancelled before attempt {attempt} of {label}")
                return outcome

            outcome.attempts = attempt
            error = await self._attempt(capability, invoke, timeout_s, outcome)
            if error is None:
                outcome.ok = True
                outcome.error = None
                return outcome

            outcome.error = error
            if isinstance(error, RunCancelledError):
                return outcome
            error_class = classify_error(error)

            if not policy.should_retry(error_class, attempt):
                if error_class == ErrorClass.TRANSIENT:
                    logger.error(
                        f"{label} failed after {attempt} attempts: {error}",
                        extra={'step_id': step_id, 'capability': capability, 'attempt': attempt}
                    )
                else:
                    logger.error(
                        f"{label} failed with {error_class.value} error: {error}",
                        extra={'step_id': step_id, 'capability': capability, 'attempt': attempt}
                    )
                return outcome

            # open-circuit rejections retry without backoff
            delay = 0.0 if isinstance(error, CircuitOpenError) else policy.get_delay(attempt - 1, self.rng)
            logger.warning(
                f"{label} attempt {attempt} failed ({type(error).__name__}: {error}), retrying in {delay:.2f}s",
                extra={'step_id': step_id, 'capability': capability, 'attempt': attempt}
            )

            try:
                if token is not None:
                    await token.sleep(delay)
                else:
                    await asyncio.sleep(delay)
            except RunCancelledError as cancelled:
                outcome.error = cancelled
                return outcome

        return outcome

    async def _attempt(
        self,
        capability: str,
        invoke: Callable[[], Awaitable[Any]],
        timeout_s: Optional[float],
        outcome: CallOutcome,
    ) -> Optional[BaseException]:
        try:
            self.breakers.acquire(capability)
        except CircuitOpenError as rejected:
            return rejected

        outcome.dispatched += 1
        try:
            if timeout_s:
                value = await asyncio.wait_for(invoke(), timeout=timeout_s)
            else:
                value = await invoke()
        except asyncio.TimeoutError:
            self.breakers.record_failure(capability)
            return StepTimeoutError(f"{capability} exceeded {timeout_s}s timeout", capability=capability)
        except asyncio.CancelledError:
            self.breakers.release(capability)
            raise
        except RunCancelledError as cancelled:
            self.breakers.release(capability)
            return cancelled
        except Exception as error:
            if classify_error(error) == ErrorClass.TRANSIENT:
                self.breakers.record_failure(capability)
            else:
                self.breakers.release(capability, failed=True)
            return error

        self.breakers.record_success(capability)
        outcome.value = value
        return None
