"""
Per-step retry policy with jittered exponential backoff
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..errors import ErrorClass


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for steps"""
    max_retries: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("retry delays must be >= 0")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def get_delay(self, retry_index: int, rng: Optional[random.Random] = None) -> float:
        """
        Delay before retry number ``retry_index`` (0 for the first retry).

        ``base * exponential_base ** retry_index``, capped at ``max_delay_s``,
        then jittered by +/- ``jitter`` of its value.
        """
        delay = min(self.base_delay_s * (self.exponential_base ** retry_index), self.max_delay_s)
        if self.jitter and delay > 0:
            spread = (rng or random).uniform(-self.jitter, self.jitter)
            delay = delay * (1 + spread)
        return max(0.0, delay)

    def should_retry(self, error_class: ErrorClass, attempt: int) -> bool:
        """Whether a failure on ``attempt`` (1-based) gets another try."""
        return error_class == ErrorClass.TRANSIENT and attempt < self.max_attempts

    def merged(self, overrides: Optional[Dict[str, Any]]) -> RetryPolicy:
        """Copy of this policy with per-step overrides applied."""
        if not overrides:
            return self
        values = {
            "max_retries": self.max_retries,
            "base_delay_s": self.base_delay_s,
            "max_delay_s": self.max_delay_s,
            "exponential_base": self.exponential_base,
            "jitter": self.jitter,
        }
        unknown = set(overrides) - set(values)
        if unknown:
            raise ValueError(f"Unknown retry settings: {sorted(unknown)}")
        values.update(overrides)
        return RetryPolicy(**values)
