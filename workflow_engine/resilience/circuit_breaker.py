"""
Per-capability circuit breakers.

Each capability has its own breaker so that a failing worker type does not
affect dispatch to the others:

    CLOSED --N consecutive transient failures--> OPEN
    OPEN --cooldown elapsed--> HALF_OPEN (exactly one probe admitted)
    HALF_OPEN --probe succeeds--> CLOSED
    HALF_OPEN --probe fails--> OPEN

The registry is process-wide and shared by every run; all transitions happen
under one lock.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, asdict, replace
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from .._version import ENGINE_VERSION
from ..engine_logging import get_logger
from ..errors import CircuitOpenError

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breakers"""
    failure_threshold: int = 5
    cooldown_s: float = 30.0

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.cooldown_s < 0:
            raise ValueError("cooldown_s must be >= 0")


@dataclass
class CircuitBreakerState:
    """Breaker state for one capability"""
    capability: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    probe_in_flight: bool = False
    total_failures: int = 0
    total_rejections: int = 0
    probes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class CircuitBreakerRegistry:
    """Process-wide map of capability -> breaker state"""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._states: Dict[str, CircuitBreakerState] = {}
        self._lock = Lock()

    def _state(self, capability: str) -> CircuitBreakerState:
        state = self._states.get(capability)
        if state is None:
            state = CircuitBreakerState(capability=capability)
            self._states[capability] = state
        return state

    def acquire(self, capability: str) -> None:
        """
        Admit or reject a call to ``capability``.

        Raises:
            CircuitOpenError: breaker is OPEN within its cooldown, or HALF_OPEN
                with its single probe already in flight
        """
        with self._lock:
            state = self._state(capability)

            if state.state == CircuitState.CLOSED:
                return

            if state.state == CircuitState.OPEN:
                if self._clock() - (state.opened_at or 0.0) >= self.config.cooldown_s:
                    state.state = CircuitState.HALF_OPEN
                    state.probe_in_flight = True
                    state.probes += 1
                    logger.info(f"Circuit for {capability} half-open, admitting probe")
                    return
                state.total_rejections += 1
                raise CircuitOpenError(capability)

            # HALF_OPEN
            if state.probe_in_flight:
                state.total_rejections += 1
                raise CircuitOpenError(capability)
            state.probe_in_flight = True
            state.probes += 1

    def record_success(self, capability: str) -> None:
        with self._lock:
            state = self._state(capability)
            if state.state != CircuitState.CLOSED:
                logger.info(f"Circuit for {capability} closed after successful probe")
            state.state = CircuitState.CLOSED
            state.consecutive_failures = 0
            state.opened_at = None
            state.probe_in_flight = False

    def record_failure(self, capability: str) -> None:
        """Count a transient failure; may open the breaker."""
        with self._lock:
            state = self._state(capability)
            state.total_failures += 1
            state.consecutive_failures += 1
            state.probe_in_flight = False

            if state.state == CircuitState.HALF_OPEN:
                state.state = CircuitState.OPEN
                state.opened_at = self._clock()
                logger.warning(f"Circuit for {capability} re-opened: probe failed")
            elif state.state == CircuitState.CLOSED and state.consecutive_failures >= self.config.failure_threshold:
                state.state = CircuitState.OPEN
                state.opened_at = self._clock()
                logger.warning(
                    f"Circuit for {capability} opened after {state.consecutive_failures} consecutive failures"
                )

    def release(self, capability: str, failed: bool = False) -> None:
        """
        Free a HALF_OPEN test slot without counting a transient failure.

        ``failed`` marks a permanent or validation error: a HALF_OPEN breaker
        goes back to OPEN and its cooldown restarts. Cancellation passes
        ``failed=False`` and leaves the state alone.
        """
        with self._lock:
            state = self._state(capability)
            state.probe_in_flight = False
            if failed and state.state == CircuitState.HALF_OPEN:
                state.state = CircuitState.OPEN
                state.opened_at = self._clock()
                logger.warning(f"Circuit for {capability} re-opened: test call failed")

    def state_of(self, capability: str) -> CircuitState:
        with self._lock:
            state = self._states.get(capability)
            return state.state if state else CircuitState.CLOSED

    def snapshot(self, capability: str) -> CircuitBreakerState:
        with self._lock:
            return replace(self._state(capability))

    def get_all_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "capabilities": {name: state.to_dict() for name, state in self._states.items()},
                "open_circuits": sorted(
                    name for name, state in self._states.items() if state.state == CircuitState.OPEN
                ),
            }

    def reset(self, capability: Optional[str] = None) -> None:
        with self._lock:
            if capability is None:
                self._states.clear()
            else:
                self._states.pop(capability, None)

    def save(self, path: Path) -> int:
        """
        Persist breaker states. ``opened_at`` is stored as elapsed seconds
        since the breaker opened, since the clock is process-local.
        """
        now = self._clock()
        records: List[Dict[str, Any]] = []
        with self._lock:
            for state in self._states.values():
                record = state.to_dict()
                record["open_for_s"] = None if state.opened_at is None else now - state.opened_at
                record.pop("opened_at")
                record["probe_in_flight"] = False
                records.append(record)

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump({"engine_version": ENGINE_VERSION, "breakers": records}, f, indent=2)
        return len(records)

    def load(self, path: Path) -> int:
        path = Path(path)
        if not path.exists():
            return 0
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read breaker snapshot {path}: {e}")
            return 0

        if data.get("engine_version") != ENGINE_VERSION:
            logger.info(f"Ignoring breaker snapshot {path} from engine version {data.get('engine_version')}")
            return 0

        now = self._clock()
        with self._lock:
            for record in data.get("breakers", []):
                open_for = record.pop("open_for_s", None)
                record["state"] = CircuitState(record["state"])
                state = CircuitBreakerState(**record)
                if state.state == CircuitState.HALF_OPEN:
                    # The probe died with the previous process
                    state.state = CircuitState.OPEN
                state.opened_at = None if open_for is None else now - open_for
                if state.state == CircuitState.OPEN and state.opened_at is None:
                    state.opened_at = now
                self._states[state.capability] = state
            return len(data.get("breakers", []))
