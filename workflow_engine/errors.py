"""
Engine error taxonomy.

Every error carries an ``error_class`` that drives the resilience policy:
TRANSIENT failures are retried (and count against circuit breakers),
PERMANENT and VALIDATION failures are not.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Optional


class ErrorClass(Enum):
    """Failure classes reported by executors"""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    VALIDATION = "validation"


class EngineError(Exception):
    """Base class for all engine errors"""

    error_class = ErrorClass.PERMANENT

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(EngineError):
    """Bad graph or bad input. Fatal, never retried."""

    error_class = ErrorClass.VALIDATION


class GraphValidationError(ValidationError):
    """Graph rejected before any step runs"""


class CycleError(GraphValidationError):
    """The dependency graph contains a cycle"""

    def __init__(self, cycle: list):
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}", cycle=cycle)
        self.cycle = cycle


class DanglingDependencyError(GraphValidationError):
    """A step depends on a step id that is not part of the graph"""

    def __init__(self, step_id: str, missing: str):
        super().__init__(f"Step {step_id} depends on unknown step {missing}", step_id=step_id, missing=missing)
        self.step_id = step_id
        self.missing = missing


class RecursionLimitError(GraphValidationError):
    """
    Recursive expansion stopped: either the maximum depth was reached or the
    expansion made no forward progress between two consecutive levels.

    When raised out of ``Orchestrator.run`` the partial run result (after
    compensation) is attached as ``run_result``.
    """

    def __init__(self, message: str, step_id: Optional[str] = None, depth: int = 0):
        super().__init__(message, step_id=step_id, depth=depth)
        self.step_id = step_id
        self.depth = depth
        self.run_result = None


class TransientError(EngineError):
    """Network/timeout-like failure. Retried with backoff."""

    error_class = ErrorClass.TRANSIENT


class StepTimeoutError(TransientError):
    """A step attempt exceeded its wall-clock timeout"""


class CircuitOpenError(TransientError):
    """The capability's circuit breaker rejected the call without dispatch"""

    def __init__(self, capability: str):
        super().__init__(f"Circuit open for capability {capability}", capability=capability)
        self.capability = capability


class PermanentError(EngineError):
    """The executor can never succeed for this input"""

    error_class = ErrorClass.PERMANENT


class CapabilityNotFoundError(PermanentError):
    """No executor is registered for the requested capability"""

    def __init__(self, capability: str):
        super().__init__(f"No executor registered for capability {capability}", capability=capability)
        self.capability = capability


class RunCancelledError(EngineError):
    """The run's cancellation token fired before the step could be dispatched"""


def classify_error(error: BaseException) -> ErrorClass:
    """
    Map an arbitrary exception onto an error class.

    Engine errors carry their own class. Timeouts and connection problems
    raised by executors that do not use the taxonomy are treated as transient;
    anything else is permanent.
    """
    if isinstance(error, EngineError):
        return error.error_class
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    if isinstance(error, OSError):
        return ErrorClass.TRANSIENT
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ErrorClass.VALIDATION
    return ErrorClass.PERMANENT
