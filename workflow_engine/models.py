"""
Core runtime data structures shared by the registry, the resilience layer
and the orchestrator.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from .errors import ErrorClass


class StepStatus(Enum):
    """Step execution status"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COMPENSATED = "compensated"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({
    StepStatus.SUCCEEDED,
    StepStatus.FAILED,
    StepStatus.COMPENSATED,
    StepStatus.SKIPPED,
})


class RunStatus(Enum):
    """Overall outcome of a workflow run"""
    SUCCEEDED = "succeeded"
    PARTIALLY_SUCCEEDED = "partially_succeeded"
    COMPENSATED = "compensated"
    FAILED = "failed"


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Turn a frozen task input back into plain dicts/lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class Task:
    """
    Atomic unit of work handed to an executor.

    Built by the orchestrator from a step and the step's context view; the
    input is deep-copied and frozen so executors cannot mutate it.
    """
    id: str
    capability: str
    input: Mapping[str, Any]
    constraints: Mapping[str, Any] = field(default_factory=dict)
    step_id: Optional[str] = None

    @classmethod
    def create(
        cls,
        capability: str,
        input: Optional[Mapping[str, Any]] = None,
        constraints: Optional[Mapping[str, Any]] = None,
        step_id: Optional[str] = None,
    ) -> Task:
        task_id = f"task:{step_id or capability}:{uuid.uuid4().hex[:12]}"
        return cls(
            id=task_id,
            capability=capability,
            input=_freeze(copy.deepcopy(dict(input or {}))),
            constraints=_freeze(dict(constraints or {})),
            step_id=step_id,
        )


@dataclass
class TaskResult:
    """
    Executor output plus the context additions it proposes.

    Executors may return plain values instead; the orchestrator wraps them.
    """
    output: Any = None
    context_updates: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StepError:
    """Diagnostic record for a failed step or compensation"""
    step_id: str
    capability: Optional[str]
    error_class: ErrorClass
    error_type: str
    message: str
    attempts: int
    phase: str = "execute"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["error_class"] = self.error_class.value
        return data


@dataclass
class StepResult:
    """Outcome of one step within a run"""
    step_id: str
    status: StepStatus
    output: Any = None
    attempts: int = 0
    cached: bool = False
    error: Optional[StepError] = None
    skip_reason: Optional[str] = None
    compensated: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def duration_s(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "output": self.output,
            "attempts": self.attempts,
            "cached": self.cached,
            "error": self.error.to_dict() if self.error else None,
            "skip_reason": self.skip_reason,
            "compensated": self.compensated,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_s": self.duration_s,
        }


@dataclass
class RunResult:
    """Everything a caller gets back from ``Orchestrator.run``"""
    run_id: str
    final_context: Dict[str, Any]
    step_results: Dict[str, StepResult]
    overall_status: RunStatus
    errors: List[StepError] = field(default_factory=list)
    compensation_order: List[str] = field(default_factory=list)
    cancelled: bool = False
    started_at: float = 0.0
    completed_at: float = 0.0

    def status_of(self, step_id: str) -> StepStatus:
        return self.step_results[step_id].status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "overall_status": self.overall_status.value,
            "final_context": self.final_context,
            "steps": {step_id: result.to_dict() for step_id, result in self.step_results.items()},
            "errors": [error.to_dict() for error in self.errors],
            "compensation_order": list(self.compensation_order),
            "cancelled": self.cancelled,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
