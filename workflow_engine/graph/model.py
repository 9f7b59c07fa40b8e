# workflow_engine/graph/model.py
"""
Workflow Graph Model - declarative steps and their relationships.

Graphs and steps are immutable once authored; execution state lives in the
orchestrator's ExecutionState, never on the step.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Set, Tuple, Union

from ..errors import GraphValidationError, ValidationError
from ..registry import CapabilityKey, capability_name
from ..resilience.retry import RetryPolicy


class StepKind(Enum):
    """How a step executes"""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"
    RECURSIVE = "recursive"
    BATCH = "batch"


PRIORITY_LEVELS = {"low": 0, "medium": 1, "high": 2}

# Kinds that dispatch a task to an executor
LEAF_KINDS = frozenset({StepKind.SEQUENTIAL, StepKind.BATCH})


def parse_priority(priority: Union[int, str]) -> int:
    if isinstance(priority, bool):
        raise ValidationError(f"Invalid priority: {priority!r}")
    if isinstance(priority, int):
        return priority
    if isinstance(priority, str) and priority.lower() in PRIORITY_LEVELS:
        return PRIORITY_LEVELS[priority.lower()]
    raise ValidationError(f"Invalid priority: {priority!r} (expected int or one of {sorted(PRIORITY_LEVELS)})")


StepInput = Union[None, Mapping[str, Any], Callable[[Any], Mapping[str, Any]]]
Compensation = Union[None, str, Callable[..., Any]]


@dataclass(frozen=True, eq=False)
class Step:
    """
    A node in a workflow graph.

    ``input`` is either a static mapping or a callable over the step's
    ContextView that returns the task input. ``output_key`` proposes the
    executor output into the context under that key. ``compensation`` is the
    saga undo action: a capability name dispatched through the registry or a
    callable ``(task, output)``.
    """
    id: str
    kind: StepKind = StepKind.SEQUENTIAL
    capability: Optional[CapabilityKey] = None
    input: StepInput = None
    depends_on: FrozenSet[str] = frozenset()
    required: bool = True
    retry_policy: Optional[RetryPolicy] = None
    cacheable: bool = False
    cache_ttl: Optional[float] = None
    cache_bypass: bool = False
    timeout_seconds: Optional[float] = None
    priority: Union[int, str] = 1
    output_key: Optional[str] = None
    compensation: Compensation = None
    members: Tuple[Step, ...] = ()
    predicate: Optional[Callable[[Any], Any]] = None
    branches: Mapping[str, str] = field(default_factory=dict)
    default_branch: Optional[str] = None
    expand: Optional[Callable[[Any], Graph]] = None
    max_depth: Optional[int] = None
    description: str = ""

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id:
            raise ValidationError(f"Step id must be a non-empty string, got {self.id!r}")

        if isinstance(self.depends_on, str):
            object.__setattr__(self, "depends_on", frozenset({self.depends_on}))
        else:
            object.__setattr__(self, "depends_on", frozenset(self.depends_on))
        object.__setattr__(self, "priority", parse_priority(self.priority))
        object.__setattr__(self, "members", tuple(self.members))
        object.__setattr__(self, "branches", MappingProxyType({str(k): v for k, v in dict(self.branches).items()}))
        if self.capability is not None:
            object.__setattr__(self, "capability", capability_name(self.capability))
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValidationError(f"Step {self.id}: timeout_seconds must be positive")

        self._check_kind()

    def _check_kind(self) -> None:
        if self.kind in LEAF_KINDS:
            if not self.capability:
                raise ValidationError(f"{self.kind.value} step {self.id} needs a capability")
        elif self.kind == StepKind.PARALLEL:
            if not self.members:
                raise ValidationError(f"Parallel step {self.id} needs at least one member")
            for member in self.members:
                if member.kind not in LEAF_KINDS:
                    raise ValidationError(
                        f"Parallel step {self.id}: member {member.id} must be sequential or batch, not {member.kind.value}"
                    )
                if member.depends_on:
                    raise ValidationError(
                        f"Parallel step {self.id}: member {member.id} cannot declare dependencies; "
                        f"declare them on the group"
                    )
        elif self.kind == StepKind.CONDITIONAL:
            if self.predicate is None or not self.branches:
                raise ValidationError(f"Conditional step {self.id} needs a predicate and branches")
            if self.default_branch is not None and self.default_branch not in self.branches:
                raise ValidationError(f"Conditional step {self.id}: default branch {self.default_branch} not in branches")
        elif self.kind == StepKind.RECURSIVE:
            if self.expand is None or not self.capability:
                raise ValidationError(f"Recursive step {self.id} needs a capability and an expand function")
            if self.max_depth is not None and self.max_depth < 1:
                raise ValidationError(f"Recursive step {self.id}: max_depth must be >= 1")

    @property
    def is_leaf(self) -> bool:
        return self.kind in LEAF_KINDS

    def resolve_input(self, view: Any) -> Dict[str, Any]:
        """Task input for this step given the step's context view."""
        if self.input is None:
            return {}
        if callable(self.input):
            resolved = self.input(view)
            if resolved is None:
                return {}
            if not isinstance(resolved, Mapping):
                raise ValidationError(f"Input function of step {self.id} returned {type(resolved).__name__}, not a mapping")
            return dict(resolved)
        return dict(self.input)


def sequential(step_id: str, capability: CapabilityKey, **options: Any) -> Step:
    return Step(id=step_id, kind=StepKind.SEQUENTIAL, capability=capability, **options)


def batch(step_id: str, capability: CapabilityKey, **options: Any) -> Step:
    return Step(id=step_id, kind=StepKind.BATCH, capability=capability, **options)


def parallel(step_id: str, members: Iterable[Step], **options: Any) -> Step:
    return Step(id=step_id, kind=StepKind.PARALLEL, members=tuple(members), **options)


def conditional(
    step_id: str,
    predicate: Callable[[Any], Any],
    branches: Mapping[str, str],
    **options: Any,
) -> Step:
    return Step(id=step_id, kind=StepKind.CONDITIONAL, predicate=predicate, branches=branches, **options)


def recursive(step_id: str, capability: CapabilityKey, expand: Callable[[Any], Graph], **options: Any) -> Step:
    return Step(id=step_id, kind=StepKind.RECURSIVE, capability=capability, expand=expand, **options)


class Graph:
    """
    Immutable collection of steps.

    Edges come from each step's ``depends_on`` plus one implicit edge from
    every conditional step to each of its branch targets.
    """

    def __init__(self, steps: Iterable[Step], name: str = "workflow"):
        self.name = name
        self.steps: Tuple[Step, ...] = tuple(steps)
        self._by_id: Dict[str, Step] = {}
        self._index: Dict[str, int] = {}
        self._members: Dict[str, Tuple[str, Step]] = {}

        for index, step in enumerate(self.steps):
            if step.id in self._by_id or step.id in self._members:
                raise GraphValidationError(f"Duplicate step id {step.id} in graph {name}")
            self._by_id[step.id] = step
            self._index[step.id] = index
            for member in step.members:
                if member.id in self._by_id or member.id in self._members:
                    raise GraphValidationError(f"Duplicate step id {member.id} in graph {name}")
                self._members[member.id] = (step.id, member)

        for member_id in self._members:
            if member_id in self._by_id:
                raise GraphValidationError(f"Duplicate step id {member_id} in graph {name}")

        self._branch_parents: Dict[str, Set[str]] = {}
        for step in self.steps:
            if step.kind == StepKind.CONDITIONAL:
                for target in step.branches.values():
                    self._branch_parents.setdefault(target, set()).add(step.id)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._by_id

    @property
    def ids(self) -> List[str]:
        return [step.id for step in self.steps]

    def step(self, step_id: str) -> Step:
        try:
            return self._by_id[step_id]
        except KeyError:
            raise KeyError(f"Unknown step {step_id} in graph {self.name}") from None

    def member(self, member_id: str) -> Tuple[str, Step]:
        """``(group_id, member_step)`` for a parallel group member."""
        return self._members[member_id]

    def all_step_ids(self) -> List[str]:
        """Top-level ids in declared order, each followed by its group members."""
        ids: List[str] = []
        for step in self.steps:
            ids.append(step.id)
            ids.extend(member.id for member in step.members)
        return ids

    def declared_index(self, step_id: str) -> int:
        return self._index[step_id]

    def dependencies(self, step_id: str) -> FrozenSet[str]:
        step = self.step(step_id)
        return step.depends_on | frozenset(self._branch_parents.get(step_id, ()))

    def dependents(self, step_id: str) -> List[str]:
        return [step.id for step in self.steps if step_id in self.dependencies(step.id)]

    def branch_parents(self, step_id: str) -> FrozenSet[str]:
        return frozenset(self._branch_parents.get(step_id, ()))

    def ancestors(self, step_id: str) -> Set[str]:
        """All steps reachable by walking dependencies backwards."""
        seen: Set[str] = set()
        stack = [dep for dep in self.dependencies(step_id) if dep in self._by_id]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(dep for dep in self.dependencies(current) if dep in self._by_id and dep not in seen)
        return seen
