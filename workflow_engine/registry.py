"""
Executor Registry - maps a capability name to the worker that implements it.

Capabilities are plain strings or Enum members (normalized to their value).
Each registration also carries the capability's cache definition: which
input fields are volatile, which context keys influence the result and how
long results stay fresh.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Union, runtime_checkable

from .engine_logging import get_logger
from .errors import CapabilityNotFoundError, ValidationError
from .models import Task

logger = get_logger(__name__)

CapabilityKey = Union[str, Enum]


def capability_name(capability: CapabilityKey) -> str:
    """Normalize a capability key to its registry name."""
    if isinstance(capability, Enum):
        return str(capability.value)
    if not isinstance(capability, str) or not capability:
        raise ValidationError(f"Invalid capability key: {capability!r}")
    return capability


@runtime_checkable
class Executor(Protocol):
    """Contract every worker satisfies"""

    async def execute(self, task: Task, view: Any) -> Any:
        ...


@runtime_checkable
class BatchExecutor(Protocol):
    """Workers that can process several tasks of one capability in one call"""

    async def execute_batch(self, tasks: Sequence[Task], views: Sequence[Any]) -> List[Any]:
        ...


class _CallableExecutor:
    """Adapts a plain (async or sync) function to the Executor contract."""

    def __init__(self, fn: Callable[..., Any]):
        self.fn = fn
        self.__name__ = getattr(fn, "__name__", type(fn).__name__)

    async def execute(self, task: Task, view: Any) -> Any:
        result = self.fn(task, view)
        if inspect.isawaitable(result):
            result = await result
        return result


@dataclass
class CapabilityDefinition:
    """
    Registered capability with its caching contract.

    ``normalize`` strips volatile fields (timestamps, random ids) from a task
    input before fingerprinting; ``volatile_fields`` is a shortcut for the
    common case of dropping top-level keys. ``context_keys`` names the context
    slice that influences the result. ``cache_ttl`` is the capability-specific
    freshness window in seconds (None = cache default).
    """
    name: str
    implementation: Any
    normalize: Optional[Callable[[Mapping[str, Any]], Any]] = None
    volatile_fields: frozenset = field(default_factory=frozenset)
    context_keys: tuple = ()
    cache_ttl: Optional[float] = None

    def normalized_input(self, task_input: Mapping[str, Any]) -> Any:
        data = {key: value for key, value in task_input.items() if key not in self.volatile_fields}
        if self.normalize is not None:
            return self.normalize(data)
        return data

    @property
    def supports_batch(self) -> bool:
        return callable(getattr(self.implementation, "execute_batch", None))


class ExecutorRegistry:
    """
    Capability name -> executor implementation.

    Lookups of unknown capabilities raise ``CapabilityNotFoundError``; there is
    no silent fallback executor.
    """

    def __init__(self):
        self._definitions: Dict[str, CapabilityDefinition] = {}
        self._lock = Lock()

    def register(
        self,
        capability: CapabilityKey,
        implementation: Any,
        *,
        normalize: Optional[Callable[[Mapping[str, Any]], Any]] = None,
        volatile_fields: Iterable[str] = (),
        context_keys: Iterable[str] = (),
        cache_ttl: Optional[float] = None,
        replace: bool = False,
    ) -> CapabilityDefinition:
        """
        Register an executor for a capability.

        Args:
            capability: Capability name or Enum member
            implementation: Object with ``async execute(task, view)`` or a function
            normalize: Input normalizer used for cache fingerprints
            volatile_fields: Top-level input keys excluded from fingerprints
            context_keys: Context keys whose values are part of the fingerprint
            cache_ttl: Capability-specific cache TTL in seconds
            replace: Allow overriding an existing registration

        Returns:
            The stored capability definition
        """
        name = capability_name(capability)

        if not hasattr(implementation, "execute"):
            if not callable(implementation):
                raise ValidationError(f"Executor for {name} must define execute() or be callable")
            implementation = _CallableExecutor(implementation)

        definition = CapabilityDefinition(
            name=name,
            implementation=implementation,
            normalize=normalize,
            volatile_fields=frozenset(volatile_fields),
            context_keys=tuple(context_keys),
            cache_ttl=cache_ttl,
        )

        with self._lock:
            if name in self._definitions and not replace:
                raise ValidationError(f"Capability {name} is already registered")
            self._definitions[name] = definition

        logger.debug(f"Registered executor for capability {name}")
        return definition

    def unregister(self, capability: CapabilityKey) -> None:
        with self._lock:
            self._definitions.pop(capability_name(capability), None)

    def definition(self, capability: CapabilityKey) -> CapabilityDefinition:
        name = capability_name(capability)
        with self._lock:
            definition = self._definitions.get(name)
        if definition is None:
            raise CapabilityNotFoundError(name)
        return definition

    def resolve(self, capability: CapabilityKey) -> Any:
        """Return the executor for ``capability`` or raise CapabilityNotFoundError."""
        return self.definition(capability).implementation

    def __contains__(self, capability: object) -> bool:
        try:
            name = capability_name(capability)  # type: ignore[arg-type]
        except ValidationError:
            return False
        with self._lock:
            return name in self._definitions

    def capabilities(self) -> List[str]:
        with self._lock:
            return sorted(self._definitions)

    async def dispatch(self, task: Task, view: Any) -> Any:
        """Invoke the executor registered for ``task.capability``."""
        executor = self.resolve(task.capability)
        return await executor.execute(task, view)

    async def dispatch_batch(self, capability: CapabilityKey, tasks: Sequence[Task], views: Sequence[Any]) -> List[Any]:
        """
        Invoke a batch-capable executor once for ``tasks``.

        Executors without ``execute_batch`` get the tasks concurrently through
        ``execute``; per-task exceptions are returned in position.
        """
        definition = self.definition(capability)
        executor = definition.implementation

        if definition.supports_batch:
            results = await executor.execute_batch(list(tasks), list(views))
            if len(results) != len(tasks):
                raise ValidationError(
                    f"Batch executor for {definition.name} returned {len(results)} results for {len(tasks)} tasks"
                )
            return list(results)

        return list(await asyncio.gather(
            *[executor.execute(task, view) for task, view in zip(tasks, views)],
            return_exceptions=True,
        ))
