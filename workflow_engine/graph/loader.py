"""
Declarative workflow definitions.

Parses a mapping (or YAML document) describing steps into a Graph. The
engine itself only consumes Graph objects; this loader is the bridge for
workflows kept as configuration text.

Example::

    name: review
    steps:
      - id: fetch
        capability: fetch
        output_key: source
      - id: checks
        kind: parallel
        depends_on: [fetch]
        members:
          - {id: analyze, capability: analysis, retry: {max_retries: 5}}
          - {id: scan, capability: security_scan, required: false}
      - id: report
        capability: report
        depends_on: [checks]
        input_from_context: {source: source}
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..engine_logging import get_logger
from ..errors import ValidationError
from ..resilience.retry import RetryPolicy
from .model import Graph, Step, StepKind

logger = get_logger(__name__)


class RetryDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_retries: Optional[int] = Field(default=None, ge=0)
    base_delay_s: Optional[float] = Field(default=None, ge=0)
    max_delay_s: Optional[float] = Field(default=None, ge=0)
    exponential_base: Optional[float] = Field(default=None, gt=0)
    jitter: Optional[float] = Field(default=None, ge=0, lt=1)

    def overrides(self) -> Dict[str, Any]:
        return {key: value for key, value in self.model_dump().items() if value is not None}


class StepDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    kind: StepKind = StepKind.SEQUENTIAL
    capability: Optional[str] = None
    description: str = ""
    input: Dict[str, Any] = Field(default_factory=dict)
    input_from_context: Dict[str, str] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    required: bool = True
    cacheable: bool = False
    cache_ttl: Optional[float] = Field(default=None, ge=0)
    cache_bypass: bool = False
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    priority: Union[int, str] = 1
    output_key: Optional[str] = None
    compensation: Optional[str] = None
    retry: Optional[RetryDefinition] = None
    members: List["StepDefinition"] = Field(default_factory=list)
    branch_on: Optional[str] = None
    branches: Dict[str, str] = Field(default_factory=dict)
    default_branch: Optional[str] = None


StepDefinition.model_rebuild()


class WorkflowDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = "workflow"
    description: str = ""
    steps: List[StepDefinition] = Field(min_length=1)


def _input_fn(static: Dict[str, Any], from_context: Dict[str, str]) -> Callable[[Any], Dict[str, Any]]:
    def resolve(view: Any) -> Dict[str, Any]:
        resolved = dict(static)
        for input_key, context_key in from_context.items():
            resolved[input_key] = view.get(context_key)
        return resolved

    return resolve


def _branch_predicate(context_key: str) -> Callable[[Any], Any]:
    def predicate(view: Any) -> Any:
        return view.get(context_key)

    return predicate


def _build_step(definition: StepDefinition, default_retry: RetryPolicy) -> Step:
    if definition.kind == StepKind.RECURSIVE:
        raise ValidationError(f"Recursive step {definition.id} needs an expand function and cannot be loaded from text")

    step_input: Any = definition.input or None
    if definition.input_from_context:
        step_input = _input_fn(definition.input, definition.input_from_context)

    predicate = None
    if definition.kind == StepKind.CONDITIONAL:
        if not definition.branch_on:
            raise ValidationError(f"Conditional step {definition.id} needs branch_on")
        predicate = _branch_predicate(definition.branch_on)

    retry_policy = None
    if definition.retry is not None:
        try:
            retry_policy = default_retry.merged(definition.retry.overrides())
        except ValueError as e:
            raise ValidationError(f"Step {definition.id}: {e}") from e

    return Step(
        id=definition.id,
        kind=definition.kind,
        capability=definition.capability,
        input=step_input,
        depends_on=frozenset(definition.depends_on),
        required=definition.required,
        retry_policy=retry_policy,
        cacheable=definition.cacheable,
        cache_ttl=definition.cache_ttl,
        cache_bypass=definition.cache_bypass,
        timeout_seconds=definition.timeout_seconds,
        priority=definition.priority,
        output_key=definition.output_key,
        compensation=definition.compensation,
        members=tuple(_build_step(member, default_retry) for member in definition.members),
        predicate=predicate,
        branches=definition.branches,
        default_branch=definition.default_branch,
        description=definition.description,
    )


def graph_from_definition(data: Mapping[str, Any], default_retry: Optional[RetryPolicy] = None) -> Graph:
    """
    Build a Graph from a parsed workflow definition.

    Args:
        data: Mapping with ``name`` and ``steps``
        default_retry: Policy that per-step ``retry`` overrides are applied to

    Raises:
        ValidationError: the definition does not match the schema
    """
    try:
        workflow = WorkflowDefinition.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid workflow definition: {e}") from e

    base_retry = default_retry or RetryPolicy()
    graph = Graph([_build_step(step, base_retry) for step in workflow.steps], name=workflow.name)
    logger.debug(f"Loaded workflow {graph.name} with {len(graph)} steps")
    return graph


def graph_from_yaml(text: str, default_retry: Optional[RetryPolicy] = None) -> Graph:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValidationError(f"Workflow definition is not valid YAML: {e}") from e
    if not isinstance(data, Mapping):
        raise ValidationError("Workflow definition must be a mapping")
    return graph_from_definition(data, default_retry)


def load_graph(path: Union[str, Path], default_retry: Optional[RetryPolicy] = None) -> Graph:
    """Load a workflow definition from a YAML (or JSON) file."""
    path = Path(path)
    with open(path, 'r', encoding='utf-8') as f:
        return graph_from_yaml(f.read(), default_retry)
