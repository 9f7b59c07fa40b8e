"""
Workflow orchestration engine.

Coordinates independent task executors through a dependency graph of steps:
sequential pipelines, parallel fan-out/fan-in, conditional routing and
recursive decomposition, with shared context, memoization of repeated work,
and recovery through retries, circuit breakers and compensating actions.
"""

from ._version import ENGINE_VERSION, __version__
from .batch import BatchAggregator, BatchConfig
from .cache import MISS, TieredCache, compute_fingerprint
from .cancellation import CancellationToken
from .config import EngineConfig, get_engine_config
from .errors import (
    CapabilityNotFoundError,
    CircuitOpenError,
    CycleError,
    DanglingDependencyError,
    EngineError,
    ErrorClass,
    GraphValidationError,
    PermanentError,
    RecursionLimitError,
    RunCancelledError,
    StepTimeoutError,
    TransientError,
    ValidationError,
    classify_error,
)
from .graph import (
    Graph,
    Step,
    StepKind,
    conditional,
    graph_from_definition,
    graph_from_yaml,
    load_graph,
    parallel,
    recursive,
    sequential,
    topological_order,
    validate,
)
from .models import RunResult, RunStatus, StepError, StepResult, StepStatus, Task, TaskResult
from .registry import ExecutorRegistry
from .resilience import CircuitBreakerConfig, CircuitBreakerRegistry, CircuitState, ResiliencePolicy, RetryPolicy
from .runtime import ABSENT, ContextView, EngineServices, Orchestrator, RunStateStore, run_workflow

__all__ = [
    '__version__', 'ENGINE_VERSION',
    'BatchAggregator', 'BatchConfig',
    'MISS', 'TieredCache', 'compute_fingerprint',
    'CancellationToken',
    'EngineConfig', 'get_engine_config',
    'CapabilityNotFoundError', 'CircuitOpenError', 'CycleError', 'DanglingDependencyError', 'EngineError',
    'ErrorClass', 'GraphValidationError', 'PermanentError', 'RecursionLimitError', 'RunCancelledError',
    'StepTimeoutError', 'TransientError', 'ValidationError', 'classify_error',
    'Graph', 'Step', 'StepKind', 'conditional', 'parallel', 'recursive', 'sequential',
    'graph_from_definition', 'graph_from_yaml', 'load_graph', 'topological_order', 'validate',
    'RunResult', 'RunStatus', 'StepError', 'StepResult', 'StepStatus', 'Task', 'TaskResult',
    'ExecutorRegistry',
    'CircuitBreakerConfig', 'CircuitBreakerRegistry', 'CircuitState', 'ResiliencePolicy', 'RetryPolicy',
    'ABSENT', 'ContextView', 'EngineServices', 'Orchestrator', 'RunStateStore', 'run_workflow',
]
