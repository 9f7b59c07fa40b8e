"""
Runtime: context store, execution state, shared services and the orchestrator
"""

from .context import ABSENT, Context, ContextEntry, ContextView, merge_group_writes
from .state import ExecutionState, RunStateStore, run_result_from_dict
from .services import EngineServices, get_services, reset_services
from .orchestrator import Orchestrator, run_workflow

__all__ = [
    'ABSENT', 'Context', 'ContextEntry', 'ContextView', 'merge_group_writes',
    'ExecutionState', 'RunStateStore', 'run_result_from_dict',
    'EngineServices', 'get_services', 'reset_services',
    'Orchestrator', 'run_workflow',
]
