"""
Workflow graph model: steps, graphs, validation and declarative loading
"""

from .model import Graph, Step, StepKind, batch, conditional, parallel, recursive, sequential
from .validate import topological_order, validate
from .loader import graph_from_definition, graph_from_yaml, load_graph

__all__ = [
    'Graph', 'Step', 'StepKind',
    'sequential', 'parallel', 'conditional', 'recursive', 'batch',
    'validate', 'topological_order',
    'graph_from_definition', 'graph_from_yaml', 'load_graph',
]
