# tests/unit/test_graph.py
"""
Unit tests for the workflow graph model: step construction, validation and
canonical ordering
"""

import pytest

from workflow_engine.errors import CycleError, DanglingDependencyError, GraphValidationError, ValidationError
from workflow_engine.graph import (
    Graph,
    StepKind,
    conditional,
    parallel,
    recursive,
    sequential,
    topological_order,
    validate,
)
from workflow_engine.graph.model import parse_priority


class TestStepModel:
    """Test Step construction rules"""

    def test_sequential_step_defaults(self):
        step = sequential("fetch", "fetch")

        assert step.kind == StepKind.SEQUENTIAL
        assert step.depends_on == frozenset()
        assert step.required is True
        assert step.cacheable is False
        assert step.priority == 1
        assert step.is_leaf

    def test_depends_on_accepts_single_string(self):
        step = sequential("report", "report", depends_on="fetch")
        assert step.depends_on == frozenset({"fetch"})

    def test_priority_names(self):
        assert parse_priority("low") == 0
        assert parse_priority("MEDIUM") == 1
        assert sequential("s", "cap", priority="high").priority == 2

    def test_invalid_priority_rejected(self):
        with pytest.raises(ValidationError):
            sequential("s", "cap", priority="urgent")

    def test_leaf_requires_capability(self):
        with pytest.raises(ValidationError):
            sequential("s", None)

    def test_parallel_members_cannot_declare_dependencies(self):
        with pytest.raises(ValidationError, match="cannot declare dependencies"):
            parallel("group", [sequential("a", "cap", depends_on={"x"})])

    def test_parallel_members_must_be_leaves(self):
        inner = parallel("inner", [sequential("a", "cap")])
        with pytest.raises(ValidationError):
            parallel("outer", [inner])

    def test_conditional_default_branch_must_exist(self):
        with pytest.raises(ValidationError):
            conditional("route", lambda view: "a", {"a": "x"}, default_branch="b")

    def test_recursive_requires_expand(self):
        with pytest.raises(ValidationError):
            recursive("split", "split", None)

    def test_resolve_input_from_view(self):
        step = sequential("s", "cap", input=lambda view: {"doc": view.get("doc")})
        assert step.resolve_input({"doc": "readme"}) == {"doc": "readme"}

    def test_resolve_input_rejects_non_mapping(self):
        step = sequential("s", "cap", input=lambda view: ["not", "a", "mapping"])
        with pytest.raises(ValidationError):
            step.resolve_input({})

    def test_steps_are_immutable(self):
        step = sequential("s", "cap")
        with pytest.raises(AttributeError):
            step.required = False


class TestGraphValidation:
    """Test validate() on well-formed and malformed graphs"""

    def test_acyclic_graph_is_valid(self):
        graph = Graph([
            sequential("a", "cap"),
            sequential("b", "cap", depends_on={"a"}),
            sequential("c", "cap", depends_on={"a", "b"}),
        ])
        assert validate(graph) is None

    def test_cycle_detected(self):
        graph = Graph([
            sequential("a", "cap", depends_on={"c"}),
            sequential("b", "cap", depends_on={"a"}),
            sequential("c", "cap", depends_on={"b"}),
        ])

        with pytest.raises(CycleError) as exc_info:
            validate(graph)

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_self_dependency_is_a_cycle(self):
        graph = Graph([sequential("a", "cap", depends_on={"a"})])
        with pytest.raises(CycleError):
            validate(graph)

    def test_dangling_dependency(self):
        graph = Graph([sequential("a", "cap", depends_on={"missing"})])

        with pytest.raises(DanglingDependencyError) as exc_info:
            validate(graph)

        assert exc_info.value.step_id == "a"
        assert exc_info.value.missing == "missing"

    def test_graph_errors_are_validation_errors(self):
        graph = Graph([sequential("a", "cap", depends_on={"missing"})])
        with pytest.raises(ValidationError):
            validate(graph)

    def test_dangling_branch_target(self):
        graph = Graph([conditional("route", lambda view: "x", {"x": "nowhere"})])
        with pytest.raises(DanglingDependencyError):
            validate(graph)

    def test_cycle_through_branch_edge(self):
        graph = Graph([
            conditional("route", lambda view: "x", {"x": "fast"}, depends_on={"fast"}),
            sequential("fast", "cap"),
        ])
        with pytest.raises(CycleError):
            validate(graph)

    def test_long_chain_is_valid(self):
        chain = [sequential("s0000", "cap")]
        chain += [sequential(f"s{i:04d}", "cap", depends_on={f"s{i - 1:04d}"}) for i in range(1, 1500)]
        graph = Graph(list(reversed(chain)))

        assert validate(graph) is None
        assert topological_order(graph) == [step.id for step in chain]

    def test_cycle_at_end_of_long_chain(self):
        chain = [sequential("s0000", "cap", depends_on={"s1499"})]
        chain += [sequential(f"s{i:04d}", "cap", depends_on={f"s{i - 1:04d}"}) for i in range(1, 1500)]

        with pytest.raises(CycleError) as exc_info:
            validate(Graph(chain))

        cycle = exc_info.value.cycle
        assert len(cycle) == 1501
        assert cycle[0] == cycle[-1]

    def test_duplicate_ids_rejected(self):
        with pytest.raises(GraphValidationError):
            Graph([sequential("a", "cap"), sequential("a", "other")])

    def test_duplicate_member_ids_rejected(self):
        with pytest.raises(GraphValidationError):
            Graph([sequential("a", "cap"), parallel("group", [sequential("a", "cap")])])

    def test_empty_graph_rejected(self):
        with pytest.raises(GraphValidationError):
            validate(Graph([]))


class TestTopologicalOrder:
    """Test the canonical execution order"""

    def test_ties_broken_by_declared_position(self):
        graph = Graph([
            sequential("c", "cap"),
            sequential("a", "cap"),
            sequential("b", "cap", depends_on={"a"}),
        ])
        assert topological_order(graph) == ["c", "a", "b"]

    def test_order_is_stable_across_calls(self):
        graph = Graph([
            sequential("fetch", "cap"),
            sequential("x", "cap", depends_on={"fetch"}),
            sequential("y", "cap", depends_on={"fetch"}),
            sequential("join", "cap", depends_on={"x", "y"}),
        ])
        first = topological_order(graph)
        assert first == ["fetch", "x", "y", "join"]
        assert all(topological_order(graph) == first for _ in range(5))

    def test_branch_targets_follow_conditional(self):
        graph = Graph([
            sequential("fast", "cap"),
            sequential("slow", "cap"),
            conditional("route", lambda view: "fast", {"fast": "fast", "slow": "slow"}),
        ])

        order = topological_order(graph)

        assert order.index("route") < order.index("fast")
        assert order.index("route") < order.index("slow")
        assert graph.dependencies("fast") == frozenset({"route"})

    def test_ancestors(self):
        graph = Graph([
            sequential("a", "cap"),
            sequential("b", "cap", depends_on={"a"}),
            sequential("c", "cap"),
            sequential("d", "cap", depends_on={"b"}),
        ])
        assert graph.ancestors("d") == {"a", "b"}
        assert graph.ancestors("c") == set()
        assert graph.dependents("a") == ["b"]

    def test_member_lookup(self):
        graph = Graph([parallel("group", [sequential("m1", "cap"), sequential("m2", "cap")])])

        group_id, member = graph.member("m2")

        assert group_id == "group"
        assert member.id == "m2"
        assert graph.all_step_ids() == ["group", "m1", "m2"]
