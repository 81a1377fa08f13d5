"""Test execution graph construction and validation."""

import pytest

from flowengine.executor import (
    CircularDependencyError,
    DuplicateNodeError,
    ExecutionGraph,
    SelfLoopError,
    StructuralError,
    UnknownNodeError,
)
from flowengine.exceptions import ValidationError

from conftest import connect, workflow


def _nodes(*ids):
    return [{"id": node_id, "type": "noOp"} for node_id in ids]


@pytest.mark.unit
class TestGraphValidation:
    """Structural validation happens before anything runs."""

    def test_duplicate_node_id(self):
        definition = workflow(_nodes("a", "b", "a"))
        with pytest.raises(DuplicateNodeError) as exc_info:
            ExecutionGraph.build(definition)
        assert exc_info.value.node_id == "a"
        assert exc_info.value.error_code == "DUPLICATE_NODE"

    def test_connection_to_unknown_node(self):
        definition = workflow(_nodes("a"), [connect("a", "ghost")])
        with pytest.raises(UnknownNodeError) as exc_info:
            ExecutionGraph.build(definition)
        assert exc_info.value.node_id == "ghost"

    def test_self_loop(self):
        definition = workflow(_nodes("a"), [connect("a", "a")])
        with pytest.raises(SelfLoopError) as exc_info:
            ExecutionGraph.build(definition)
        assert exc_info.value.node_id == "a"

    def test_cycle_reports_path(self):
        definition = workflow(
            _nodes("start", "a", "b", "c"),
            [connect("start", "a"), connect("a", "b"), connect("b", "c"), connect("c", "a")],
        )
        with pytest.raises(CircularDependencyError) as exc_info:
            ExecutionGraph.build(definition)

        cycle = exc_info.value.cycle_path
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}
        assert "start" not in cycle

    def test_structural_errors_share_a_base(self):
        definition = workflow(_nodes("a"), [connect("a", "a")])
        with pytest.raises(StructuralError) as exc_info:
            ExecutionGraph.build(definition)
        assert isinstance(exc_info.value, ValidationError)
        assert exc_info.value.to_dict()["error"] == "SelfLoopError"

    def test_disabled_connection_is_ignored(self):
        definition = workflow(
            _nodes("a", "b"),
            [connect("a", "b"), {**connect("b", "a"), "disabled": True}],
        )
        graph = ExecutionGraph.build(definition)
        assert graph.root_nodes() == ["a"]
        assert graph.incoming("a") == ()


@pytest.mark.unit
class TestGraphQueries:
    """Queries on a validated graph."""

    @pytest.fixture
    def diamond(self):
        return ExecutionGraph.build(workflow(
            _nodes("start", "left", "right", "join"),
            [
                connect("start", "left"),
                connect("start", "right"),
                connect("left", "join", target_input="input1"),
                connect("right", "join", target_input="input2"),
            ],
        ))

    def test_topological_order(self, diamond):
        order = list(diamond.topological_order)
        assert order[0] == "start"
        assert order[-1] == "join"
        assert set(order) == {"start", "left", "right", "join"}

    def test_roots_and_levels(self, diamond):
        assert diamond.root_nodes() == ["start"]
        assert diamond.levels() == {"start": 0, "left": 1, "right": 1, "join": 2}

    def test_connections_keep_declaration_order(self, diamond):
        assert [c.target_node_id for c in diamond.outgoing("start")] == ["left", "right"]
        assert [c.target_input for c in diamond.incoming("join")] == ["input1", "input2"]
        assert diamond.successors("start") == ["left", "right"]

    def test_descendants(self, diamond):
        assert diamond.descendants("start") == ["left", "right", "join"]
        assert diamond.descendants("join") == []

    def test_output_ports_are_distinct(self):
        graph = ExecutionGraph.build(workflow(
            [{"id": "check", "type": "if"}] + _nodes("yes", "also", "no"),
            [
                connect("check", "yes", source_output="true"),
                connect("check", "also", source_output="true"),
                connect("check", "no", source_output="false"),
            ],
        ))
        assert graph.output_ports("check") == ["true", "false"]

    def test_unknown_node_lookup(self, diamond):
        assert "left" in diamond
        assert len(diamond) == 4
        with pytest.raises(UnknownNodeError):
            diamond.node("missing")

    def test_to_dict(self, diamond):
        data = diamond.to_dict()
        assert data["workflow_id"] == "wf-test"
        assert data["roots"] == ["start"]
        assert data["levels"]["join"] == 2
