"""
Immutable execution graph built once per execution.

The graph indexes a workflow definition by node id, validates its structure
and answers topological queries. Nothing can be added or removed after
:meth:`ExecutionGraph.build` returns, so concurrent readers need no locking.
"""

from collections import deque
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

import networkx as nx
import structlog

from .errors import (
    CircularDependencyError,
    DuplicateNodeError,
    SelfLoopError,
    UnknownNodeError,
)
from .models import ConnectionSpec, NodeSpec, WorkflowDefinition

logger = structlog.get_logger()


class ExecutionGraph:
    """Validated DAG of node specs and port-level connections."""

    def __init__(
        self,
        workflow_id: str,
        nodes: Mapping[str, NodeSpec],
        out_edges: Mapping[str, Tuple[ConnectionSpec, ...]],
        in_edges: Mapping[str, Tuple[ConnectionSpec, ...]],
        topological_order: Tuple[str, ...],
    ):
        self.workflow_id = workflow_id
        self._nodes = MappingProxyType(dict(nodes))
        self._out_edges = MappingProxyType(dict(out_edges))
        self._in_edges = MappingProxyType(dict(in_edges))
        self._topological_order = topological_order

    @classmethod
    def build(cls, definition: WorkflowDefinition) -> "ExecutionGraph":
        """
        Build and validate a graph from a workflow definition.

        Args:
            definition: Workflow definition to index

        Returns:
            Immutable execution graph

        Raises:
            DuplicateNodeError: If two nodes share an id
            UnknownNodeError: If a connection references a missing node
            SelfLoopError: If a connection targets its own source
            CircularDependencyError: If the connections contain a cycle
        """
        nodes: Dict[str, NodeSpec] = {}
        for node in definition.nodes:
            if node.id in nodes:
                raise DuplicateNodeError(
                    f"Duplicate node id '{node.id}'", node_id=node.id
                )
            nodes[node.id] = node

        out_edges: Dict[str, List[ConnectionSpec]] = {node_id: [] for node_id in nodes}
        in_edges: Dict[str, List[ConnectionSpec]] = {node_id: [] for node_id in nodes}

        graph = nx.MultiDiGraph()
        graph.add_nodes_from(nodes)

        for connection in definition.connections:
            if connection.disabled:
                continue
            for node_id in (connection.source_node_id, connection.target_node_id):
                if node_id not in nodes:
                    raise UnknownNodeError(
                        f"Connection references unknown node '{node_id}'",
                        node_id=node_id,
                    )
            if connection.source_node_id == connection.target_node_id:
                raise SelfLoopError(
                    f"Node '{connection.source_node_id}' cannot connect to itself",
                    node_id=connection.source_node_id,
                )

            out_edges[connection.source_node_id].append(connection)
            in_edges[connection.target_node_id].append(connection)
            graph.add_edge(connection.source_node_id, connection.target_node_id)

        try:
            # networkx orders nodes with Kahn's algorithm and fails when
            # nodes remain after the zero in-degree frontier is exhausted.
            order = tuple(nx.topological_sort(graph))
        except nx.NetworkXUnfeasible:
            cycle_path = [edge[0] for edge in nx.find_cycle(graph)]
            cycle_path.append(cycle_path[0])
            logger.warning(
                "Workflow contains a cycle",
                workflow_id=definition.id,
                cycle_path=cycle_path,
            )
            raise CircularDependencyError(
                "Workflow contains circular dependencies",
                cycle_path=cycle_path,
            )

        return cls(
            workflow_id=definition.id,
            nodes=nodes,
            out_edges={key: tuple(value) for key, value in out_edges.items()},
            in_edges={key: tuple(value) for key, value in in_edges.items()},
            topological_order=order,
        )

    @property
    def node_ids(self) -> Tuple[str, ...]:
        """Node ids in definition order."""
        return tuple(self._nodes)

    @property
    def topological_order(self) -> Tuple[str, ...]:
        return self._topological_order

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def node(self, node_id: str) -> NodeSpec:
        """Get a node spec by id."""
        try:
            return self._nodes[node_id]
        except KeyError:
            raise UnknownNodeError(f"Unknown node '{node_id}'", node_id=node_id) from None

    def root_nodes(self) -> List[str]:
        """Get nodes with no incoming connections, in definition order."""
        return [node_id for node_id in self._nodes if not self._in_edges[node_id]]

    def outgoing(self, node_id: str) -> Tuple[ConnectionSpec, ...]:
        """Get outgoing connections in declaration order."""
        return self._out_edges.get(node_id, ())

    def incoming(self, node_id: str) -> Tuple[ConnectionSpec, ...]:
        """Get incoming connections in declaration order."""
        return self._in_edges.get(node_id, ())

    def output_ports(self, node_id: str) -> List[str]:
        """Get distinct source ports used by a node's outgoing connections."""
        ports: List[str] = []
        for connection in self.outgoing(node_id):
            if connection.source_output not in ports:
                ports.append(connection.source_output)
        return ports

    def successors(self, node_id: str) -> List[str]:
        """Get distinct downstream node ids."""
        result: List[str] = []
        for connection in self.outgoing(node_id):
            if connection.target_node_id not in result:
                result.append(connection.target_node_id)
        return result

    def levels(self) -> Dict[str, int]:
        """
        Calculate execution levels for each node.

        A node's level is the length of the longest path from any root, i.e.
        the earliest wave in which it can run.
        """
        levels: Dict[str, int] = {}
        for node_id in self._topological_order:
            incoming = self.incoming(node_id)
            levels[node_id] = (
                max(levels[conn.source_node_id] for conn in incoming) + 1 if incoming else 0
            )
        return levels

    def descendants(self, node_id: str) -> List[str]:
        """Get every node reachable from ``node_id`` (breadth-first order)."""
        seen = {node_id}
        result: List[str] = []
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for successor in self.successors(current):
                if successor not in seen:
                    seen.add(successor)
                    result.append(successor)
                    queue.append(successor)
        return result

    def to_dict(self) -> Dict[str, Optional[object]]:
        return {
            "workflow_id": self.workflow_id,
            "nodes": list(self._nodes),
            "topological_order": list(self._topological_order),
            "levels": self.levels(),
            "roots": self.root_nodes(),
        }
