"""Execution context classes."""

import asyncio
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog

from flowengine.config import Settings
from .data import DataFlowStore
from .graph import ExecutionGraph
from .models import MAIN_PORT, Item, NodeSpec
from .state import Execution, ExecutionMode, RunStateTable

logger = structlog.get_logger()


class NodeExecutionContext:
    """Context handed to a node implementation for one attempt."""

    def __init__(
        self,
        node: NodeSpec,
        inputs: Mapping[str, Sequence[Item]],
        execution_id: str,
        workflow_id: str,
        mode: ExecutionMode,
        attempt: int = 0,
        credentials: Optional[Mapping[str, Any]] = None,
        variables: Optional[Mapping[str, Any]] = None,
        deadline: Optional[float] = None,
    ):
        self.node = node
        self.inputs: Mapping[str, List[Item]] = MappingProxyType(
            {port: list(items) for port, items in inputs.items()}
        )
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self.mode = mode
        self.attempt = attempt
        self.credentials = MappingProxyType(dict(credentials or {}))
        self.variables = MappingProxyType(dict(variables or {}))
        self.deadline = deadline
        self.logger = logger.bind(
            execution_id=execution_id,
            node_id=node.id,
            node_type=node.type,
            attempt=attempt,
        )

    @property
    def parameters(self) -> Mapping[str, Any]:
        return self.node.parameters

    @property
    def input_data(self) -> List[Item]:
        """Items received on the main input port."""
        return self.inputs.get(MAIN_PORT, [])

    def get_input(self, port: str = MAIN_PORT) -> List[Item]:
        """Items received on a named input port."""
        return self.inputs.get(port, [])

    def get_parameter(self, key: str, default: Any = None) -> Any:
        """Get a parameter value."""
        return self.node.parameters.get(key, default)

    def get_credential(self, slot: str) -> Any:
        """Get resolved credentials for a slot."""
        return self.credentials.get(slot)

    def remaining_time(self) -> Optional[float]:
        """Seconds until this attempt's deadline, if any."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - asyncio.get_running_loop().time())


class ExecutionContext:
    """Everything scoped to one in-flight execution."""

    def __init__(
        self,
        execution: Execution,
        graph: ExecutionGraph,
        settings: Settings,
        trigger_items: Optional[Sequence[Item]] = None,
        timeout_seconds: Optional[float] = None,
        variables: Optional[Dict[str, Any]] = None,
    ):
        self.execution = execution
        self.graph = graph
        self.settings = settings
        self.trigger_items = tuple(trigger_items or ())
        self.timeout_seconds = timeout_seconds
        self.variables = dict(variables or {})

        self.store = DataFlowStore()
        self.states = RunStateTable(
            (node_id, graph.node(node_id).type) for node_id in graph.node_ids
        )

        # Loop-clock deadline; set when the orchestrator starts.
        self.deadline: Optional[float] = None

        self.logger = logger.bind(
            workflow_id=execution.workflow_id,
            execution_id=execution.id,
        )

    @property
    def execution_id(self) -> str:
        return self.execution.id

    def start_clock(self) -> None:
        """Fix the execution-wide deadline relative to now."""
        if self.timeout_seconds is not None:
            self.deadline = asyncio.get_running_loop().time() + self.timeout_seconds

    def remaining_time(self) -> Optional[float]:
        """Seconds left in the execution-wide budget, if bounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - asyncio.get_running_loop().time())

    def create_node_context(
        self,
        node: NodeSpec,
        inputs: Mapping[str, Sequence[Item]],
        attempt: int,
        credentials: Optional[Mapping[str, Any]] = None,
        deadline: Optional[float] = None,
    ) -> NodeExecutionContext:
        """Create execution context for one node attempt."""
        return NodeExecutionContext(
            node=node,
            inputs=inputs,
            execution_id=self.execution.id,
            workflow_id=self.execution.workflow_id,
            mode=self.execution.mode,
            attempt=attempt,
            credentials=credentials,
            variables=self.variables,
            deadline=deadline,
        )
