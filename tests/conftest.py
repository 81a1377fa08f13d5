"""Pytest configuration and fixtures."""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import pytest
import pytest_asyncio

from flowengine.config import Settings
from flowengine.executor import (
    NodeExecutionContext,
    WorkflowDefinition,
    WorkflowExecutionEngine,
)
from flowengine.nodes import BaseNode, NodeDefinition, NodeRegistry, default_registry

Handler = Callable[[NodeExecutionContext], Awaitable[Any]]


def make_node(
    node_type: str,
    handler: Handler,
    inputs: Sequence[str] = ("main",),
    outputs: Sequence[str] = ("main",),
    credentials: Sequence[str] = (),
):
    """Create a node class whose ``execute`` delegates to ``handler``."""

    class _TestNode(BaseNode):
        async def execute(self):
            return await handler(self.context)

        @classmethod
        def get_definition(cls) -> NodeDefinition:
            return NodeDefinition(
                name=node_type,
                type=node_type,
                inputs=list(inputs),
                outputs=list(outputs),
                credentials=list(credentials),
            )

    _TestNode.__name__ = f"{node_type.title()}TestNode"
    return _TestNode


def workflow(
    nodes: List[Dict[str, Any]],
    connections: Optional[List[Dict[str, Any]]] = None,
    workflow_id: str = "wf-test",
    **settings: Any,
) -> WorkflowDefinition:
    """Build a workflow definition from plain dictionaries."""
    return WorkflowDefinition.model_validate({
        "id": workflow_id,
        "name": "Test workflow",
        "nodes": nodes,
        "connections": connections or [],
        "settings": settings,
    })


def connect(source: str, target: str, source_output: str = "main", target_input: str = "main"):
    return {
        "sourceNodeId": source,
        "sourceOutput": source_output,
        "targetNodeId": target,
        "targetInput": target_input,
    }


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast tests."""
    return Settings(
        _env_file=None,
        environment="testing",
        execution_timeout=30,
        node_hard_stop_grace=0.5,
        abort_grace_period=1.0,
    )


@pytest.fixture
def registry() -> NodeRegistry:
    return default_registry()


@pytest.fixture
def node_factory(registry: NodeRegistry):
    """Register a test node type on the per-test registry."""

    def factory(node_type: str, handler: Handler, **kwargs: Any):
        node_class = make_node(node_type, handler, **kwargs)
        registry.register(node_class)
        return node_class

    return factory


@pytest_asyncio.fixture
async def engine(registry: NodeRegistry, settings: Settings):
    engine = WorkflowExecutionEngine(registry=registry, settings=settings)
    yield engine
    await engine.shutdown(timeout=5)
