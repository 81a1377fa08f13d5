"""Node registry mapping type strings to node implementations."""

from typing import Dict, List, Optional, Type

import structlog

from flowengine.executor.errors import UnknownNodeTypeError
from .base import BaseNode, NodeCategory, NodeDefinition

logger = structlog.get_logger()


class NodeRegistry:
    """Registry for node types.

    Each engine (or test) owns its registry; there is no process-wide
    instance.
    """

    def __init__(self):
        self._nodes: Dict[str, Type[BaseNode]] = {}
        self._definitions: Dict[str, NodeDefinition] = {}
        self.logger = logger.bind(component="node_registry")

    def register(self, node_class: Type[BaseNode], node_type: Optional[str] = None) -> None:
        """
        Register a node implementation.

        Args:
            node_class: Node class to register
            node_type: Type string; defaults to the definition's type

        Raises:
            ValueError: If the type is already registered
        """
        definition = node_class.get_definition()
        node_type = node_type or definition.type
        if node_type in self._nodes:
            raise ValueError(f"Node type already registered: {node_type}")

        self._nodes[node_type] = node_class
        self._definitions[node_type] = definition
        self.logger.debug("Registered node type", node_type=node_type)

    def unregister(self, node_type: str) -> None:
        self._nodes.pop(node_type, None)
        self._definitions.pop(node_type, None)

    def lookup(self, node_type: str) -> Type[BaseNode]:
        """
        Get the implementation for a node type.

        Raises:
            UnknownNodeTypeError: If the type is not registered
        """
        try:
            return self._nodes[node_type]
        except KeyError:
            raise UnknownNodeTypeError(
                f"Node type not found: {node_type}", node_type=node_type
            ) from None

    def get_definition(self, node_type: str) -> Optional[NodeDefinition]:
        return self._definitions.get(node_type)

    def has(self, node_type: str) -> bool:
        return node_type in self._nodes

    def list(self) -> List[NodeDefinition]:
        """List definitions of all registered nodes."""
        return list(self._definitions.values())

    def list_by_category(self, category: NodeCategory) -> List[NodeDefinition]:
        """List definitions filtered by category."""
        return [
            definition for definition in self._definitions.values()
            if definition.category == category
        ]


def default_registry() -> NodeRegistry:
    """Create a registry holding the built-in core nodes."""
    from .core import CORE_NODES

    registry = NodeRegistry()
    for node_class in CORE_NODES:
        registry.register(node_class)
    return registry
