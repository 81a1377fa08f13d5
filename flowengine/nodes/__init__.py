"""Node system for workflow automation."""

from .base import (
    BaseNode,
    NodeCategory,
    NodeDefinition,
    NodeOutput,
    NodeParameter,
    ParameterType,
)

from .core import (
    ManualTriggerNode,
    SetNode,
    IfNode,
    MergeNode,
    NoOpNode,
    WaitNode,
    StopAndErrorNode,
)

from .registry import (
    NodeRegistry,
    default_registry,
)

__all__ = [
    # Base classes
    "BaseNode",
    "NodeCategory",
    "NodeDefinition",
    "NodeOutput",
    "NodeParameter",
    "ParameterType",

    # Core nodes
    "ManualTriggerNode",
    "SetNode",
    "IfNode",
    "MergeNode",
    "NoOpNode",
    "WaitNode",
    "StopAndErrorNode",

    # Registry
    "NodeRegistry",
    "default_registry",
]
