"""Base node classes and definitions."""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, List, Mapping, Optional, Sequence, Union

import structlog
from pydantic import BaseModel, Field

from flowengine.executor.context import NodeExecutionContext
from flowengine.executor.errors import DataValidationError
from flowengine.executor.models import MAIN_PORT, Item

logger = structlog.get_logger()

# What ``execute`` may return: a list for the main port, or a mapping of
# port name to items for nodes with several outputs. Ports left out of the
# mapping are treated as not activated.
ItemLike = Union[Item, Mapping[str, Any]]
NodeOutput = Union[Sequence[ItemLike], Mapping[str, Sequence[ItemLike]]]


class NodeCategory(str, Enum):
    """Node category enumeration."""
    TRIGGER = "trigger"
    ACTION = "action"
    TRANSFORM = "transform"
    FLOW = "flow"
    INTEGRATION = "integration"
    UTILITY = "utility"


class ParameterType(str, Enum):
    """Parameter type enumeration."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"
    OPTIONS = "options"
    ARRAY = "array"
    DATE = "date"


class NodeParameter(BaseModel):
    """Node parameter definition."""
    name: str = Field(..., description="Parameter name")
    display_name: Optional[str] = Field(None, description="Parameter display name")
    type: ParameterType = Field(..., description="Parameter type")
    required: bool = Field(default=False, description="Is parameter required")
    default: Any = Field(default=None, description="Default value")
    description: Optional[str] = Field(None, description="Parameter description")

    # Type-specific attributes
    options: Optional[List[str]] = Field(None, description="Options for OPTIONS type")
    min_value: Optional[Union[int, float]] = Field(None, description="Minimum value for NUMBER type")
    max_value: Optional[Union[int, float]] = Field(None, description="Maximum value for NUMBER type")

    def validate_value(self, value: Any) -> bool:
        """Validate parameter value."""
        if value is None:
            return not self.required

        if self.type == ParameterType.STRING:
            return isinstance(value, str)

        elif self.type == ParameterType.NUMBER:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return False
            if self.min_value is not None and value < self.min_value:
                return False
            if self.max_value is not None and value > self.max_value:
                return False
            return True

        elif self.type == ParameterType.BOOLEAN:
            return isinstance(value, bool)

        elif self.type == ParameterType.JSON:
            return isinstance(value, (dict, list))

        elif self.type == ParameterType.OPTIONS:
            return value in (self.options or [])

        elif self.type == ParameterType.ARRAY:
            return isinstance(value, list)

        elif self.type == ParameterType.DATE:
            return isinstance(value, (str, datetime))

        return True


class NodeDefinition(BaseModel):
    """Node type definition."""
    name: str = Field(..., description="Node display name")
    type: str = Field(..., description="Registered node type")
    category: NodeCategory = Field(default=NodeCategory.ACTION, description="Node category")
    description: str = Field(default="", description="Node description")
    version: str = Field(default="1.0", description="Node version")

    parameters: List[NodeParameter] = Field(default_factory=list, description="Node parameters")
    inputs: List[str] = Field(default_factory=lambda: [MAIN_PORT], description="Input ports")
    outputs: List[str] = Field(default_factory=lambda: [MAIN_PORT], description="Output ports")
    credentials: List[str] = Field(default_factory=list, description="Required credential slots")

    def get_parameter(self, name: str) -> Optional[NodeParameter]:
        """Get parameter by name."""
        for param in self.parameters:
            if param.name == name:
                return param
        return None


class BaseNode(ABC):
    """Base class for all nodes.

    A node instance is created for every attempt and receives its
    :class:`NodeExecutionContext`. Implementations must honour task
    cancellation: long waits should be plain ``await`` calls so the engine
    can interrupt them on timeout or abort.
    """

    def __init__(self, context: NodeExecutionContext):
        self.context = context
        self.logger = context.logger

    @property
    def name(self) -> str:
        """Get node name."""
        return self.context.node.display_name

    @property
    def parameters(self) -> Mapping[str, Any]:
        """Get node parameters."""
        return self.context.parameters

    def get_parameter(self, key: str, default: Any = None) -> Any:
        """Get parameter value, falling back to the definition default."""
        if key in self.context.parameters:
            return self.context.parameters[key]
        param = self.get_definition().get_parameter(key)
        if param is not None and param.default is not None and default is None:
            return param.default
        return default

    def validate_parameters(self) -> None:
        """Validate parameters against the node definition."""
        for param in self.get_definition().parameters:
            value = self.context.parameters.get(param.name, param.default)
            if not param.validate_value(value):
                raise DataValidationError(
                    f"Invalid value for parameter '{param.name}'",
                    field=param.name,
                    expected_type=param.type.value,
                    actual_value=value,
                    node_id=self.context.node.id,
                    node_type=self.context.node.type,
                )

    async def run(self) -> NodeOutput:
        """Run the node with lifecycle hooks."""
        try:
            self.validate_parameters()

            await self.pre_execute()

            result = await self.execute()

            await self.post_execute(result)

            return result

        except Exception as e:
            await self.on_error(e)
            raise

    async def pre_execute(self) -> None:
        """Hook called before execution."""
        pass

    @abstractmethod
    async def execute(self) -> NodeOutput:
        """Execute the node. Must be implemented by subclasses."""
        raise NotImplementedError("Node execution not implemented")

    async def post_execute(self, result: NodeOutput) -> None:
        """Hook called after successful execution."""
        pass

    async def on_error(self, error: Exception) -> None:
        """Hook called on execution error."""
        pass

    @classmethod
    @abstractmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        raise NotImplementedError("Node definition not implemented")
