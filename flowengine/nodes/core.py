"""Core flow-control node implementations."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from flowengine.executor.errors import DataValidationError, NodeExecutionError
from flowengine.executor.models import MAIN_PORT, Item
from .base import BaseNode, NodeCategory, NodeDefinition, NodeOutput, NodeParameter, ParameterType

_MISSING = object()


def _lookup(data: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path inside item data."""
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _compare(operation: str, actual: Any, expected: Any) -> bool:
    if operation == "exists":
        return actual is not _MISSING
    if operation == "notExists":
        return actual is _MISSING
    if actual is _MISSING:
        return False
    if operation == "equal":
        return actual == expected
    if operation == "notEqual":
        return actual != expected
    if operation == "isTrue":
        return actual is True
    if operation == "isFalse":
        return actual is False
    if operation in ("contains", "notContains"):
        try:
            found = expected in actual
        except TypeError:
            found = False
        return found if operation == "contains" else not found
    try:
        if operation == "larger":
            return actual > expected
        if operation == "largerEqual":
            return actual >= expected
        if operation == "smaller":
            return actual < expected
        if operation == "smallerEqual":
            return actual <= expected
    except TypeError:
        return False
    raise DataValidationError(
        f"Unsupported condition operation: {operation}",
        field="operation",
        actual_value=operation,
    )


class ManualTriggerNode(BaseNode):
    """Manual trigger node - emits the trigger payload."""

    async def execute(self) -> NodeOutput:
        if self.context.input_data:
            return self.context.input_data

        return [{
            "triggered_at": datetime.now(timezone.utc).isoformat(),
            "trigger_type": self.context.mode.value,
        }]

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        return NodeDefinition(
            name="Manual Trigger",
            type="manualTrigger",
            category=NodeCategory.TRIGGER,
            description="Start a workflow with the trigger payload",
            inputs=[],
            outputs=[MAIN_PORT],
        )


class SetNode(BaseNode):
    """Node for setting values on every item."""

    async def execute(self) -> NodeOutput:
        values = self.get_parameter("values", {})
        keep_only_set = self.get_parameter("keepOnlySet", False)

        output_items: List[Item] = []
        for item in self.context.input_data:
            if keep_only_set:
                output_items.append(Item(json=values))
            else:
                output_items.append(item.with_json(values))

        # If no input items, create one output item
        if not output_items:
            output_items.append(Item(json=values))

        return output_items

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        return NodeDefinition(
            name="Set",
            type="set",
            category=NodeCategory.TRANSFORM,
            description="Set values on items",
            parameters=[
                NodeParameter(
                    name="values",
                    type=ParameterType.JSON,
                    default={},
                    description="Values to set",
                ),
                NodeParameter(
                    name="keepOnlySet",
                    type=ParameterType.BOOLEAN,
                    default=False,
                    description="Drop fields that were not set",
                ),
            ],
        )


class IfNode(BaseNode):
    """IF conditional node routing items to a true or false output."""

    async def execute(self) -> NodeOutput:
        conditions = self.get_parameter("conditions", [])
        combine = self.get_parameter("combine", "all")

        routed: Dict[str, List[Item]] = {"true": [], "false": []}
        for item in self.context.input_data:
            results = [
                _compare(
                    condition.get("operation", "equal"),
                    _lookup(item.json, condition["field"]),
                    condition.get("value"),
                )
                for condition in conditions
            ]
            passed = any(results) if combine == "any" else all(results)
            routed["true" if passed else "false"].append(item)

        # Only activated branches are returned; the other one is skipped.
        return {port: items for port, items in routed.items() if items}

    def validate_parameters(self) -> None:
        super().validate_parameters()
        for condition in self.get_parameter("conditions", []):
            if not isinstance(condition, Mapping) or "field" not in condition:
                raise DataValidationError(
                    "Each condition needs a 'field'",
                    field="conditions",
                    actual_value=condition,
                    node_id=self.context.node.id,
                    node_type=self.context.node.type,
                )

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        return NodeDefinition(
            name="IF",
            type="if",
            category=NodeCategory.FLOW,
            description="Route items based on conditions",
            parameters=[
                NodeParameter(
                    name="conditions",
                    type=ParameterType.ARRAY,
                    default=[],
                    description="List of {field, operation, value} conditions",
                ),
                NodeParameter(
                    name="combine",
                    type=ParameterType.OPTIONS,
                    default="all",
                    options=["all", "any"],
                    description="How conditions are combined",
                ),
            ],
            outputs=["true", "false"],
        )


class MergeNode(BaseNode):
    """Node for merging two inputs."""

    async def execute(self) -> NodeOutput:
        mode = self.get_parameter("mode", "append")
        first = self.context.get_input("input1")
        second = self.context.get_input("input2")

        if mode == "append":
            return first + second

        # combine: merge items pairwise by index
        merged: List[Item] = []
        for index in range(max(len(first), len(second))):
            data: Dict[str, Any] = {}
            if index < len(first):
                data.update(first[index].to_dict())
            if index < len(second):
                data.update(second[index].to_dict())
            merged.append(Item(json=data))
        return merged

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        return NodeDefinition(
            name="Merge",
            type="merge",
            category=NodeCategory.FLOW,
            description="Merge items from two inputs",
            parameters=[
                NodeParameter(
                    name="mode",
                    type=ParameterType.OPTIONS,
                    default="append",
                    options=["append", "combine"],
                    description="Merge mode",
                ),
            ],
            inputs=["input1", "input2"],
        )


class NoOpNode(BaseNode):
    """Pass items through unchanged."""

    async def execute(self) -> NodeOutput:
        return self.context.input_data

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        return NodeDefinition(
            name="No Operation",
            type="noOp",
            category=NodeCategory.UTILITY,
            description="Pass items through unchanged",
        )


class WaitNode(BaseNode):
    """WAIT node to pause execution."""

    _UNITS = {"milliseconds": 0.001, "seconds": 1.0, "minutes": 60.0, "hours": 3600.0}

    async def execute(self) -> NodeOutput:
        amount = self.get_parameter("amount", 1)
        unit = self.get_parameter("unit", "seconds")

        await asyncio.sleep(amount * self._UNITS[unit])

        return self.context.input_data

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        return NodeDefinition(
            name="Wait",
            type="wait",
            category=NodeCategory.FLOW,
            description="Pause execution for specified duration",
            parameters=[
                NodeParameter(
                    name="amount",
                    type=ParameterType.NUMBER,
                    default=1,
                    min_value=0,
                    description="Wait duration",
                ),
                NodeParameter(
                    name="unit",
                    type=ParameterType.OPTIONS,
                    default="seconds",
                    options=["milliseconds", "seconds", "minutes", "hours"],
                    description="Time unit",
                ),
            ],
        )


class StopAndErrorNode(BaseNode):
    """Fail the execution with a configured message."""

    async def execute(self) -> NodeOutput:
        message: Optional[str] = self.get_parameter("message", "Workflow stopped")
        raise NodeExecutionError(
            message,
            node_id=self.context.node.id,
            node_type=self.context.node.type,
            error_code="STOPPED",
        )

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        return NodeDefinition(
            name="Stop and Error",
            type="stopAndError",
            category=NodeCategory.FLOW,
            description="Stop the workflow with an error",
            parameters=[
                NodeParameter(
                    name="message",
                    type=ParameterType.STRING,
                    default="Workflow stopped",
                    description="Error message",
                ),
            ],
            outputs=[],
        )


CORE_NODES = (
    ManualTriggerNode,
    SetNode,
    IfNode,
    MergeNode,
    NoOpNode,
    WaitNode,
    StopAndErrorNode,
)
