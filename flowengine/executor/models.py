"""Workflow definition and item models."""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


MAIN_PORT = "main"


def _freeze(value: Any) -> Any:
    """Return a read-only deep copy of JSON-like data."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(val) for key, val in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(val) for val in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(_freeze(val) for val in value)
    if isinstance(value, bytearray):
        return bytes(value)
    return value


def _thaw(value: Any) -> Any:
    """Return a mutable copy of frozen data."""
    if isinstance(value, Mapping):
        return {key: _thaw(val) for key, val in value.items()}
    if isinstance(value, tuple):
        return [_thaw(val) for val in value]
    if isinstance(value, frozenset):
        return {_thaw(val) for val in value}
    return value


@dataclass(frozen=True)
class BinaryData:
    """Binary attachment carried by an item."""

    data: bytes = b""
    mime_type: str = "application/octet-stream"
    file_name: Optional[str] = None
    file_size: int = 0

    def __post_init__(self):
        if isinstance(self.data, bytearray):
            object.__setattr__(self, "data", bytes(self.data))
        if not self.file_size:
            object.__setattr__(self, "file_size", len(self.data))


@dataclass(frozen=True)
class Item:
    """A unit of payload flowing along a connection.

    Items are frozen on creation: ``json`` is a read-only mapping (nested
    lists become tuples) so downstream nodes cannot alter what an upstream
    node emitted. Use :meth:`with_json` or :meth:`to_dict` to derive new data.
    """

    json: Mapping[str, Any] = field(default_factory=dict)
    binary: Mapping[str, BinaryData] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "json", _freeze(self.json or {}))
        object.__setattr__(self, "binary", MappingProxyType(dict(self.binary or {})))

    @classmethod
    def from_value(cls, value: Union["Item", Mapping[str, Any]]) -> "Item":
        """Coerce a node-produced value into an item."""
        if isinstance(value, Item):
            return value
        if isinstance(value, Mapping):
            return cls(json=value)
        raise TypeError(f"Cannot convert {type(value).__name__} to Item")

    @classmethod
    def from_error(cls, error: BaseException, node_id: str) -> "Item":
        """Build the item emitted by a continue-on-fail node."""
        message = getattr(error, "message", None) or str(error)
        return cls(json={
            "error": message,
            "error_type": type(error).__name__,
            "node_id": node_id,
        })

    def to_dict(self) -> Dict[str, Any]:
        """Get a mutable copy of the JSON payload."""
        return _thaw(self.json)

    def with_json(self, updates: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> "Item":
        """Return a new item with the JSON payload updated."""
        data = self.to_dict()
        data.update(updates or {})
        data.update(kwargs)
        return Item(json=data, binary=self.binary)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a top-level JSON value."""
        return self.json.get(key, default)


class _SpecModel(BaseModel):
    """Base for immutable definition models accepting camelCase keys."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class NodeSpec(_SpecModel):
    """A single node in a workflow definition."""

    id: str = Field(..., min_length=1, description="Unique node id")
    name: Optional[str] = Field(None, description="Display name")
    type: str = Field(..., min_length=1, description="Registered node type")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Node parameters")
    credentials: Dict[str, str] = Field(
        default_factory=dict, description="Credential slot to credential reference"
    )
    max_retries: int = Field(default=0, ge=0, description="Retries after the first attempt")
    retry_delay: float = Field(default=1.0, ge=0, description="Base retry delay in seconds")
    continue_on_fail: bool = Field(default=False, description="Absorb final errors")
    timeout: Optional[float] = Field(None, gt=0, description="Per-node timeout in seconds")
    disabled: bool = Field(default=False, description="Pass input through without running")
    execute_once: bool = Field(default=False, description="Only process the first item per input port")

    @property
    def display_name(self) -> str:
        return self.name or self.id


class ConnectionSpec(_SpecModel):
    """A directed data link between two node ports."""

    source_node_id: str = Field(..., min_length=1)
    source_output: str = Field(default=MAIN_PORT)
    target_node_id: str = Field(..., min_length=1)
    target_input: str = Field(default=MAIN_PORT)
    disabled: bool = Field(default=False)


class WorkflowSettings(_SpecModel):
    """Per-workflow execution settings."""

    timeout: Optional[float] = Field(None, gt=0, description="Execution-wide timeout in seconds")
    max_parallel_nodes: Optional[int] = Field(None, ge=1, description="Concurrency override")


class WorkflowDefinition(_SpecModel):
    """Declarative workflow: nodes plus connections."""

    id: str = Field(..., min_length=1)
    name: str = Field(default="")
    nodes: List[NodeSpec] = Field(..., min_length=1)
    connections: List[ConnectionSpec] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
