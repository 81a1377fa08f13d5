"""Workflow execution engine module."""

from .engine import ExecutionHandle, WorkflowExecutionEngine
from .context import ExecutionContext, NodeExecutionContext
from .errors import (
    ExecutionError,
    StructuralError,
    UnknownNodeError,
    SelfLoopError,
    DuplicateNodeError,
    CircularDependencyError,
    NodeExecutionError,
    RetryableNodeError,
    NodeTimeoutError,
    CredentialResolutionError,
    UnknownNodeTypeError,
    DataValidationError,
    ExecutionTimeoutError,
    ExecutionCancelledError,
    ExecutionNotFoundError,
    ExecutionRetryError,
    DuplicateWriteError,
    InvalidStateTransitionError,
)
from .data import DataFlowStore
from .events import (
    EventDispatcher,
    EventPublisher,
    ExecutionEvent,
    ExecutionEventType,
    InMemoryEventPublisher,
    InMemoryPersistenceSink,
    PersistenceSink,
)
from .graph import ExecutionGraph
from .models import (
    MAIN_PORT,
    BinaryData,
    ConnectionSpec,
    Item,
    NodeSpec,
    WorkflowDefinition,
    WorkflowSettings,
)
from .orchestrator import ExecutionOrchestrator
from .runner import NodeResult, NodeRunner
from .state import (
    Execution,
    ExecutionMode,
    ExecutionStatus,
    NodeRunState,
    NodeRunStatus,
    RunStateTable,
)

__all__ = [
    "WorkflowExecutionEngine",
    "ExecutionHandle",
    "ExecutionContext",
    "NodeExecutionContext",
    "ExecutionError",
    "StructuralError",
    "UnknownNodeError",
    "SelfLoopError",
    "DuplicateNodeError",
    "CircularDependencyError",
    "NodeExecutionError",
    "RetryableNodeError",
    "NodeTimeoutError",
    "CredentialResolutionError",
    "UnknownNodeTypeError",
    "DataValidationError",
    "ExecutionTimeoutError",
    "ExecutionCancelledError",
    "ExecutionNotFoundError",
    "ExecutionRetryError",
    "DuplicateWriteError",
    "InvalidStateTransitionError",
    "DataFlowStore",
    "EventDispatcher",
    "EventPublisher",
    "ExecutionEvent",
    "ExecutionEventType",
    "InMemoryEventPublisher",
    "InMemoryPersistenceSink",
    "PersistenceSink",
    "ExecutionGraph",
    "MAIN_PORT",
    "BinaryData",
    "ConnectionSpec",
    "Item",
    "NodeSpec",
    "WorkflowDefinition",
    "WorkflowSettings",
    "ExecutionOrchestrator",
    "NodeResult",
    "NodeRunner",
    "Execution",
    "ExecutionMode",
    "ExecutionStatus",
    "NodeRunState",
    "NodeRunStatus",
    "RunStateTable",
]
