"""Execution and node run state machines."""

import copy
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .errors import InvalidStateTransitionError
from .models import Item


class ExecutionStatus(str, Enum):
    """Execution status enumeration."""
    WAITING = "waiting"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_EXECUTION_STATUSES


class NodeRunStatus(str, Enum):
    """Node run status enumeration."""
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_NODE_STATUSES


class ExecutionMode(str, Enum):
    """How an execution was triggered."""
    MANUAL = "manual"
    TRIGGER = "trigger"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    RETRY = "retry"
    TEST = "test"


_TERMINAL_EXECUTION_STATUSES: FrozenSet[ExecutionStatus] = frozenset({
    ExecutionStatus.SUCCESS,
    ExecutionStatus.ERROR,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMEOUT,
})

_TERMINAL_NODE_STATUSES: FrozenSet[NodeRunStatus] = frozenset({
    NodeRunStatus.SUCCESS,
    NodeRunStatus.ERROR,
    NodeRunStatus.SKIPPED,
})

EXECUTION_TRANSITIONS: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
    # An execution may be aborted before its first node is dispatched.
    ExecutionStatus.WAITING: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.ERROR,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMEOUT,
    }),
    ExecutionStatus.RUNNING: _TERMINAL_EXECUTION_STATUSES,
}

NODE_TRANSITIONS: Dict[NodeRunStatus, FrozenSet[NodeRunStatus]] = {
    NodeRunStatus.PENDING: frozenset({NodeRunStatus.READY, NodeRunStatus.SKIPPED}),
    NodeRunStatus.READY: frozenset({NodeRunStatus.RUNNING, NodeRunStatus.SKIPPED}),
    NodeRunStatus.RUNNING: frozenset({NodeRunStatus.SUCCESS, NodeRunStatus.ERROR}),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _duration_ms(started_at: Optional[datetime], finished_at: Optional[datetime]) -> Optional[int]:
    if started_at and finished_at:
        return int((finished_at - started_at).total_seconds() * 1000)
    return None


@dataclass
class Execution:
    """One run of a workflow definition."""

    workflow_id: str
    mode: ExecutionMode = ExecutionMode.MANUAL
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ExecutionStatus = ExecutionStatus.WAITING
    created_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_node_id: Optional[str] = None
    error_message: Optional[str] = None
    retry_of: Optional[str] = None
    retry_count: int = 0
    # Trigger payload, one dict per item
    input_data: List[Dict[str, Any]] = field(default_factory=list)
    # Items on the written ports of each successful leaf node, keyed by node then port
    output_data: Optional[Dict[str, Dict[str, List[Dict[str, Any]]]]] = None

    def _transition(self, target: ExecutionStatus) -> None:
        allowed = EXECUTION_TRANSITIONS.get(self.status, frozenset())
        if target not in allowed:
            raise InvalidStateTransitionError(
                f"execution {self.id}", self.status.value, target.value
            )
        self.status = target

    def start(self) -> None:
        """Mark the execution as running."""
        self._transition(ExecutionStatus.RUNNING)
        self.started_at = _now()

    def complete(self, output_data: Optional[Dict[str, Dict[str, List[Dict[str, Any]]]]] = None) -> None:
        """Mark the execution as completed successfully."""
        self._transition(ExecutionStatus.SUCCESS)
        self.output_data = output_data or {}
        self._finish()

    def fail(self, message: str, node_id: Optional[str] = None) -> None:
        """Mark the execution as failed."""
        self._transition(ExecutionStatus.ERROR)
        self.error_message = message
        self.error_node_id = node_id
        self._finish()

    def cancel(self) -> None:
        """Mark the execution as cancelled."""
        self._transition(ExecutionStatus.CANCELLED)
        self._finish()

    def timeout(self, message: Optional[str] = None) -> None:
        """Mark the execution as timed out."""
        self._transition(ExecutionStatus.TIMEOUT)
        self.error_message = message
        self._finish()

    def _finish(self) -> None:
        self.finished_at = _now()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def execution_time_ms(self) -> Optional[int]:
        """Get execution time in milliseconds."""
        return _duration_ms(self.started_at or self.created_at, self.finished_at)

    def can_retry(self, max_retries: int) -> bool:
        """Check whether a retry execution may be created."""
        return (
            self.status in (ExecutionStatus.ERROR, ExecutionStatus.TIMEOUT)
            and self.retry_count < max_retries
        )

    def create_retry(self) -> "Execution":
        """Create a new waiting execution that retries this one."""
        return Execution(
            workflow_id=self.workflow_id,
            mode=ExecutionMode.RETRY,
            retry_of=self.id,
            retry_count=self.retry_count + 1,
            input_data=copy.deepcopy(self.input_data),
        )

    def snapshot(self) -> "Execution":
        return replace(
            self,
            input_data=copy.deepcopy(self.input_data),
            output_data=copy.deepcopy(self.output_data),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "mode": self.mode.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "execution_time_ms": self.execution_time_ms,
            "error_node_id": self.error_node_id,
            "error_message": self.error_message,
            "retry_of": self.retry_of,
            "retry_count": self.retry_count,
            "input_data": copy.deepcopy(self.input_data),
            "output_data": copy.deepcopy(self.output_data),
        }


@dataclass
class NodeRunState:
    """Run state of one node within one execution."""

    node_id: str
    node_type: str
    status: NodeRunStatus = NodeRunStatus.PENDING
    attempt: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    inputs_by_port: Dict[str, Tuple[Item, ...]] = field(default_factory=dict)
    outputs_by_port: Dict[str, Tuple[Item, ...]] = field(default_factory=dict)
    error: Optional[BaseException] = None
    error_recorded: bool = False

    def transition(self, target: NodeRunStatus) -> None:
        allowed = NODE_TRANSITIONS.get(self.status, frozenset())
        if target not in allowed:
            raise InvalidStateTransitionError(
                f"node {self.node_id}", self.status.value, target.value
            )
        self.status = target
        if target == NodeRunStatus.RUNNING:
            self.started_at = _now()
        elif target.is_terminal:
            self.finished_at = _now()

    @property
    def execution_time_ms(self) -> Optional[int]:
        return _duration_ms(self.started_at, self.finished_at)

    def copy(self) -> "NodeRunState":
        return replace(
            self,
            inputs_by_port=dict(self.inputs_by_port),
            outputs_by_port=dict(self.outputs_by_port),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "status": self.status.value,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "execution_time_ms": self.execution_time_ms,
            "inputs": {
                port: [item.to_dict() for item in items]
                for port, items in self.inputs_by_port.items()
            },
            "outputs": {
                port: [item.to_dict() for item in items]
                for port, items in self.outputs_by_port.items()
            },
            "error": str(self.error) if self.error else None,
            "error_recorded": self.error_recorded,
        }


class RunStateTable:
    """Lock-guarded map of node id to run state for one execution.

    Callers always receive copies; mutations go through :meth:`transition`
    and :meth:`update` so the lock is never held outside this class.
    """

    def __init__(self, nodes: Iterable[Tuple[str, str]]):
        self._lock = threading.Lock()
        self._states: Dict[str, NodeRunState] = {
            node_id: NodeRunState(node_id=node_id, node_type=node_type)
            for node_id, node_type in nodes
        }

    def get(self, node_id: str) -> NodeRunState:
        with self._lock:
            return self._states[node_id].copy()

    def status(self, node_id: str) -> NodeRunStatus:
        with self._lock:
            return self._states[node_id].status

    def transition(self, node_id: str, target: NodeRunStatus, **changes: Any) -> NodeRunState:
        """Move a node to ``target`` and apply field changes atomically."""
        with self._lock:
            state = self._states[node_id]
            state.transition(target)
            for name, value in changes.items():
                setattr(state, name, value)
            return state.copy()

    def update(self, node_id: str, **changes: Any) -> NodeRunState:
        with self._lock:
            state = self._states[node_id]
            for name, value in changes.items():
                setattr(state, name, value)
            return state.copy()

    def with_status(self, *statuses: NodeRunStatus) -> List[str]:
        with self._lock:
            return [
                node_id for node_id, state in self._states.items()
                if state.status in statuses
            ]

    def all_terminal(self) -> bool:
        with self._lock:
            return all(state.status.is_terminal for state in self._states.values())

    def snapshot(self) -> Dict[str, NodeRunState]:
        with self._lock:
            return {node_id: state.copy() for node_id, state in self._states.items()}
