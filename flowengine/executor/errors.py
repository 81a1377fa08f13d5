"""Execution engine error classes."""

from typing import Any, Dict, List, Optional

from flowengine.exceptions import FlowEngineException, NotFoundError, ValidationError


class ExecutionError(FlowEngineException):
    """Base class for all execution errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


# Structural errors: the workflow graph is invalid and never starts.

class StructuralError(ExecutionError, ValidationError):
    """Raised when the workflow graph is structurally invalid."""

    def __init__(self, message: str, error_code: str = "INVALID_WORKFLOW_STRUCTURE", **kwargs):
        super().__init__(message, error_code=error_code, **kwargs)


class UnknownNodeError(StructuralError):
    """Raised when a connection references a node that does not exist."""

    def __init__(self, message: str, node_id: str, **kwargs):
        super().__init__(message, error_code="UNKNOWN_NODE", **kwargs)
        self.node_id = node_id
        self.details["node_id"] = node_id


class SelfLoopError(StructuralError):
    """Raised when a connection points a node at itself."""

    def __init__(self, message: str, node_id: str, **kwargs):
        super().__init__(message, error_code="SELF_LOOP", **kwargs)
        self.node_id = node_id
        self.details["node_id"] = node_id


class DuplicateNodeError(StructuralError):
    """Raised when two nodes share the same id."""

    def __init__(self, message: str, node_id: str, **kwargs):
        super().__init__(message, error_code="DUPLICATE_NODE", **kwargs)
        self.node_id = node_id
        self.details["node_id"] = node_id


class CircularDependencyError(StructuralError):
    """Raised when circular dependency is detected in workflow."""

    def __init__(
        self,
        message: str,
        cycle_path: List[str],
        **kwargs
    ):
        super().__init__(message, error_code="CIRCULAR_DEPENDENCY", **kwargs)
        self.cycle_path = cycle_path
        self.details["cycle_path"] = cycle_path


# Node errors: raised while running a single node.

class NodeExecutionError(ExecutionError):
    """Raised when node execution fails."""

    retryable = False

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        node_type: Optional[str] = None,
        attempt: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.node_id = node_id
        self.node_type = node_type
        self.attempt = attempt
        self.details.update({
            "node_id": node_id,
            "node_type": node_type,
            "attempt": attempt,
        })


class RetryableNodeError(NodeExecutionError):
    """Raised by nodes for transient failures that may succeed on retry."""

    retryable = True


class NodeTimeoutError(NodeExecutionError):
    """Raised when a single node exceeds its deadline."""

    retryable = True

    def __init__(self, message: str, timeout_seconds: float, **kwargs):
        super().__init__(message, error_code="NODE_TIMEOUT", **kwargs)
        self.timeout_seconds = timeout_seconds
        self.details["timeout_seconds"] = timeout_seconds


class CredentialResolutionError(NodeExecutionError):
    """Raised when credentials referenced by a node cannot be resolved."""

    def __init__(self, message: str, credential_ref: str, **kwargs):
        super().__init__(message, error_code="MISSING_CREDENTIALS", **kwargs)
        self.credential_ref = credential_ref
        self.details["credential_ref"] = credential_ref


class UnknownNodeTypeError(NodeExecutionError):
    """Raised when no implementation is registered for a node type."""

    def __init__(self, message: str, node_type: str, **kwargs):
        super().__init__(message, node_type=node_type, error_code="UNKNOWN_NODE_TYPE", **kwargs)


class DataValidationError(NodeExecutionError):
    """Raised when node parameters or output fail validation."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        expected_type: Optional[str] = None,
        actual_value: Any = None,
        **kwargs
    ):
        super().__init__(message, error_code="VALIDATION_ERROR", **kwargs)
        self.field = field
        self.expected_type = expected_type
        self.actual_value = actual_value
        self.details.update({
            "field": field,
            "expected_type": expected_type,
            "actual_value": str(actual_value),
        })


# Execution-level errors.

class ExecutionTimeoutError(ExecutionError):
    """Raised when execution times out."""

    def __init__(
        self,
        message: str,
        timeout_seconds: Optional[float],
        **kwargs
    ):
        super().__init__(message, error_code="TIMEOUT", **kwargs)
        self.timeout_seconds = timeout_seconds
        self.details["timeout_seconds"] = timeout_seconds


class ExecutionCancelledError(ExecutionError):
    """Raised when execution is cancelled."""

    def __init__(self, message: str = "Execution was cancelled", **kwargs):
        super().__init__(message, error_code="CANCELLED", **kwargs)


class ExecutionNotFoundError(ExecutionError, NotFoundError):
    """Raised when an execution id is unknown to the engine."""

    def __init__(self, execution_id: str, **kwargs):
        super().__init__(
            f"Execution {execution_id} not found",
            error_code="EXECUTION_NOT_FOUND",
            **kwargs
        )
        self.execution_id = execution_id
        self.details["execution_id"] = execution_id


class ExecutionRetryError(ExecutionError):
    """Raised when a finished execution cannot be retried."""

    def __init__(self, message: str, execution_id: str, **kwargs):
        super().__init__(message, error_code="RETRY_NOT_ALLOWED", **kwargs)
        self.execution_id = execution_id
        self.details["execution_id"] = execution_id


# Programming errors inside the engine.

class DuplicateWriteError(ExecutionError):
    """Raised when a node output port is resolved more than once."""

    def __init__(self, node_id: str, port: str, **kwargs):
        super().__init__(
            f"Output '{port}' of node '{node_id}' was already resolved",
            error_code="DUPLICATE_WRITE",
            **kwargs
        )
        self.node_id = node_id
        self.port = port
        self.details.update({"node_id": node_id, "port": port})


class InvalidStateTransitionError(ExecutionError):
    """Raised when a status change violates the state machine."""

    def __init__(self, subject: str, current: str, target: str, **kwargs):
        super().__init__(
            f"Invalid transition for {subject}: {current} -> {target}",
            error_code="INVALID_TRANSITION",
            **kwargs
        )
        self.current = current
        self.target = target
        self.details.update({"subject": subject, "current": current, "target": target})
