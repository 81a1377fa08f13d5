"""Base exceptions for flowengine."""


class FlowEngineException(Exception):
    """Base exception for all flowengine errors."""
    pass


class ConfigurationError(FlowEngineException):
    """Raised when there's a configuration error."""
    pass


class ValidationError(FlowEngineException):
    """Raised when validation fails."""
    pass


class NotFoundError(FlowEngineException):
    """Raised when a resource is not found."""
    pass
