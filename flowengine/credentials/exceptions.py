"""Credential-specific exceptions."""

from flowengine.exceptions import FlowEngineException, NotFoundError


class CredentialException(FlowEngineException):
    """Base exception for credential-related errors."""
    pass


class CredentialNotFoundError(CredentialException, NotFoundError):
    """Raised when a credential is not found."""
    pass


class CredentialAccessDeniedError(CredentialException):
    """Raised when a credential may not be used by the caller."""
    pass
