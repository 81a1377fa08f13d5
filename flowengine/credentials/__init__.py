"""Credential resolution for node execution."""

from .exceptions import (
    CredentialException,
    CredentialNotFoundError,
    CredentialAccessDeniedError,
)
from .provider import CredentialProvider, InMemoryCredentialProvider

__all__ = [
    "CredentialException",
    "CredentialNotFoundError",
    "CredentialAccessDeniedError",
    "CredentialProvider",
    "InMemoryCredentialProvider",
]
