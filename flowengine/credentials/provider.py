"""Credential provider interface and an in-memory implementation."""

from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from .exceptions import CredentialNotFoundError


@runtime_checkable
class CredentialProvider(Protocol):
    """Resolves credential references to decrypted credential data."""

    async def resolve(self, ref: str) -> Mapping[str, Any]:
        ...


class InMemoryCredentialProvider:
    """Credential provider backed by a plain dictionary."""

    def __init__(self, credentials: Optional[Dict[str, Mapping[str, Any]]] = None):
        self._credentials: Dict[str, Mapping[str, Any]] = dict(credentials or {})

    def add(self, ref: str, data: Mapping[str, Any]) -> None:
        self._credentials[ref] = dict(data)

    def remove(self, ref: str) -> None:
        self._credentials.pop(ref, None)

    async def resolve(self, ref: str) -> Mapping[str, Any]:
        try:
            return dict(self._credentials[ref])
        except KeyError:
            raise CredentialNotFoundError(f"Credential '{ref}' not found") from None
