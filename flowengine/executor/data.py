"""Data flow store: per-node, per-port outputs of one execution."""

import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .errors import DuplicateWriteError
from .models import Item

_SKIPPED = object()

PortKey = Tuple[str, str]


class DataFlowStore:
    """Thread-safe record of what each node produced on each output port.

    A port is *resolved* once it has either been written with :meth:`put`
    (possibly with zero items) or marked with :meth:`mark_skipped`. Each
    port resolves exactly once per execution.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ports: Dict[PortKey, Union[Tuple[Item, ...], object]] = {}

    def put(self, node_id: str, port: str, items: Iterable[Union[Item, Dict[str, Any]]]) -> None:
        """Record the items a node emitted on one port."""
        frozen = tuple(Item.from_value(item) for item in items)
        with self._lock:
            key = (node_id, port)
            if key in self._ports:
                raise DuplicateWriteError(node_id, port)
            self._ports[key] = frozen

    def mark_skipped(self, node_id: str, port: str) -> None:
        """Record that a port was deliberately not activated."""
        with self._lock:
            key = (node_id, port)
            if key in self._ports:
                raise DuplicateWriteError(node_id, port)
            self._ports[key] = _SKIPPED

    def get(self, node_id: str, port: str) -> Tuple[List[Item], bool]:
        """
        Get items written to a port.

        Returns:
            Tuple of (items, written). ``written`` is False both when the
            port has not resolved yet and when it was skipped.
        """
        with self._lock:
            value = self._ports.get((node_id, port))
        if value is None or value is _SKIPPED:
            return [], False
        return list(value), True

    def is_resolved(self, node_id: str, port: str) -> bool:
        with self._lock:
            return (node_id, port) in self._ports

    def is_skipped(self, node_id: str, port: str) -> bool:
        with self._lock:
            return self._ports.get((node_id, port)) is _SKIPPED

    def outputs(self, node_id: str) -> Dict[str, Tuple[Item, ...]]:
        """Get all written (non-skipped) ports of a node."""
        with self._lock:
            return {
                port: value
                for (owner, port), value in self._ports.items()
                if owner == node_id and value is not _SKIPPED
            }

    def skipped_ports(self, node_id: str) -> List[str]:
        with self._lock:
            return [
                port for (owner, port), value in self._ports.items()
                if owner == node_id and value is _SKIPPED
            ]

    def get_items(self, node_id: str, port: str) -> Optional[List[Item]]:
        """Get items of a written port, or None if unresolved or skipped."""
        items, written = self.get(node_id, port)
        return items if written else None

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """Convert stored outputs to plain data; skipped ports map to None."""
        with self._lock:
            entries = list(self._ports.items())
        result: Dict[str, Dict[str, Any]] = {}
        for (node_id, port), value in entries:
            result.setdefault(node_id, {})[port] = (
                None if value is _SKIPPED else [item.to_dict() for item in value]
            )
        return result
