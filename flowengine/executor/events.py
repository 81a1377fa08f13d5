"""Execution transition events for persistence and real-time observers."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable
from uuid import uuid4

import structlog

logger = structlog.get_logger()


class ExecutionEventType(str, Enum):
    """Types of execution events."""
    EXECUTION_CREATED = "execution_created"
    EXECUTION_UPDATED = "execution_updated"
    NODE_UPDATED = "node_updated"


@dataclass
class ExecutionEvent:
    """A state transition of an execution or one of its nodes."""
    execution_id: str
    event_type: ExecutionEventType
    execution: Dict[str, Any]
    node: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "event_id": self.event_id,
            "execution_id": self.execution_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "execution": self.execution,
            "node": self.node,
        }


@runtime_checkable
class PersistenceSink(Protocol):
    """Durable storage for execution state; never read back during a run."""

    async def save(self, event: ExecutionEvent) -> None:
        ...


@runtime_checkable
class EventPublisher(Protocol):
    """Best-effort fan-out to real-time observers."""

    async def publish(self, event: ExecutionEvent) -> None:
        ...


class EventDispatcher:
    """Delivers events to the sink and publisher in order, off the hot path.

    :meth:`emit` never blocks and never raises; a single background task
    drains the queue. Failures of either collaborator are logged and
    otherwise ignored so they cannot change an execution's outcome.
    """

    def __init__(
        self,
        sink: Optional[PersistenceSink] = None,
        publisher: Optional[EventPublisher] = None,
        max_queue_size: int = 10000,
    ):
        self.sink = sink
        self.publisher = publisher
        self._max_queue_size = max_queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self.dropped = 0
        self.logger = logger.bind(component="event_dispatcher")

    @property
    def enabled(self) -> bool:
        return self.sink is not None or self.publisher is not None

    def emit(self, event: ExecutionEvent) -> None:
        """Queue an event for delivery."""
        if not self.enabled:
            return
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._max_queue_size)
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume())
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            self.logger.warning(
                "Event queue full, dropping event",
                execution_id=event.execution_id,
                event_type=event.event_type.value,
            )

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: ExecutionEvent) -> None:
        targets: List[Tuple[str, Any]] = []
        if self.sink is not None:
            targets.append(("persistence", self.sink.save))
        if self.publisher is not None:
            targets.append(("publisher", self.publisher.publish))

        for name, deliver in targets:
            try:
                await deliver(event)
            except Exception as e:
                self.logger.warning(
                    "Event delivery failed",
                    target=name,
                    execution_id=event.execution_id,
                    event_type=event.event_type.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until every queued event has been delivered."""
        if self._queue is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Timed out flushing events", pending=self._queue.qsize())

    async def close(self, timeout: Optional[float] = None) -> None:
        """Flush pending events and stop the consumer."""
        await self.flush(timeout)
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None


class InMemoryPersistenceSink:
    """Persistence sink keeping the latest snapshots in memory."""

    def __init__(self):
        self.events: List[ExecutionEvent] = []
        self.executions: Dict[str, Dict[str, Any]] = {}
        self.node_runs: Dict[Tuple[str, str], Dict[str, Any]] = {}

    async def save(self, event: ExecutionEvent) -> None:
        self.events.append(event)
        self.executions[event.execution_id] = event.execution
        if event.node is not None:
            self.node_runs[(event.execution_id, event.node["node_id"])] = event.node


class InMemoryEventPublisher:
    """Publisher fanning events out to subscriber queues."""

    def __init__(self):
        self.events: List[ExecutionEvent] = []
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def publish(self, event: ExecutionEvent) -> None:
        self.events.append(event)
        for queue in list(self._subscribers):
            queue.put_nowait(event)
