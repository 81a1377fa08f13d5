"""Main workflow execution engine."""

import asyncio
from collections import OrderedDict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from flowengine.config import Settings, get_settings
from flowengine.exceptions import ValidationError
from flowengine.metrics import EngineMetrics, ExecutionStatistics
from .context import ExecutionContext
from .errors import ExecutionNotFoundError, ExecutionRetryError, StructuralError
from .events import EventDispatcher, EventPublisher, PersistenceSink
from .graph import ExecutionGraph
from .models import MAIN_PORT, Item, WorkflowDefinition
from .orchestrator import ExecutionOrchestrator
from .runner import NodeLookup, NodeRunner
from .state import Execution, ExecutionMode, NodeRunState

logger = structlog.get_logger()

TriggerInput = Union[None, Item, Mapping[str, Any], Sequence[Union[Item, Mapping[str, Any]]]]


def _trigger_items(trigger_input: TriggerInput) -> List[Item]:
    if trigger_input is None:
        return []
    if isinstance(trigger_input, (Item, Mapping)):
        return [Item.from_value(trigger_input)]
    if isinstance(trigger_input, (str, bytes, bytearray)) or not isinstance(trigger_input, Sequence):
        raise ValidationError(
            "Trigger input must be a mapping, an Item or a sequence of them, "
            f"got {type(trigger_input).__name__}"
        )
    items = []
    for index, value in enumerate(trigger_input):
        if not isinstance(value, (Item, Mapping)):
            raise ValidationError(
                f"Trigger input item {index} must be a mapping or an Item, "
                f"got {type(value).__name__}"
            )
        items.append(Item.from_value(value))
    return items


class ExecutionHandle:
    """Caller-side view of one scheduled execution."""

    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        task: "asyncio.Task[Execution]",
        definition: WorkflowDefinition,
        trigger_items: Sequence[Item],
    ):
        self._orchestrator = orchestrator
        self._task = task
        self.definition = definition
        self.trigger_items = tuple(trigger_items)

    @property
    def id(self) -> str:
        return self._orchestrator.execution.id

    @property
    def execution(self) -> Execution:
        """Snapshot of the execution record."""
        return self._orchestrator.execution.snapshot()

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self, timeout: Optional[float] = None) -> Execution:
        """Wait for the execution to finish and return its final snapshot.

        Raises:
            asyncio.TimeoutError: If it is still running after ``timeout``
        """
        await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        return self.execution

    def cancel(self) -> bool:
        return self._orchestrator.request_cancel()

    def node_states(self) -> Dict[str, NodeRunState]:
        """Copies of every node's run state."""
        return self._orchestrator.states.snapshot()

    def node_state(self, node_id: str) -> NodeRunState:
        return self._orchestrator.states.get(node_id)

    def get_output(self, node_id: str, port: str = MAIN_PORT) -> List[Item]:
        """Items a node wrote to a port; empty if skipped or not yet written."""
        items, _ = self._orchestrator.store.get(node_id, port)
        return items


class WorkflowExecutionEngine:
    """Main workflow execution engine.

    Executions are independent: each gets its own graph, data store, state
    table and supervising task. The engine only keeps bookkeeping needed to
    answer status queries, plus the optional shared worker pool.
    """

    def __init__(
        self,
        registry: Optional[NodeLookup] = None,
        settings: Optional[Settings] = None,
        credential_provider: Optional[Any] = None,
        persistence: Optional[PersistenceSink] = None,
        publisher: Optional[EventPublisher] = None,
        metrics: Optional[EngineMetrics] = None,
    ):
        self.settings = settings or get_settings()
        if registry is None:
            from flowengine.nodes import default_registry

            registry = default_registry()
        self.registry = registry
        self.metrics = metrics or EngineMetrics(self.settings.metrics_histogram_size)
        self.events = EventDispatcher(
            sink=persistence,
            publisher=publisher,
            max_queue_size=self.settings.event_queue_size,
        )
        self.node_runner = NodeRunner(registry, self.settings, credential_provider)
        self._shared_pool = (
            asyncio.Semaphore(self.settings.shared_pool_size)
            if self.settings.shared_pool_size
            else None
        )
        self._active: Dict[str, ExecutionHandle] = {}
        self._history: "OrderedDict[str, ExecutionHandle]" = OrderedDict()
        self.logger = logger.bind(component="execution_engine")

    async def start_execution(
        self,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
        trigger_input: TriggerInput = None,
        mode: Union[ExecutionMode, str] = ExecutionMode.MANUAL,
        variables: Optional[Dict[str, Any]] = None,
        retry_of: Optional[Execution] = None,
    ) -> ExecutionHandle:
        """
        Validate a workflow and schedule its execution.

        Returns as soon as the execution is scheduled.

        Raises:
            StructuralError: If the workflow is invalid; nothing is started
            ValidationError: If the trigger input is not a mapping or a sequence of mappings
        """
        definition = self._parse_definition(definition)
        graph = ExecutionGraph.build(definition)
        trigger_items = _trigger_items(trigger_input)

        if retry_of is not None:
            execution = retry_of.create_retry()
        else:
            execution = Execution(
                workflow_id=definition.id,
                mode=ExecutionMode(mode),
                input_data=[item.to_dict() for item in trigger_items],
            )

        context = ExecutionContext(
            execution=execution,
            graph=graph,
            settings=self.settings,
            trigger_items=trigger_items,
            timeout_seconds=definition.settings.timeout or self.settings.execution_timeout,
            variables=variables,
        )
        orchestrator = ExecutionOrchestrator(
            context,
            self.node_runner,
            max_parallel_nodes=(
                definition.settings.max_parallel_nodes or self.settings.max_parallel_nodes
            ),
            metrics=self.metrics,
            events=self.events,
            shared_pool=self._shared_pool,
        )
        orchestrator.announce()

        task = asyncio.create_task(orchestrator.run(), name=f"execution:{execution.id}")
        handle = ExecutionHandle(orchestrator, task, definition, trigger_items)
        self._active[execution.id] = handle
        task.add_done_callback(lambda _: self._finished(handle))

        self.logger.info(
            "Execution scheduled",
            execution_id=execution.id,
            workflow_id=definition.id,
            mode=execution.mode.value,
            retry_of=execution.retry_of,
        )
        return handle

    async def execute(
        self,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
        trigger_input: TriggerInput = None,
        mode: Union[ExecutionMode, str] = ExecutionMode.MANUAL,
        variables: Optional[Dict[str, Any]] = None,
    ) -> ExecutionHandle:
        """Start an execution and wait for it to finish."""
        handle = await self.start_execution(definition, trigger_input, mode, variables)
        await handle.wait()
        return handle

    def cancel(self, execution_id: str) -> bool:
        """Request cancellation; False if unknown or already finished."""
        handle = self._active.get(execution_id)
        if handle is None:
            return False
        return handle.cancel()

    def get_handle(self, execution_id: str) -> ExecutionHandle:
        handle = self._active.get(execution_id) or self._history.get(execution_id)
        if handle is None:
            raise ExecutionNotFoundError(execution_id)
        return handle

    def get_status(self, execution_id: str) -> Execution:
        """Snapshot of an execution's record."""
        return self.get_handle(execution_id).execution

    async def retry_execution(self, execution_id: str) -> ExecutionHandle:
        """
        Re-run a failed or timed-out execution from the start.

        Raises:
            ExecutionNotFoundError: If the execution is unknown
            ExecutionRetryError: If the execution may not be retried
        """
        original = self.get_handle(execution_id)
        execution = original.execution
        if not execution.can_retry(self.settings.max_execution_retries):
            raise ExecutionRetryError(
                f"Execution cannot be retried (status: {execution.status.value}, "
                f"retries: {execution.retry_count}/{self.settings.max_execution_retries})",
                execution_id=execution_id,
            )
        return await self.start_execution(
            original.definition,
            list(original.trigger_items),
            retry_of=execution,
        )

    def list_active(self) -> List[Execution]:
        return [handle.execution for handle in self._active.values()]

    def get_statistics(self) -> ExecutionStatistics:
        stats = self.metrics.statistics()
        stats.running_count = len(self._active)
        return stats

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel every running execution and flush pending events."""
        handles = list(self._active.values())
        self.logger.info("Shutting down execution engine", active_executions=len(handles))
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.wait([handle._task for handle in handles], timeout=timeout)
        await self.events.close(timeout)

    def _parse_definition(
        self, definition: Union[WorkflowDefinition, Mapping[str, Any]]
    ) -> WorkflowDefinition:
        if isinstance(definition, WorkflowDefinition):
            return definition
        try:
            return WorkflowDefinition.model_validate(definition)
        except PydanticValidationError as e:
            raise StructuralError(
                f"Invalid workflow definition: {e.error_count()} validation error(s)",
                details={"errors": e.errors(include_url=False)},
            ) from e

    def _finished(self, handle: ExecutionHandle) -> None:
        self._active.pop(handle.id, None)
        self._history[handle.id] = handle
        while len(self._history) > self.settings.execution_history_size:
            self._history.popitem(last=False)
