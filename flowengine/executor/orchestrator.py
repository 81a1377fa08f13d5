"""Supervisor driving a single execution from trigger to terminal status."""

import asyncio
from typing import Any, Dict, List, Optional

import structlog

from flowengine.metrics import EngineMetrics
from .context import ExecutionContext
from .errors import (
    ExecutionCancelledError,
    ExecutionError,
    ExecutionTimeoutError,
    NodeExecutionError,
)
from .events import EventDispatcher, ExecutionEvent, ExecutionEventType
from .runner import NodeResult, NodeRunner
from .state import Execution, ExecutionStatus, NodeRunState, NodeRunStatus

logger = structlog.get_logger()

# Wakes the supervisor when a cancel is requested.
_CANCEL = object()


class ExecutionOrchestrator:
    """Runs one execution's graph.

    Only the supervising coroutine (:meth:`run`) decides readiness and
    terminal statuses. Workers run nodes through the :class:`NodeRunner`
    and report back on a completion queue, so readiness is always
    evaluated after the upstream writes it depends on.
    """

    def __init__(
        self,
        context: ExecutionContext,
        runner: NodeRunner,
        max_parallel_nodes: int,
        metrics: Optional[EngineMetrics] = None,
        events: Optional[EventDispatcher] = None,
        shared_pool: Optional[asyncio.Semaphore] = None,
    ):
        self.context = context
        self.graph = context.graph
        self.states = context.states
        self.store = context.store
        self.runner = runner
        self.metrics = metrics
        self.events = events
        self._pool = asyncio.Semaphore(max_parallel_nodes)
        self._shared_pool = shared_pool
        self._completions: asyncio.Queue = asyncio.Queue()
        self._workers: Dict[str, asyncio.Task] = {}
        self._cancel_requested = False
        self.logger = context.logger.bind(component="orchestrator")

    @property
    def execution(self) -> Execution:
        return self.context.execution

    def request_cancel(self) -> bool:
        """Ask the supervisor to cancel; False if already finished or cancelling."""
        if self.execution.is_terminal or self._cancel_requested:
            return False
        self._cancel_requested = True
        self._completions.put_nowait(_CANCEL)
        return True

    async def run(self) -> Execution:
        """Drive the execution to a terminal status and return it."""
        if self._cancel_requested:
            await self._abort(ExecutionStatus.CANCELLED, ExecutionCancelledError())
            return self.execution

        self.execution.start()
        self.context.start_clock()
        self.logger.info(
            "Starting workflow execution",
            mode=self.execution.mode.value,
            node_count=len(self.graph),
            timeout_seconds=self.context.timeout_seconds,
        )
        self._emit_execution()

        try:
            await self._supervise()
        except asyncio.CancelledError:
            if not self.execution.is_terminal:
                await self._abort(ExecutionStatus.CANCELLED, ExecutionCancelledError())
            raise
        return self.execution

    async def _supervise(self) -> None:
        self._resolve_skips()
        self._dispatch_ready()

        while True:
            if self._cancel_requested:
                self.logger.info("Cancelling execution")
                await self._abort(ExecutionStatus.CANCELLED, ExecutionCancelledError())
                return
            if self._budget_exhausted():
                await self._abort(ExecutionStatus.TIMEOUT, self._timeout_error())
                return

            if not self._workers:
                if self.states.all_terminal():
                    self._complete()
                else:
                    await self._fail_deadlock()
                return

            try:
                message = await asyncio.wait_for(
                    self._completions.get(), timeout=self.context.remaining_time()
                )
            except asyncio.TimeoutError:
                await self._abort(ExecutionStatus.TIMEOUT, self._timeout_error())
                return

            if message is _CANCEL:
                continue

            node_id, result = message
            self._workers.pop(node_id, None)
            self._record_result(node_id, result)

            if result.failed:
                if self._budget_exhausted() or isinstance(
                    result.error.__cause__, ExecutionTimeoutError
                ):
                    await self._abort(ExecutionStatus.TIMEOUT, self._timeout_error())
                else:
                    await self._abort(
                        ExecutionStatus.ERROR,
                        ExecutionCancelledError(f"Cancelled because node '{node_id}' failed"),
                        failed_node=node_id,
                        failure=result.error,
                    )
                return

            self._resolve_skips()
            self._dispatch_ready()

    def _is_ready(self, node_id: str) -> bool:
        return all(
            self.store.is_resolved(connection.source_node_id, connection.source_output)
            for connection in self.graph.incoming(node_id)
        )

    def _resolve_skips(self) -> None:
        """Skip pending nodes whose inputs were all skipped upstream.

        Walking in topological order lets skips cascade in one pass.
        """
        for node_id in self.graph.topological_order:
            if self.states.status(node_id) != NodeRunStatus.PENDING:
                continue
            incoming = self.graph.incoming(node_id)
            if not incoming or not self._is_ready(node_id):
                continue
            if all(
                self.store.is_skipped(connection.source_node_id, connection.source_output)
                for connection in incoming
            ):
                state = self.states.transition(node_id, NodeRunStatus.SKIPPED)
                for port in self.graph.output_ports(node_id):
                    self.store.mark_skipped(node_id, port)
                self.logger.debug("Node skipped, no active inputs", node_id=node_id)
                self._node_finished(state)

    def _dispatch_ready(self) -> None:
        for node_id in self.graph.topological_order:
            if self.states.status(node_id) != NodeRunStatus.PENDING:
                continue
            if not self._is_ready(node_id):
                continue
            state = self.states.transition(node_id, NodeRunStatus.READY)
            self._emit_node(state)
            self._workers[node_id] = asyncio.create_task(
                self._work(node_id), name=f"node:{self.execution.id}:{node_id}"
            )

    async def _work(self, node_id: str) -> None:
        node = self.graph.node(node_id)
        async with self._pool:
            if self._shared_pool is None:
                result = await self._run_node(node_id, node)
            else:
                async with self._shared_pool:
                    result = await self._run_node(node_id, node)
        self._completions.put_nowait((node_id, result))

    async def _run_node(self, node_id: str, node) -> NodeResult:
        state = self.states.transition(node_id, NodeRunStatus.RUNNING)
        self._emit_node(state)
        try:
            return await self.runner.run(node, self.context)
        except Exception as e:
            # Engine-side failure such as a duplicate write.
            self.logger.exception(
                "Node run failed inside the engine",
                node_id=node_id,
                error_type=type(e).__name__,
            )
            error = NodeExecutionError(str(e), node_id=node_id, node_type=node.type)
            error.__cause__ = e
            return NodeResult(node_id=node_id, status=NodeRunStatus.ERROR, error=error)

    def _record_result(self, node_id: str, result: NodeResult) -> None:
        if result.status == NodeRunStatus.SUCCESS:
            state = self.states.transition(
                node_id,
                NodeRunStatus.SUCCESS,
                outputs_by_port=dict(result.outputs),
                error=result.error,
                error_recorded=result.error_recorded,
            )
        else:
            state = self.states.transition(node_id, NodeRunStatus.ERROR, error=result.error)
        self._node_finished(state)

    def _budget_exhausted(self) -> bool:
        remaining = self.context.remaining_time()
        return remaining is not None and remaining <= 0

    def _timeout_error(self) -> ExecutionTimeoutError:
        return ExecutionTimeoutError(
            f"Execution timed out after {self.context.timeout_seconds} seconds",
            timeout_seconds=self.context.timeout_seconds,
        )

    async def _abort(
        self,
        status: ExecutionStatus,
        error: ExecutionError,
        failed_node: Optional[str] = None,
        failure: Optional[NodeExecutionError] = None,
    ) -> None:
        """Stop every worker, settle node statuses and finish the execution."""
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        if workers:
            _, pending = await asyncio.wait(
                workers, timeout=self.context.settings.abort_grace_period
            )
            if pending:
                self.logger.warning(
                    "Workers did not stop within grace period",
                    pending=len(pending),
                    grace_seconds=self.context.settings.abort_grace_period,
                )
        self._workers.clear()

        # Results that were reported before the workers were stopped still count.
        while not self._completions.empty():
            message = self._completions.get_nowait()
            if message is _CANCEL:
                continue
            node_id, result = message
            if self.states.status(node_id) == NodeRunStatus.RUNNING:
                self._record_result(node_id, result)

        for node_id in self.states.with_status(NodeRunStatus.RUNNING):
            state = self.states.transition(node_id, NodeRunStatus.ERROR, error=error)
            self._node_finished(state)
        for node_id in self.states.with_status(NodeRunStatus.PENDING, NodeRunStatus.READY):
            state = self.states.transition(node_id, NodeRunStatus.SKIPPED)
            self._node_finished(state)

        if status == ExecutionStatus.ERROR:
            message = failure.message if failure is not None else error.message
            self.execution.fail(message, node_id=failed_node)
            self.logger.error(
                "Workflow execution failed",
                error_node_id=failed_node,
                error=message,
            )
        elif status == ExecutionStatus.TIMEOUT:
            self.execution.timeout(error.message)
            self.logger.warning(
                "Workflow execution timed out",
                timeout_seconds=self.context.timeout_seconds,
            )
        else:
            self.execution.cancel()
            self.logger.info("Workflow execution cancelled")
        self._execution_finished()

    async def _fail_deadlock(self) -> None:
        stuck = self.states.with_status(NodeRunStatus.PENDING, NodeRunStatus.READY)
        self.logger.critical("Execution deadlocked, no node can make progress", stuck_nodes=stuck)
        for node_id in stuck:
            state = self.states.transition(node_id, NodeRunStatus.SKIPPED)
            self._node_finished(state)
        self.execution.fail(
            f"Execution cannot make progress; unresolved nodes: {', '.join(stuck)}"
        )
        self._execution_finished()

    def _complete(self) -> None:
        self.execution.complete(self._collect_output())
        self.logger.info(
            "Workflow execution completed",
            execution_time_ms=self.execution.execution_time_ms,
        )
        self._execution_finished()

    def _collect_output(self) -> Dict[str, Dict[str, List[Dict[str, Any]]]]:
        """Written ports of successful nodes without outgoing connections."""
        output: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
        for node_id in self.graph.topological_order:
            if self.graph.outgoing(node_id):
                continue
            if self.states.status(node_id) != NodeRunStatus.SUCCESS:
                continue
            output[node_id] = {
                port: [item.to_dict() for item in items]
                for port, items in self.store.outputs(node_id).items()
            }
        return output

    def _node_finished(self, state: NodeRunState) -> None:
        if self.metrics is not None:
            self.metrics.record_node(
                state.node_type,
                state.status.value,
                duration_ms=state.execution_time_ms,
                error=str(state.error) if state.status == NodeRunStatus.ERROR and state.error else None,
            )
        self._emit_node(state)

    def _execution_finished(self) -> None:
        if self.metrics is not None:
            self.metrics.record_execution(
                self.execution.status.value,
                self.execution.execution_time_ms,
                self.execution.finished_at,
            )
        self._emit_execution()

    def announce(self) -> None:
        """Publish the creation of the execution."""
        self._emit_execution()

    def _emit_execution(self) -> None:
        if self.events is None:
            return
        event_type = (
            ExecutionEventType.EXECUTION_CREATED
            if self.execution.status == ExecutionStatus.WAITING
            else ExecutionEventType.EXECUTION_UPDATED
        )
        self.events.emit(ExecutionEvent(
            execution_id=self.execution.id,
            event_type=event_type,
            execution=self.execution.to_dict(),
        ))

    def _emit_node(self, state: NodeRunState) -> None:
        if self.events is None:
            return
        self.events.emit(ExecutionEvent(
            execution_id=self.execution.id,
            event_type=ExecutionEventType.NODE_UPDATED,
            execution=self.execution.to_dict(),
            node=state.to_dict(),
        ))
