"""Node runner for executing individual nodes."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Type

import structlog

from flowengine.config import Settings
from .context import ExecutionContext
from .errors import (
    CredentialResolutionError,
    DataValidationError,
    ExecutionTimeoutError,
    NodeExecutionError,
    NodeTimeoutError,
)
from .models import MAIN_PORT, Item, NodeSpec
from .state import NodeRunStatus

logger = structlog.get_logger()

# Exceptions raised by node code that are worth another attempt.
RETRYABLE_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


class NodeLookup(Protocol):
    """What the runner needs from a node registry."""

    def lookup(self, node_type: str) -> Any:
        ...


@dataclass
class NodeResult:
    """Outcome of running one node to completion."""
    node_id: str
    status: NodeRunStatus
    outputs: Dict[str, Tuple[Item, ...]] = field(default_factory=dict)
    skipped_ports: List[str] = field(default_factory=list)
    error: Optional[NodeExecutionError] = None
    attempts: int = 0
    error_recorded: bool = False

    @property
    def failed(self) -> bool:
        return self.status == NodeRunStatus.ERROR


def is_retryable(error: BaseException) -> bool:
    """Classify an error raised by a node attempt."""
    if isinstance(error, NodeExecutionError):
        return error.retryable
    if getattr(error, "retryable", False):
        return True
    return isinstance(error, RETRYABLE_EXCEPTIONS)


class NodeRunner:
    """Runs individual nodes: inputs, credentials, deadlines, retries."""

    def __init__(
        self,
        registry: NodeLookup,
        settings: Settings,
        credential_provider: Optional[Any] = None,
    ):
        self.registry = registry
        self.settings = settings
        self.credential_provider = credential_provider
        self.logger = logger.bind(component="node_runner")

    @staticmethod
    def assemble_inputs(context: ExecutionContext, node_id: str) -> Dict[str, List[Item]]:
        """
        Merge upstream items into the node's input ports.

        Items from several connections into the same input port are
        concatenated in connection declaration order. Skipped upstream ports
        contribute nothing. Root nodes receive the trigger payload on the
        main port.
        """
        incoming = context.graph.incoming(node_id)
        if not incoming:
            return {MAIN_PORT: list(context.trigger_items)}

        inputs: Dict[str, List[Item]] = {}
        for connection in incoming:
            items, _ = context.store.get(connection.source_node_id, connection.source_output)
            inputs.setdefault(connection.target_input, []).extend(items)
        return inputs

    def retry_delay(self, node: NodeSpec, attempt: int) -> float:
        """Delay before the retry that follows zero-based ``attempt``."""
        delay = node.retry_delay * (self.settings.retry_backoff_factor ** attempt)
        return min(delay, self.settings.max_retry_delay)

    async def run(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        inputs: Optional[Mapping[str, Sequence[Item]]] = None,
    ) -> NodeResult:
        """Run a node until it succeeds, exhausts its retries or fails hard."""
        node_logger = context.logger.bind(node_id=node.id, node_type=node.type)
        if inputs is None:
            inputs = self.assemble_inputs(context, node.id)

        if node.disabled:
            node_logger.info("Node disabled, passing input through")
            return self._pass_through(node, context, inputs)

        if node.execute_once:
            inputs = {port: list(items[:1]) for port, items in inputs.items()}
        context.states.update(
            node.id, inputs_by_port={port: tuple(items) for port, items in inputs.items()}
        )

        definition = None
        try:
            node_class = self.registry.lookup(node.type)
            definition = node_class.get_definition()
            credentials = await self._resolve_credentials(node, definition.credentials)
        except NodeExecutionError as e:
            # Unknown types and credential failures are never retried.
            self._fill_error(e, node, attempt=1)
            context.states.update(node.id, attempt=1)
            return self._finish_error(node, context, e, definition, attempts=1, node_logger=node_logger)

        attempt = 0
        while True:
            context.states.update(node.id, attempt=attempt + 1)
            node_logger.info("Starting node execution", attempt=attempt + 1)
            try:
                raw_output = await self._invoke(
                    node_class, node, context, inputs, credentials, attempt, node_logger
                )
                outputs = self._normalize_output(node, definition, raw_output)
            except ExecutionTimeoutError as e:
                # The execution budget ran out; the orchestrator times the run out.
                error = NodeExecutionError(
                    e.message, node_id=node.id, node_type=node.type, attempt=attempt + 1,
                    error_code="TIMEOUT",
                )
                error.__cause__ = e
                return self._finish_error(
                    node, context, error, definition, attempts=attempt + 1,
                    node_logger=node_logger, absorb=False,
                )
            except Exception as e:
                error = self._wrap_error(e, node, attempt + 1)
                if is_retryable(e) and attempt < node.max_retries:
                    delay = self.retry_delay(node, attempt)
                    node_logger.warning(
                        "Node attempt failed, will retry",
                        attempt=attempt + 1,
                        max_retries=node.max_retries,
                        delay_seconds=delay,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue
                return self._finish_error(
                    node, context, error, definition, attempts=attempt + 1, node_logger=node_logger
                )

            return self._finish_success(
                node, context, definition, outputs, attempts=attempt + 1, node_logger=node_logger
            )

    async def _invoke(
        self,
        node_class: Any,
        node: NodeSpec,
        context: ExecutionContext,
        inputs: Mapping[str, Sequence[Item]],
        credentials: Mapping[str, Any],
        attempt: int,
        node_logger: Any,
    ) -> Any:
        """Run one attempt under the node deadline."""
        timeout = node.timeout or self.settings.default_node_timeout
        remaining = context.remaining_time()
        bounded_by_execution = False
        if remaining is not None and (timeout is None or remaining < timeout):
            timeout = remaining
            bounded_by_execution = True

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        node_context = context.create_node_context(
            node, inputs, attempt=attempt, credentials=credentials, deadline=deadline
        )
        instance = node_class(node_context)

        task = asyncio.ensure_future(instance.run())
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            await self._stop(task, node_logger)
            raise

        if task in done:
            return task.result()

        await self._stop(task, node_logger)
        if bounded_by_execution:
            raise ExecutionTimeoutError(
                "Execution timed out while node was running",
                timeout_seconds=context.timeout_seconds,
            )
        raise NodeTimeoutError(
            f"Node execution timed out after {timeout} seconds",
            timeout_seconds=timeout,
            node_id=node.id,
            node_type=node.type,
            attempt=attempt + 1,
        )

    async def _stop(self, task: asyncio.Future, node_logger: Any) -> None:
        """Cancel a node attempt and wait a bounded time for it to unwind."""
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=self.settings.node_hard_stop_grace)
        if task in done:
            _consume_result(task)
            return
        node_logger.warning(
            "Node ignored cancellation, releasing worker slot",
            grace_seconds=self.settings.node_hard_stop_grace,
        )
        task.add_done_callback(_consume_result)

    async def _resolve_credentials(
        self, node: NodeSpec, required_slots: Sequence[str]
    ) -> Dict[str, Any]:
        for slot in required_slots:
            if slot not in node.credentials:
                raise CredentialResolutionError(
                    f"Node '{node.id}' requires credentials '{slot}'",
                    credential_ref=slot,
                )

        if not node.credentials:
            return {}
        if self.credential_provider is None:
            raise CredentialResolutionError(
                "No credential provider configured",
                credential_ref=next(iter(node.credentials.values())),
            )

        resolved: Dict[str, Any] = {}
        for slot, ref in node.credentials.items():
            try:
                resolved[slot] = await self.credential_provider.resolve(ref)
            except Exception as e:
                error = CredentialResolutionError(
                    f"Failed to resolve credentials '{ref}': {e}",
                    credential_ref=ref,
                )
                raise error from e
        return resolved

    def _normalize_output(
        self, node: NodeSpec, definition: Any, raw_output: Any
    ) -> Dict[str, Tuple[Item, ...]]:
        """Convert what a node returned into port -> items."""
        if raw_output is None:
            raw_output = []
        if isinstance(raw_output, Mapping):
            by_port = dict(raw_output)
        elif isinstance(raw_output, (list, tuple)):
            by_port = {MAIN_PORT: raw_output}
        else:
            raise DataValidationError(
                f"Node returned unsupported output type {type(raw_output).__name__}",
                field="output",
                actual_value=type(raw_output).__name__,
                node_id=node.id,
                node_type=node.type,
            )

        declared = list(definition.outputs)
        outputs: Dict[str, Tuple[Item, ...]] = {}
        for port, items in by_port.items():
            if port not in declared:
                raise DataValidationError(
                    f"Node emitted on undeclared output port '{port}'",
                    field="output",
                    expected_type="|".join(declared),
                    actual_value=port,
                    node_id=node.id,
                    node_type=node.type,
                )
            try:
                outputs[port] = tuple(Item.from_value(item) for item in items)
            except TypeError as e:
                raise DataValidationError(
                    f"Invalid item on output port '{port}': {e}",
                    field="output",
                    node_id=node.id,
                    node_type=node.type,
                ) from e
        return outputs

    def _ports_to_resolve(
        self, node: NodeSpec, context: ExecutionContext, definition: Any
    ) -> List[str]:
        ports = list(definition.outputs) if definition is not None else []
        for port in context.graph.output_ports(node.id):
            if port not in ports:
                ports.append(port)
        return ports

    def _write_outputs(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        outputs: Dict[str, Tuple[Item, ...]],
        ports: Sequence[str],
    ) -> List[str]:
        for port, items in outputs.items():
            context.store.put(node.id, port, items)
        skipped = [port for port in ports if port not in outputs]
        for port in skipped:
            context.store.mark_skipped(node.id, port)
        return skipped

    def _finish_success(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        definition: Any,
        outputs: Dict[str, Tuple[Item, ...]],
        attempts: int,
        node_logger: Any,
    ) -> NodeResult:
        ports = self._ports_to_resolve(node, context, definition)
        skipped = self._write_outputs(node, context, outputs, ports)
        node_logger.info(
            "Node execution completed",
            attempts=attempts,
            output_items={port: len(items) for port, items in outputs.items()},
            skipped_ports=skipped,
        )
        return NodeResult(
            node_id=node.id,
            status=NodeRunStatus.SUCCESS,
            outputs=outputs,
            skipped_ports=skipped,
            attempts=attempts,
        )

    def _finish_error(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        error: NodeExecutionError,
        definition: Any,
        attempts: int,
        node_logger: Any,
        absorb: bool = True,
    ) -> NodeResult:
        node_logger.error(
            "Node execution failed",
            attempts=attempts,
            error=error.message,
            error_type=type(error.__cause__ or error).__name__,
            continue_on_fail=node.continue_on_fail,
        )
        if not (absorb and node.continue_on_fail):
            return NodeResult(
                node_id=node.id,
                status=NodeRunStatus.ERROR,
                error=error,
                attempts=attempts,
            )

        ports = self._ports_to_resolve(node, context, definition)
        error_port = ports[0] if ports else MAIN_PORT
        outputs = {error_port: (Item.from_error(error, node.id),)}
        skipped = self._write_outputs(node, context, outputs, ports)
        return NodeResult(
            node_id=node.id,
            status=NodeRunStatus.SUCCESS,
            outputs=outputs,
            skipped_ports=skipped,
            error=error,
            attempts=attempts,
            error_recorded=True,
        )

    def _pass_through(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        inputs: Mapping[str, Sequence[Item]],
    ) -> NodeResult:
        outputs = {MAIN_PORT: tuple(inputs.get(MAIN_PORT, ()))}
        ports = [MAIN_PORT] + [p for p in context.graph.output_ports(node.id) if p != MAIN_PORT]
        skipped = self._write_outputs(node, context, outputs, ports)
        return NodeResult(
            node_id=node.id,
            status=NodeRunStatus.SUCCESS,
            outputs=outputs,
            skipped_ports=skipped,
        )

    @staticmethod
    def _fill_error(error: NodeExecutionError, node: NodeSpec, attempt: int) -> None:
        if error.node_id is None:
            error.node_id = node.id
        if error.node_type is None:
            error.node_type = node.type
        if error.attempt is None:
            error.attempt = attempt
        error.details.update({
            "node_id": error.node_id,
            "node_type": error.node_type,
            "attempt": error.attempt,
        })

    def _wrap_error(self, error: Exception, node: NodeSpec, attempt: int) -> NodeExecutionError:
        if isinstance(error, NodeExecutionError):
            self._fill_error(error, node, attempt)
            return error
        wrapped = NodeExecutionError(
            str(error) or type(error).__name__,
            node_id=node.id,
            node_type=node.type,
            attempt=attempt,
            details={"original_error_type": type(error).__name__},
        )
        wrapped.__cause__ = error
        return wrapped


def _consume_result(task: asyncio.Future) -> None:
    """Retrieve a finished task's outcome so it is never reported as lost."""
    if not task.cancelled():
        task.exception()
