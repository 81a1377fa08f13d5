"""Test the node runner: inputs, retries, deadlines and outputs."""

import asyncio

import pytest

from flowengine.credentials import InMemoryCredentialProvider
from flowengine.executor import (
    ConnectionSpec,
    CredentialResolutionError,
    DataValidationError,
    Execution,
    ExecutionContext,
    ExecutionGraph,
    Item,
    NodeRunner,
    NodeRunStatus,
    NodeTimeoutError,
    RetryableNodeError,
    UnknownNodeTypeError,
)
from flowengine.executor.runner import is_retryable

from conftest import connect, workflow


def make_context(definition, settings, trigger=None, timeout=None):
    execution = Execution(workflow_id=definition.id)
    return ExecutionContext(
        execution=execution,
        graph=ExecutionGraph.build(definition),
        settings=settings,
        trigger_items=[Item.from_value(value) for value in trigger or []],
        timeout_seconds=timeout,
    )


@pytest.fixture
def runner(registry, settings):
    return NodeRunner(registry, settings)


@pytest.mark.unit
class TestAssembleInputs:
    """Merging upstream items into input ports."""

    def test_root_receives_trigger_items(self, settings):
        definition = workflow([{"id": "start", "type": "noOp"}])
        context = make_context(definition, settings, trigger=[{"hello": "world"}])

        inputs = NodeRunner.assemble_inputs(context, "start")
        assert [item.to_dict() for item in inputs["main"]] == [{"hello": "world"}]

    def test_items_concatenate_in_connection_order(self, settings):
        definition = workflow(
            [{"id": node_id, "type": "noOp"} for node_id in ("b", "a", "target")],
            [connect("a", "target"), connect("b", "target")],
        )
        context = make_context(definition, settings)
        context.store.put("b", "main", [{"from": "b"}])
        context.store.put("a", "main", [{"from": "a1"}, {"from": "a2"}])

        inputs = NodeRunner.assemble_inputs(context, "target")
        assert [item.get("from") for item in inputs["main"]] == ["a1", "a2", "b"]

    def test_skipped_ports_contribute_nothing(self, settings):
        definition = workflow(
            [{"id": "check", "type": "if"}, {"id": "other", "type": "noOp"},
             {"id": "merge", "type": "merge"}],
            [
                connect("check", "merge", source_output="true", target_input="input1"),
                connect("other", "merge", target_input="input2"),
            ],
        )
        context = make_context(definition, settings)
        context.store.mark_skipped("check", "true")
        context.store.put("other", "main", [{"v": 1}])

        inputs = NodeRunner.assemble_inputs(context, "merge")
        assert inputs["input1"] == []
        assert [item.get("v") for item in inputs["input2"]] == [1]


@pytest.mark.asyncio
class TestRetries:
    """Retry classification and backoff."""

    async def test_retryable_failures_back_off(self, runner, node_factory, settings):
        calls = []

        async def flaky(ctx):
            calls.append(asyncio.get_running_loop().time())
            if len(calls) < 3:
                raise RetryableNodeError("temporarily unavailable")
            return [{"ok": True}]

        node_factory("flaky", flaky)
        definition = workflow([{"id": "n", "type": "flaky", "maxRetries": 3, "retryDelay": 0.1}])
        context = make_context(definition, settings)

        result = await runner.run(definition.nodes[0], context)

        assert result.status == NodeRunStatus.SUCCESS
        assert result.attempts == 3
        assert len(calls) == 3
        assert calls[1] - calls[0] >= 0.095
        assert calls[2] - calls[1] >= 0.195
        assert context.states.get("n").attempt == 3
        assert context.store.get_items("n", "main")[0].to_dict() == {"ok": True}

    async def test_non_retryable_error_runs_once(self, runner, node_factory, settings):
        calls = []

        async def broken(ctx):
            calls.append(ctx.attempt)
            raise ValueError("boom")

        node_factory("broken", broken)
        definition = workflow([{"id": "n", "type": "broken", "maxRetries": 3, "retryDelay": 0}])
        context = make_context(definition, settings)

        result = await runner.run(definition.nodes[0], context)

        assert calls == [0]
        assert result.status == NodeRunStatus.ERROR
        assert result.error.message == "boom"
        assert result.error.node_id == "n"
        assert result.error.details["original_error_type"] == "ValueError"
        assert isinstance(result.error.__cause__, ValueError)

    async def test_retries_exhausted(self, runner, node_factory, settings):
        calls = []

        async def offline(ctx):
            calls.append(ctx.attempt)
            raise ConnectionError("connection refused")

        node_factory("offline", offline)
        definition = workflow([{"id": "n", "type": "offline", "maxRetries": 2, "retryDelay": 0}])
        context = make_context(definition, settings)

        result = await runner.run(definition.nodes[0], context)

        assert calls == [0, 1, 2]
        assert result.status == NodeRunStatus.ERROR
        assert result.attempts == 3
        assert result.error.attempt == 3

    async def test_missing_file_is_not_retried(self, runner, node_factory, settings):
        calls = []

        async def read_csv(ctx):
            calls.append(ctx.attempt)
            raise FileNotFoundError("missing.csv")

        node_factory("readCsv", read_csv)
        definition = workflow([{"id": "n", "type": "readCsv", "maxRetries": 3, "retryDelay": 0}])
        context = make_context(definition, settings)

        result = await runner.run(definition.nodes[0], context)

        assert calls == [0]
        assert result.status == NodeRunStatus.ERROR
        assert result.error.details["original_error_type"] == "FileNotFoundError"

    @pytest.mark.parametrize("error,retryable", [
        (ConnectionResetError("reset"), True),
        (TimeoutError("slow"), True),
        (RetryableNodeError("busy"), True),
        (FileNotFoundError("missing.csv"), False),
        (PermissionError("denied"), False),
        (IsADirectoryError("/tmp"), False),
    ])
    async def test_retry_classification(self, error, retryable):
        assert is_retryable(error) is retryable

    async def test_retry_delay_is_capped(self, registry, settings):
        runner = NodeRunner(registry, settings.model_copy(update={"max_retry_delay": 1.5}))
        node = workflow([{"id": "n", "type": "noOp", "retryDelay": 1}]).nodes[0]

        assert runner.retry_delay(node, 0) == 1
        assert runner.retry_delay(node, 1) == 1.5
        assert runner.retry_delay(node, 5) == 1.5


@pytest.mark.asyncio
class TestOutputs:
    """Translating node results into store writes."""

    async def test_list_output_goes_to_main(self, runner, settings):
        definition = workflow([{"id": "n", "type": "noOp"}])
        context = make_context(definition, settings, trigger=[{"a": 1}])

        result = await runner.run(definition.nodes[0], context)

        assert result.status == NodeRunStatus.SUCCESS
        assert [item.to_dict() for item in result.outputs["main"]] == [{"a": 1}]

    async def test_execute_once_limits_each_port(self, runner, settings):
        definition = workflow([{"id": "n", "type": "noOp", "executeOnce": True}])
        context = make_context(definition, settings, trigger=[{"a": 1}, {"a": 2}])

        result = await runner.run(definition.nodes[0], context)

        assert [item.to_dict() for item in result.outputs["main"]] == [{"a": 1}]
        recorded = context.states.get("n").inputs_by_port
        assert [item.to_dict() for item in recorded["main"]] == [{"a": 1}]

    async def test_unreturned_ports_are_skipped(self, runner, node_factory, settings):
        async def route(ctx):
            return {"a": [{"routed": True}]}

        node_factory("router", route, outputs=["a", "b"])
        definition = workflow(
            [{"id": "r", "type": "router"}, {"id": "x", "type": "noOp"}, {"id": "y", "type": "noOp"}],
            [connect("r", "x", source_output="a"), connect("r", "y", source_output="b")],
        )
        context = make_context(definition, settings)

        result = await runner.run(definition.nodes[0], context)

        assert result.skipped_ports == ["b"]
        assert context.store.is_skipped("r", "b")
        assert context.store.get_items("r", "a")[0].get("routed") is True

    async def test_undeclared_port_fails_without_retry(self, runner, node_factory, settings):
        calls = []

        async def sloppy(ctx):
            calls.append(1)
            return {"elsewhere": [{}]}

        node_factory("sloppy", sloppy)
        definition = workflow([{"id": "n", "type": "sloppy", "maxRetries": 2, "retryDelay": 0}])
        context = make_context(definition, settings)

        result = await runner.run(definition.nodes[0], context)

        assert len(calls) == 1
        assert result.status == NodeRunStatus.ERROR
        assert isinstance(result.error, DataValidationError)
        assert not context.store.is_resolved("n", "main")

    async def test_continue_on_fail_emits_error_item(self, runner, node_factory, settings):
        async def failing(ctx):
            raise RuntimeError("upstream rejected request")

        node_factory("failing", failing, outputs=["success", "failure"])
        definition = workflow(
            [{"id": "n", "type": "failing", "continueOnFail": True},
             {"id": "ok", "type": "noOp"}, {"id": "ko", "type": "noOp"}],
            [connect("n", "ok", source_output="success"), connect("n", "ko", source_output="failure")],
        )
        context = make_context(definition, settings)

        result = await runner.run(definition.nodes[0], context)

        assert result.status == NodeRunStatus.SUCCESS
        assert result.error_recorded is True
        assert result.error.message == "upstream rejected request"
        items = context.store.get_items("n", "success")
        assert items[0].to_dict() == {
            "error": "upstream rejected request",
            "error_type": "NodeExecutionError",
            "node_id": "n",
        }
        assert context.store.is_skipped("n", "failure")

    async def test_disabled_node_passes_input_through(self, runner, settings):
        definition = workflow(
            [{"id": "off", "type": "notRegistered", "disabled": True},
             {"id": "next", "type": "noOp"}, {"id": "side", "type": "noOp"}],
            [connect("off", "next"), connect("off", "side", source_output="extra")],
        )
        context = make_context(definition, settings, trigger=[{"keep": 1}])

        result = await runner.run(definition.nodes[0], context)

        assert result.status == NodeRunStatus.SUCCESS
        assert result.attempts == 0
        assert context.store.get_items("off", "main")[0].get("keep") == 1
        assert context.store.is_skipped("off", "extra")

    async def test_unknown_node_type(self, runner, settings):
        definition = workflow([{"id": "n", "type": "notRegistered", "maxRetries": 3}])
        context = make_context(definition, settings)

        result = await runner.run(definition.nodes[0], context)

        assert result.status == NodeRunStatus.ERROR
        assert isinstance(result.error, UnknownNodeTypeError)
        assert result.error.node_id == "n"
        assert result.attempts == 1


@pytest.mark.asyncio
class TestCredentials:
    """Credential resolution before the first attempt."""

    async def test_resolved_credentials_reach_the_node(self, registry, node_factory, settings):
        seen = {}

        async def authed(ctx):
            seen.update(ctx.get_credential("api"))
            return []

        node_factory("authed", authed, credentials=["api"])
        provider = InMemoryCredentialProvider({"cred-1": {"token": "secret"}})
        runner = NodeRunner(registry, settings, credential_provider=provider)
        definition = workflow([{"id": "n", "type": "authed", "credentials": {"api": "cred-1"}}])

        result = await runner.run(definition.nodes[0], make_context(definition, settings))

        assert result.status == NodeRunStatus.SUCCESS
        assert seen == {"token": "secret"}

    async def test_unknown_reference_fails_without_running(self, registry, node_factory, settings):
        calls = []

        async def authed(ctx):
            calls.append(1)
            return []

        node_factory("authed", authed)
        runner = NodeRunner(registry, settings, credential_provider=InMemoryCredentialProvider())
        definition = workflow([{
            "id": "n", "type": "authed", "credentials": {"api": "missing"}, "maxRetries": 2,
        }])

        result = await runner.run(definition.nodes[0], make_context(definition, settings))

        assert calls == []
        assert result.status == NodeRunStatus.ERROR
        assert isinstance(result.error, CredentialResolutionError)
        assert result.error.details["credential_ref"] == "missing"

    async def test_required_slot_must_be_configured(self, runner, node_factory, settings):
        async def authed(ctx):
            return []

        node_factory("authed", authed, credentials=["api"])
        definition = workflow([{"id": "n", "type": "authed"}])

        result = await runner.run(definition.nodes[0], make_context(definition, settings))

        assert isinstance(result.error, CredentialResolutionError)


@pytest.mark.asyncio
class TestDeadlines:
    """Per-node and execution-wide deadlines."""

    async def test_node_timeout_is_retryable(self, runner, node_factory, settings):
        calls = []

        async def sleeper(ctx):
            calls.append(ctx.attempt)
            await asyncio.sleep(2)
            return []

        node_factory("sleeper", sleeper)
        definition = workflow([{
            "id": "n", "type": "sleeper", "timeout": 0.1, "maxRetries": 1, "retryDelay": 0,
        }])

        result = await runner.run(definition.nodes[0], make_context(definition, settings))

        assert calls == [0, 1]
        assert result.status == NodeRunStatus.ERROR
        assert isinstance(result.error, NodeTimeoutError)
        assert result.error.details["timeout_seconds"] == 0.1

    async def test_node_ignoring_cancellation_is_abandoned(self, registry, node_factory, settings):
        released = asyncio.Event()

        async def stubborn(ctx):
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                await asyncio.sleep(0.5)
                released.set()
            return []

        node_factory("stubborn", stubborn)
        runner = NodeRunner(registry, settings.model_copy(update={"node_hard_stop_grace": 0.1}))
        definition = workflow([{"id": "n", "type": "stubborn", "timeout": 0.1}])
        loop = asyncio.get_running_loop()

        started = loop.time()
        result = await runner.run(definition.nodes[0], make_context(definition, settings))
        elapsed = loop.time() - started

        assert isinstance(result.error, NodeTimeoutError)
        assert elapsed < 0.45
        assert not released.is_set()
        await asyncio.wait_for(released.wait(), timeout=2)

    async def test_execution_budget_bounds_the_node(self, runner, node_factory, settings):
        async def sleeper(ctx):
            await asyncio.sleep(2)
            return []

        node_factory("sleeper", sleeper)
        definition = workflow([{"id": "n", "type": "sleeper", "continueOnFail": True, "maxRetries": 2}])
        context = make_context(definition, settings, timeout=0.1)
        context.start_clock()

        result = await runner.run(definition.nodes[0], context)

        assert result.status == NodeRunStatus.ERROR
        assert result.error.error_code == "TIMEOUT"
        assert result.attempts == 1


@pytest.mark.unit
def test_connection_defaults():
    connection = ConnectionSpec(source_node_id="a", target_node_id="b")
    assert connection.source_output == "main"
    assert connection.target_input == "main"
