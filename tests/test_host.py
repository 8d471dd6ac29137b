"""
Tests for ExecutionHost.

Drives the host with a FakeHarness, both directly through the transport
methods and end to end through an ExecutionRegistry.
"""

import asyncio
from unittest.mock import patch

import pytest

from switchboard.core.config import SwitchboardConfig
from switchboard.core.harness.backend import HarnessRegistry
from switchboard.core.harness.errors import HarnessNotInstalledError
from switchboard.core.harness.models import (
    ClientTool,
    ClientToolDefinition,
    CompleteEvent,
    ErrorEvent,
    HarnessErrorCode,
    HarnessId,
    HarnessUsage,
    MessageEvent,
    SessionStartedEvent,
    StderrEvent,
    ToolResult,
)
from switchboard.core.session.envelopes import (
    AbortEnvelope,
    ClearBufferEnvelope,
    QueryOptions,
    ReconnectEnvelope,
    StartQueryEnvelope,
    ToolResponseEnvelope,
)
from switchboard.core.session.errors import ToolCallError
from switchboard.core.session.execution import ExecutionStatus
from switchboard.core.session.host import NO_CONSUMER_MESSAGE, ExecutionHost
from switchboard.core.session.registry import ExecutionRegistry


def start(execution_id: str = "exec-1", **options) -> StartQueryEnvelope:
    return StartQueryEnvelope(
        execution_id=execution_id, prompt="hello", options=QueryOptions(**options)
    )


def host_for(harness, config=None) -> ExecutionHost:
    harnesses = HarnessRegistry()
    harnesses.register(harness)
    return ExecutionHost(harnesses, config or SwitchboardConfig())


async def finished(host: ExecutionHost, execution_id: str) -> None:
    task = host.get(execution_id).task
    await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), 2.0)


async def _collect(messages) -> list:
    return [m async for m in messages]


class TestStartQuery:
    """Test starting executions on the host."""

    @pytest.mark.asyncio
    async def test_events_become_envelopes(self, make_harness):
        """Test that adapter events are translated and broadcast in order."""
        harness = make_harness(
            [
                SessionStartedEvent(session_id="abc123"),
                MessageEvent(message={"type": "assistant"}),
                StderrEvent(data="warn"),
                CompleteEvent(usage=HarnessUsage(input_tokens=3, output_tokens=5)),
            ]
        )
        host = host_for(harness)
        seen = []
        host.subscribe(seen.append)

        result = await host.start_query(start())
        await finished(host, "exec-1")

        assert result.ok
        assert [e.type for e in seen] == ["session_started", "raw_message", "stderr", "complete"]
        assert seen[1].harness_id == HarnessId.CLAUDE_CODE
        assert seen[3].usage.output_tokens == 5
        hosted = host.get("exec-1")
        assert hosted.status == ExecutionStatus.COMPLETED
        assert hosted.session_id == "abc123"
        await host.shutdown()

    @pytest.mark.asyncio
    async def test_query_built_from_options(self, make_harness, tmp_path):
        """Test that options are carried into the adapter query."""
        harness = make_harness([CompleteEvent()])
        host = host_for(harness)

        await host.start_query(start(cwd=str(tmp_path), model="opus", resume_session_id="s-1"))
        await finished(host, "exec-1")

        query = harness.queries[0]
        assert query.prompt == "hello"
        assert query.cwd == str(tmp_path)
        assert query.model == "opus"
        assert query.resume_session_id == "s-1"
        await host.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_harness_refused(self, make_harness):
        """Test that a harness without an adapter is refused."""
        host = host_for(make_harness([]))
        result = await host.start_query(start(harness_id=HarnessId.CODEX))
        assert not result.ok
        assert "codex" in result.error
        assert host.get("exec-1") is None

    @pytest.mark.asyncio
    async def test_query_build_failure_leaves_no_record(self, make_harness):
        """Test that a query that cannot be built is refused and not retained."""
        harness = make_harness([CompleteEvent()])
        host = host_for(harness)

        with patch.object(
            QueryOptions, "resolved_cwd", side_effect=FileNotFoundError("cwd removed")
        ):
            result = await host.start_query(start())

        assert not result.ok
        assert "cwd removed" in result.error
        assert host.get("exec-1") is None
        assert not host.has_active_queries()
        assert harness.queries == []

    @pytest.mark.asyncio
    async def test_duplicate_id_refused(self, make_harness):
        """Test that an execution id cannot be started twice."""
        host = host_for(make_harness([CompleteEvent()]))
        assert (await host.start_query(start())).ok
        assert not (await host.start_query(start())).ok
        await host.shutdown()

    @pytest.mark.asyncio
    async def test_stream_end_synthesizes_complete(self, make_harness):
        """Test that a stream ending without a terminal event completes the execution."""
        host = host_for(make_harness([MessageEvent(message={"type": "assistant"})]))
        seen = []
        host.subscribe(seen.append)

        await host.start_query(start())
        await finished(host, "exec-1")

        assert seen[-1].type == "complete"
        assert host.get("exec-1").status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_error_event_becomes_error_envelope(self, make_harness):
        """Test that an adapter error event ends the execution with ERROR."""
        host = host_for(
            make_harness([ErrorEvent(error="rate limited", code=HarnessErrorCode.RATE_LIMITED)])
        )
        seen = []
        host.subscribe(seen.append)

        await host.start_query(start())
        await finished(host, "exec-1")

        assert seen[-1].type == "error"
        assert seen[-1].code == HarnessErrorCode.RATE_LIMITED
        assert host.get("exec-1").status == ExecutionStatus.ERROR

    @pytest.mark.asyncio
    async def test_adapter_exception_becomes_error_envelope(self, make_harness):
        """Test that an exception raised by the adapter is reported with its code."""

        async def script(query):
            raise HarnessNotInstalledError(
                "claude-code", "npm install -g @anthropic-ai/claude-code"
            )
            yield  # pragma: no cover

        host = host_for(make_harness(script=script))
        seen = []
        host.subscribe(seen.append)

        await host.start_query(start())
        await finished(host, "exec-1")

        assert seen[-1].type == "error"
        assert seen[-1].code == HarnessErrorCode.NOT_INSTALLED
        assert host.get("exec-1").status == ExecutionStatus.ERROR

    @pytest.mark.asyncio
    async def test_listener_exception_does_not_stop_stream(self, make_harness):
        """Test that a failing subscriber does not break the execution."""
        host = host_for(make_harness([MessageEvent(message={}), CompleteEvent()]))

        def broken(envelope):
            raise RuntimeError("listener bug")

        host.subscribe(broken)
        await host.start_query(start())
        await finished(host, "exec-1")
        assert host.get("exec-1").status == ExecutionStatus.COMPLETED


class TestReconnectAndBuffer:
    """Test reconnect, clear_buffer and retention."""

    @pytest.mark.asyncio
    async def test_reconnect_returns_buffer(self, make_harness):
        """Test that reconnect returns the full history including the start command."""
        host = host_for(make_harness([MessageEvent(message={"n": 1}), CompleteEvent()]))
        await host.start_query(start())
        await finished(host, "exec-1")

        result = await host.reconnect(ReconnectEnvelope(execution_id="exec-1"))
        assert result.found
        assert [e.type for e in result.events] == ["start_query", "raw_message", "complete"]

    @pytest.mark.asyncio
    async def test_reconnect_unknown(self, make_harness):
        """Test that reconnect to an unknown id reports not found."""
        host = host_for(make_harness([]))
        result = await host.reconnect(ReconnectEnvelope(execution_id="nope"))
        assert not result.found
        assert result.events == []

    @pytest.mark.asyncio
    async def test_clear_buffer_after_finish_forgets_execution(self, make_harness):
        """Test that clearing a finished execution's buffer removes it."""
        host = host_for(make_harness([CompleteEvent()]))
        await host.start_query(start())
        await finished(host, "exec-1")

        assert host.send_command(ClearBufferEnvelope(execution_id="exec-1")).ok
        assert host.get("exec-1") is None

    @pytest.mark.asyncio
    async def test_buffer_released_after_retention(self, make_harness):
        """Test that an idle finished execution is released after the retention window."""
        config = SwitchboardConfig()
        config.execution.buffer_retention_minutes = 0.001
        host = host_for(make_harness([CompleteEvent()]), config)

        await host.start_query(start())
        await finished(host, "exec-1")
        await asyncio.sleep(0.2)

        assert host.get("exec-1") is None


class TestAbort:
    """Test aborting running executions."""

    @pytest.mark.asyncio
    async def test_abort_cancels_token(self, make_harness):
        """Test that abort cancels the query token and marks the execution aborted."""
        seen_token = []

        async def script(query):
            seen_token.append(query.token)
            await query.token.wait()
            yield ErrorEvent(error="Aborted", code=HarnessErrorCode.ABORTED)

        host = host_for(make_harness(script=script))
        await host.start_query(start())
        await asyncio.sleep(0)

        result = await host.abort(AbortEnvelope(execution_id="exec-1"))
        await finished(host, "exec-1")

        assert result.ok
        assert seen_token[0].cancelled
        assert host.get("exec-1").status == ExecutionStatus.ABORTED
        assert not host.has_active_queries()

    @pytest.mark.asyncio
    async def test_abort_unknown(self, make_harness):
        """Test that aborting an unknown execution is refused."""
        host = host_for(make_harness([]))
        result = await host.abort(AbortEnvelope(execution_id="nope"))
        assert not result.ok

    @pytest.mark.asyncio
    async def test_attach_after_abort_is_aborted(self, make_harness):
        """Test that a new consumer attaching to an aborted execution sees it aborted."""

        async def script(query):
            await query.token.wait()
            yield ErrorEvent(error="Aborted", code=HarnessErrorCode.ABORTED)

        host = host_for(make_harness(script=script))
        async with ExecutionRegistry(host, SwitchboardConfig()) as first:
            execution = await first.start("go", execution_id="exec-1")
            await asyncio.sleep(0)
            await execution.abort()
        await finished(host, "exec-1")

        async with ExecutionRegistry(host, SwitchboardConfig()) as second:
            attached = await second.attach("exec-1")
            assert attached.status == ExecutionStatus.ABORTED
            assert "error" in [e.type for e in attached.events]
            assert [m async for m in attached.messages()] == []

        await host.shutdown()

    @pytest.mark.asyncio
    async def test_attach_while_backend_still_exiting(self, make_harness):
        """Test that an abort is terminal on attach even before the backend exits."""
        release = asyncio.Event()

        async def script(query):
            await release.wait()
            yield MessageEvent(message={"late": True})

        host = host_for(make_harness(script=script))
        async with ExecutionRegistry(host, SwitchboardConfig()) as first:
            execution = await first.start("go", execution_id="exec-1")
            await asyncio.sleep(0)
            await execution.abort()

        async with ExecutionRegistry(host, SwitchboardConfig()) as second:
            attached = await second.attach("exec-1")
            assert attached.status == ExecutionStatus.ABORTED
            assert await asyncio.wait_for(_collect(attached.messages()), 1.0) == []

        release.set()
        await finished(host, "exec-1")
        await host.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_aborts_running(self, make_harness):
        """Test that shutdown stops every running execution."""

        async def script(query):
            await query.token.wait()
            return
            yield  # pragma: no cover

        host = host_for(make_harness(script=script))
        await host.start_query(start())
        await asyncio.sleep(0)
        assert host.has_active_queries()

        await asyncio.wait_for(host.shutdown(), 2.0)
        assert host.get("exec-1").status == ExecutionStatus.ABORTED


class TestToolCalls:
    """Test the client tool bridge."""

    @pytest.mark.asyncio
    async def test_tool_call_round_trip(self, make_harness):
        """Test that an adapter tool call reaches the consumer handler and back."""
        results = []

        async def script(query):
            tool = query.client_tools[0]
            results.append(await tool.handler({"n": 21}))
            yield CompleteEvent()

        async def double(args):
            return ToolResult(content=str(args["n"] * 2))

        host = host_for(make_harness(script=script))
        tool = ClientTool(definition=ClientToolDefinition(name="double"), handler=double)

        async with ExecutionRegistry(host, SwitchboardConfig()) as registry:
            execution = await registry.start("go", tools=[tool], execution_id="exec-1")
            status = await asyncio.wait_for(execution.wait(), 2.0)
            await execution.router.drain()

        assert status == ExecutionStatus.COMPLETED
        assert results == [ToolResult(content="42")]
        types = [e.type for e in execution.events]
        assert types.count("tool_call") == 1
        assert types.count("tool_response") == 1
        await host.shutdown()

    @pytest.mark.asyncio
    async def test_tool_call_without_consumer(self, make_harness):
        """Test that a tool call with no subscriber returns an error result."""
        results = []

        async def script(query):
            results.append(await query.client_tools[0].handler({}))
            yield CompleteEvent()

        host = host_for(make_harness(script=script))
        command = StartQueryEnvelope(
            execution_id="exec-1",
            prompt="go",
            options=QueryOptions(client_tools=[ClientToolDefinition(name="lookup")]),
        )
        await host.start_query(command)
        await finished(host, "exec-1")

        assert results == [ToolResult(error=NO_CONSUMER_MESSAGE)]

    @pytest.mark.asyncio
    async def test_tool_response_error_raises_in_backend(self, make_harness):
        """Test that an error response surfaces as ToolCallError in the proxy."""
        raised = []

        async def script(query):
            try:
                await query.client_tools[0].handler({})
            except ToolCallError as e:
                raised.append(str(e))
            yield CompleteEvent()

        host = host_for(make_harness(script=script))

        def respond(envelope):
            if envelope.type == "tool_call":
                host.send_command(
                    ToolResponseEnvelope(
                        execution_id=envelope.execution_id, call_id=envelope.call_id, error="nope"
                    )
                )

        host.subscribe(respond)
        command = StartQueryEnvelope(
            execution_id="exec-1",
            prompt="go",
            options=QueryOptions(client_tools=[ClientToolDefinition(name="lookup")]),
        )
        await host.start_query(command)
        await finished(host, "exec-1")

        assert raised == ["nope"]

    @pytest.mark.asyncio
    async def test_tool_call_timeout(self, make_harness):
        """Test that an unanswered tool call times out."""
        raised = []

        async def script(query):
            try:
                await query.client_tools[0].handler({})
            except ToolCallError as e:
                raised.append(e)
            yield CompleteEvent()

        config = SwitchboardConfig()
        config.execution.tool_call_timeout_seconds = 0.05
        host = host_for(make_harness(script=script), config)
        host.subscribe(lambda envelope: None)

        command = StartQueryEnvelope(
            execution_id="exec-1",
            prompt="go",
            options=QueryOptions(client_tools=[ClientToolDefinition(name="lookup")]),
        )
        await host.start_query(command)
        await finished(host, "exec-1")

        assert len(raised) == 1
        assert "timed out" in str(raised[0])

    @pytest.mark.asyncio
    async def test_unknown_call_id_rejected(self, make_harness):
        """Test that a response for an unknown call id is refused."""
        host = host_for(make_harness([]))
        with patch("switchboard.core.session.host.logger") as mock_logger:
            result = host.send_command(
                ToolResponseEnvelope(
                    execution_id="exec-1", call_id="ghost", result=ToolResult(content="x")
                )
            )
        assert not result.ok
        assert result.error == "Unknown call ID"
        mock_logger.warning.assert_called_once()
