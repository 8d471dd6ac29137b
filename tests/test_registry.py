"""
Tests for ExecutionRegistry.

Tests routing by execution id, start/attach/cleanup bookkeeping and the
merging of per-harness defaults into caller options.
"""

import pytest

from switchboard.core.config import SwitchboardConfig
from switchboard.core.harness.models import (
    ClientTool,
    ClientToolDefinition,
    HarnessId,
    QueryMode,
    ToolResult,
)
from switchboard.core.session.envelopes import (
    CompleteEnvelope,
    QueryOptions,
    RawMessageEnvelope,
    StartQueryEnvelope,
    ToolCallEnvelope,
    ToolResponseEnvelope,
)
from switchboard.core.session.errors import ExecutionStartError, SessionError
from switchboard.core.session.execution import ExecutionStatus
from switchboard.core.session.registry import ExecutionRegistry
from switchboard.core.session.router import UNAVAILABLE_HANDLER_MESSAGE


def message(execution_id: str, text: str) -> RawMessageEnvelope:
    return RawMessageEnvelope(
        execution_id=execution_id, harness_id=HarnessId.CLAUDE_CODE, message={"text": text}
    )


@pytest.fixture
def registry(transport, config):
    registry = ExecutionRegistry(transport, config)
    registry.open()
    yield registry
    registry.close()


async def _noop(args):
    return ToolResult(content="ok")


class TestLifecycle:
    """Test open/close and the transport subscription."""

    def test_open_subscribes_once(self, transport, config):
        """Test that open is idempotent and close unsubscribes."""
        registry = ExecutionRegistry(transport, config)
        registry.open()
        registry.open()
        assert len(transport.listeners) == 1
        registry.close()
        assert transport.listeners == []

    @pytest.mark.asyncio
    async def test_async_context_manager(self, transport, config):
        """Test that async with opens and closes the registry."""
        async with ExecutionRegistry(transport, config) as registry:
            assert registry.is_open
            assert len(transport.listeners) == 1
        assert transport.listeners == []

    @pytest.mark.asyncio
    async def test_start_requires_open(self, transport, config):
        """Test that a closed registry refuses to start executions."""
        registry = ExecutionRegistry(transport, config)
        with pytest.raises(SessionError):
            await registry.start("hi")


class TestStart:
    """Test starting executions."""

    @pytest.mark.asyncio
    async def test_start_registers_and_sends_command(self, registry, transport):
        """Test that start registers the execution and sends start_query."""
        execution = await registry.start("hello", execution_id="exec-1")

        assert registry.get("exec-1") is execution
        assert "exec-1" in registry
        commands = transport.sent("start_query")
        assert len(commands) == 1
        assert isinstance(commands[0], StartQueryEnvelope)
        assert commands[0].prompt == "hello"

    @pytest.mark.asyncio
    async def test_start_generates_id(self, registry):
        """Test that an execution id is generated when none is given."""
        execution = await registry.start("hello")
        assert execution.execution_id
        assert registry.get(execution.execution_id) is execution

    @pytest.mark.asyncio
    async def test_start_refused_leaves_no_entry(self, make_transport, config):
        """Test that a host refusal raises and removes the entry."""
        transport = make_transport(start_ok=False, start_error="harness missing")
        async with ExecutionRegistry(transport, config) as registry:
            with pytest.raises(ExecutionStartError, match="harness missing"):
                await registry.start("hello", execution_id="exec-1")
            assert registry.get("exec-1") is None
            assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_start_transport_failure_leaves_no_entry(self, make_transport, config):
        """Test that a transport exception is wrapped and the entry removed."""
        transport = make_transport(start_exception=ConnectionError("host down"))
        async with ExecutionRegistry(transport, config) as registry:
            with pytest.raises(ExecutionStartError) as exc_info:
                await registry.start("hello", execution_id="exec-1")
            assert exc_info.value.execution_id == "exec-1"
            assert "exec-1" not in registry

    @pytest.mark.asyncio
    async def test_duplicate_execution_id_rejected(self, registry):
        """Test that an id already in the registry cannot be started again."""
        await registry.start("one", execution_id="exec-1")
        with pytest.raises(ExecutionStartError):
            await registry.start("two", execution_id="exec-1")

    @pytest.mark.asyncio
    async def test_tool_definitions_sent_with_options(self, registry, transport):
        """Test that client tool definitions travel in the start command."""
        tool = ClientTool(
            definition=ClientToolDefinition(name="lookup", description="Look it up"),
            handler=_noop,
        )
        execution = await registry.start("hi", tools=[tool], execution_id="exec-1")

        options = transport.sent("start_query")[0].options
        assert [d.name for d in options.client_tools] == ["lookup"]
        assert execution.router.has("lookup")


class TestRouting:
    """Test envelope routing by execution id."""

    @pytest.mark.asyncio
    async def test_concurrent_executions_isolated(self, registry, transport):
        """Test that two executions only see their own envelopes."""
        first = await registry.start("a", execution_id="exec-a")
        second = await registry.start("b", execution_id="exec-b")

        transport.emit(message("exec-a", "for a"))
        transport.emit(message("exec-b", "for b"))
        transport.emit(CompleteEnvelope(execution_id="exec-a"))

        assert first.raw_messages() == [{"text": "for a"}]
        assert second.raw_messages() == [{"text": "for b"}]
        assert first.status == ExecutionStatus.COMPLETED
        assert second.status == ExecutionStatus.IN_PROGRESS

    def test_unknown_execution_dropped(self, registry, transport):
        """Test that envelopes for unregistered executions are ignored."""
        transport.emit(message("nobody", "lost"))
        assert len(registry) == 0


class TestAttach:
    """Test re-attaching after a consumer restart."""

    @pytest.mark.asyncio
    async def test_attach_unknown_returns_none(self, registry, transport):
        """Test that attach to an id the host does not know leaves nothing behind."""
        assert await registry.attach("missing") is None
        assert registry.get("missing") is None
        assert len(transport.sent("reconnect")) == 1

    @pytest.mark.asyncio
    async def test_attach_replays_history(self, registry, transport):
        """Test that buffered history is replayed into a new Execution."""
        history = [
            StartQueryEnvelope(
                execution_id="exec-1",
                prompt="hi",
                options=QueryOptions(harness_id=HarnessId.CODEX),
            ),
            message("exec-1", "one"),
            CompleteEnvelope(execution_id="exec-1"),
        ]
        transport.history["exec-1"] = [e.to_wire() for e in history]

        execution = await registry.attach("exec-1")

        assert execution is not None
        assert execution.harness_id == HarnessId.CODEX
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.raw_messages() == [{"text": "one"}]
        assert [m async for m in execution.messages()] == [{"text": "one"}]

    @pytest.mark.asyncio
    async def test_attach_answers_pending_call_with_fallback(self, registry, transport):
        """Test that an unanswered call without a handler gets the unavailable result."""
        transport.history["exec-1"] = [
            ToolCallEnvelope(execution_id="exec-1", call_id="c1", tool_name="lookup")
        ]

        await registry.attach("exec-1")

        responses = transport.sent("tool_response")
        assert len(responses) == 1
        assert responses[0].call_id == "c1"
        assert responses[0].result.content == UNAVAILABLE_HANDLER_MESSAGE

    @pytest.mark.asyncio
    async def test_attach_answers_pending_call_with_handler(self, registry, transport):
        """Test that a handler passed to attach answers the pending call."""

        async def lookup(args):
            return ToolResult(content="found")

        transport.history["exec-1"] = [
            ToolCallEnvelope(execution_id="exec-1", call_id="c1", tool_name="lookup")
        ]
        tool = ClientTool(definition=ClientToolDefinition(name="lookup"), handler=lookup)

        execution = await registry.attach("exec-1", tools=[tool])
        await execution.router.drain()

        responses = transport.sent("tool_response")
        assert [r.result.content for r in responses] == ["found"]

    @pytest.mark.asyncio
    async def test_attach_does_not_reanswer(self, registry, transport):
        """Test that a call answered in history produces no new response."""
        transport.history["exec-1"] = [
            ToolCallEnvelope(execution_id="exec-1", call_id="c1", tool_name="lookup"),
            ToolResponseEnvelope(
                execution_id="exec-1", call_id="c1", result=ToolResult(content="earlier")
            ),
        ]

        await registry.attach("exec-1")
        assert transport.sent("tool_response") == []

    @pytest.mark.asyncio
    async def test_attach_twice_is_idempotent(self, registry, transport):
        """Test that attaching again reuses the entry and adds no duplicates."""
        transport.history["exec-1"] = [message("exec-1", "one")]

        first = await registry.attach("exec-1")
        second = await registry.attach("exec-1")

        assert first is second
        assert len(first.events) == 1


class TestCleanup:
    """Test cleanup and buffer release."""

    @pytest.mark.asyncio
    async def test_cleanup_forgets_without_aborting(self, registry, transport):
        """Test that cleanup removes the entry but sends no abort."""
        await registry.start("hi", execution_id="exec-1")
        assert registry.cleanup("exec-1") is True
        assert registry.cleanup("exec-1") is False
        assert registry.get("exec-1") is None
        assert transport.sent("abort") == []

    @pytest.mark.asyncio
    async def test_clear_buffer_sends_command(self, registry, transport):
        """Test that clear_buffer is forwarded to the host."""
        await registry.start("hi", execution_id="exec-1")
        registry.clear_buffer("exec-1")
        assert [c.execution_id for c in transport.sent("clear_buffer")] == ["exec-1"]


class TestMergeOptions:
    """Test layering of per-harness defaults."""

    def test_default_model_applied(self, registry):
        """Test that the configured model is used when the caller picks none."""
        merged = registry.merge_options(QueryOptions(harness_id=HarnessId.CLAUDE_CODE))
        assert merged.model == "sonnet"

    def test_caller_model_wins(self, registry):
        """Test that a caller model is kept."""
        merged = registry.merge_options(QueryOptions(harness_id=HarnessId.CODEX, model="custom"))
        assert merged.model == "custom"

    def test_tool_lists_appended_without_duplicates(self, registry):
        """Test that caller tool lists extend the baselines."""
        merged = registry.merge_options(
            QueryOptions(allowed_tools=["Read", "mcp__extra"], disallowed_tools=["WebFetch"])
        )
        assert merged.allowed_tools[0] == "Read"
        assert merged.allowed_tools.count("Read") == 1
        assert merged.allowed_tools[-1] == "mcp__extra"
        assert "AskUserQuestion" in merged.disallowed_tools
        assert merged.disallowed_tools[-1] == "WebFetch"

    def test_read_only_adds_denials(self, registry):
        """Test that read-only mode appends its extra disallowed tools."""
        merged = registry.merge_options(QueryOptions(mode=QueryMode.READ_ONLY))
        for tool in ["Edit", "Write", "NotebookEdit"]:
            assert tool in merged.disallowed_tools

    def test_missing_options_use_default_harness(self, transport):
        """Test that no options falls back to the configured default harness."""
        registry = ExecutionRegistry(transport, SwitchboardConfig(default_harness="codex"))
        merged = registry.merge_options(None)
        assert merged.harness_id == HarnessId.CODEX
        assert merged.model == "gpt-5.3-codex"
