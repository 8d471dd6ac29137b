"""
In-process execution host.

The host owns the running harness queries. It turns adapter events into
execution-direction envelopes, buffers each execution's history so a
restarted consumer can replay it, and bridges client tool calls: the
backend's call becomes a ``tool_call`` envelope and the backend is blocked
until the matching ``tool_response`` command arrives.

ExecutionHost implements ExecutionTransport, so an ExecutionRegistry can be
pointed straight at it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from switchboard.core.config import SwitchboardConfig, load_config
from switchboard.core.harness.backend import Harness, HarnessRegistry
from switchboard.core.harness.cancellation import CancellationToken
from switchboard.core.harness.errors import HarnessError
from switchboard.core.harness.models import (
    ClientTool,
    ClientToolDefinition,
    CompleteEvent,
    ErrorEvent,
    HarnessErrorCode,
    HarnessQuery,
    MessageEvent,
    SessionStartedEvent,
    StderrEvent,
    ToolHandler,
    ToolResult,
)

from .envelopes import (
    AbortEnvelope,
    ClearBufferEnvelope,
    CompleteEnvelope,
    ErrorEnvelope,
    QueryOptions,
    RawMessageEnvelope,
    ReconnectEnvelope,
    SessionStartedEnvelope,
    StartQueryEnvelope,
    StderrEnvelope,
    ToolCallEnvelope,
    ToolResponseEnvelope,
)
from .errors import ToolCallError, ToolCallTimeoutError
from .execution import ExecutionStatus
from .transport import CommandResult, EnvelopeListener, ReconnectResult

logger = logging.getLogger(__name__)

NO_CONSUMER_MESSAGE = "No consumer connected to handle tool call"


@dataclass
class HostedExecution:
    """Host-side record of one execution."""

    execution_id: str
    harness: Harness
    options: QueryOptions
    token: CancellationToken
    status: ExecutionStatus = ExecutionStatus.IN_PROGRESS
    session_id: str | None = None
    events: list[Any] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    task: asyncio.Task[None] | None = None
    retention: asyncio.TimerHandle | None = None
    seen_ids: set[str] = field(default_factory=set)

    def record(self, envelope: Any) -> bool:
        if envelope.id in self.seen_ids:
            return False
        self.seen_ids.add(envelope.id)
        self.events.append(envelope)
        return True

    def finish(self, status: ExecutionStatus) -> bool:
        if self.status.is_terminal:
            return False
        self.status = status
        self.completed_at = datetime.now(timezone.utc)
        return True


class ExecutionHost:
    """
    Runs harness queries and exposes them through ExecutionTransport.

    Args:
        harnesses: Registry of harness adapters
        config: Configuration (tool call timeout, buffer retention)
    """

    def __init__(
        self,
        harnesses: HarnessRegistry,
        config: SwitchboardConfig | None = None,
    ) -> None:
        self._harnesses = harnesses
        self._config = config or load_config()
        self._executions: dict[str, HostedExecution] = {}
        self._listeners: list[EnvelopeListener] = []
        # call_id -> (execution_id, future awaiting the response)
        self._pending: dict[str, tuple[str, asyncio.Future[ToolResult]]] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, execution_id: str) -> HostedExecution | None:
        return self._executions.get(execution_id)

    def has_active_queries(self) -> bool:
        return any(not e.status.is_terminal for e in self._executions.values())

    # ------------------------------------------------------------------
    # ExecutionTransport
    # ------------------------------------------------------------------

    def subscribe(self, listener: EnvelopeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def start_query(self, command: StartQueryEnvelope) -> CommandResult:
        execution_id = command.execution_id
        if execution_id in self._executions:
            return CommandResult(ok=False, error=f"Execution {execution_id} already exists")

        harness = self._harnesses.get(command.options.harness_id)
        if harness is None:
            return CommandResult(
                ok=False, error=f"Harness not found: {command.options.harness_id.value}"
            )

        hosted = HostedExecution(
            execution_id=execution_id,
            harness=harness,
            options=command.options,
            token=CancellationToken(),
        )
        hosted.record(command)

        try:
            query = self._build_query(hosted, command.prompt)
        except Exception as e:
            logger.warning(f"Could not build query for {execution_id}: {e}")
            return CommandResult(ok=False, error=str(e) or type(e).__name__)

        hosted.task = asyncio.get_running_loop().create_task(self._run(hosted, query))
        self._executions[execution_id] = hosted
        self._touch(hosted)
        logger.info(f"Started execution {execution_id} on {harness.id.value}")
        return CommandResult(ok=True)

    async def reconnect(self, command: ReconnectEnvelope) -> ReconnectResult:
        hosted = self._executions.get(command.execution_id)
        if hosted is None:
            return ReconnectResult(found=False)
        self._touch(hosted)
        return ReconnectResult(found=True, events=list(hosted.events))

    async def abort(self, command: AbortEnvelope) -> CommandResult:
        hosted = self._executions.get(command.execution_id)
        if hosted is None:
            return CommandResult(ok=False, error=f"Unknown execution: {command.execution_id}")
        hosted.record(command)
        hosted.token.cancel()
        if hosted.finish(ExecutionStatus.ABORTED):
            logger.info(f"Aborted execution {hosted.execution_id}")
        self._fail_pending(hosted.execution_id, "Execution aborted")
        return CommandResult(ok=True)

    def send_command(
        self, command: Union[ToolResponseEnvelope, ClearBufferEnvelope]
    ) -> CommandResult:
        if isinstance(command, ToolResponseEnvelope):
            return self._handle_tool_response(command)
        if isinstance(command, ClearBufferEnvelope):
            return self._handle_clear_buffer(command)
        return CommandResult(ok=False, error=f"Unsupported command: {command.type}")

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def _build_query(self, hosted: HostedExecution, prompt: str) -> HarnessQuery:
        options = hosted.options
        return HarnessQuery(
            prompt=prompt,
            cwd=options.resolved_cwd(),
            token=hosted.token,
            system_prompt=options.system_prompt,
            append_system_prompt=options.append_system_prompt,
            additional_directories=list(options.additional_directories),
            env=dict(options.env),
            model=options.model,
            thinking=options.thinking,
            resume_session_id=options.resume_session_id,
            fork_session=options.fork_session,
            mode=options.mode,
            allowed_tools=list(options.allowed_tools),
            disallowed_tools=list(options.disallowed_tools),
            mcp_servers=dict(options.mcp_servers),
            client_tools=[
                ClientTool(definition=d, handler=self._proxy_handler(hosted, d))
                for d in options.client_tools
            ],
        )

    async def _run(self, hosted: HostedExecution, query: HarnessQuery) -> None:
        execution_id = hosted.execution_id
        harness_id = hosted.harness.id
        try:
            async for event in hosted.harness.query(query):
                if isinstance(event, MessageEvent):
                    self._emit(
                        hosted,
                        RawMessageEnvelope(
                            execution_id=execution_id, harness_id=harness_id, message=event.message
                        ),
                    )
                elif isinstance(event, SessionStartedEvent):
                    if hosted.session_id is None:
                        hosted.session_id = event.session_id
                    self._emit(
                        hosted,
                        SessionStartedEnvelope(
                            execution_id=execution_id, session_id=event.session_id
                        ),
                    )
                elif isinstance(event, StderrEvent):
                    self._emit(hosted, StderrEnvelope(execution_id=execution_id, data=event.data))
                elif isinstance(event, CompleteEvent):
                    if hosted.finish(ExecutionStatus.COMPLETED):
                        self._emit(
                            hosted, CompleteEnvelope(execution_id=execution_id, usage=event.usage)
                        )
                elif isinstance(event, ErrorEvent):
                    if hosted.finish(ExecutionStatus.ERROR):
                        logger.warning(f"Execution {execution_id} failed: {event.error}")
                    self._emit(
                        hosted,
                        ErrorEnvelope(
                            execution_id=execution_id, error=event.error, code=event.code
                        ),
                    )

            if hosted.finish(ExecutionStatus.COMPLETED):
                logger.debug(f"Execution {execution_id} stream ended without a terminal event")
                self._emit(hosted, CompleteEnvelope(execution_id=execution_id))
        except asyncio.CancelledError:
            hosted.finish(ExecutionStatus.ABORTED)
            raise
        except Exception as e:
            code = e.code if isinstance(e, HarnessError) else HarnessErrorCode.UNKNOWN
            logger.exception(f"Execution {execution_id} raised")
            hosted.finish(ExecutionStatus.ERROR)
            self._emit(
                hosted,
                ErrorEnvelope(
                    execution_id=execution_id, error=str(e) or type(e).__name__, code=code
                ),
            )
        finally:
            self._fail_pending(execution_id, "Execution finished")
            self._touch(hosted)

    def _emit(self, hosted: HostedExecution, envelope: Any) -> None:
        if not hosted.record(envelope):
            return
        self._touch(hosted)
        for listener in list(self._listeners):
            try:
                listener(envelope)
            except Exception:
                logger.exception(f"Listener raised on {envelope.type} for {hosted.execution_id}")

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def _proxy_handler(
        self, hosted: HostedExecution, definition: ClientToolDefinition
    ) -> ToolHandler:
        timeout = self._config.execution.tool_call_timeout_seconds

        async def handler(args: dict[str, Any]) -> ToolResult:
            if not self._listeners:
                return ToolResult(error=NO_CONSUMER_MESSAGE)

            call_id = str(uuid.uuid4())
            future: asyncio.Future[ToolResult] = asyncio.get_running_loop().create_future()
            self._pending[call_id] = (hosted.execution_id, future)
            try:
                self._emit(
                    hosted,
                    ToolCallEnvelope(
                        execution_id=hosted.execution_id,
                        call_id=call_id,
                        tool_name=definition.name,
                        args=args,
                    ),
                )
                try:
                    return await asyncio.wait_for(future, timeout=timeout)
                except asyncio.TimeoutError:
                    raise ToolCallTimeoutError(definition.name, timeout) from None
            finally:
                self._pending.pop(call_id, None)

        return handler

    def _handle_tool_response(self, command: ToolResponseEnvelope) -> CommandResult:
        hosted = self._executions.get(command.execution_id)
        if hosted is not None and not hosted.record(command):
            return CommandResult(ok=True)

        entry = self._pending.get(command.call_id)
        if entry is None or entry[0] != command.execution_id or entry[1].done():
            logger.warning(
                f"Tool response for unknown call ID {command.call_id} "
                f"(execution {command.execution_id})"
            )
            return CommandResult(ok=False, error="Unknown call ID")

        future = entry[1]
        if command.error is not None:
            future.set_exception(ToolCallError(command.error))
        elif command.result is not None:
            future.set_result(command.result)
        else:
            future.set_exception(ToolCallError("Tool response had neither result nor error"))
        return CommandResult(ok=True)

    def _fail_pending(self, execution_id: str, reason: str) -> None:
        for call_id, (owner, future) in list(self._pending.items()):
            if owner == execution_id and not future.done():
                future.set_exception(ToolCallError(reason))
                self._pending.pop(call_id, None)

    # ------------------------------------------------------------------
    # Buffer retention
    # ------------------------------------------------------------------

    def _handle_clear_buffer(self, command: ClearBufferEnvelope) -> CommandResult:
        hosted = self._executions.get(command.execution_id)
        if hosted is None:
            return CommandResult(ok=False, error=f"Unknown execution: {command.execution_id}")
        if hosted.status.is_terminal:
            self._discard(hosted)
        else:
            hosted.events.clear()
        return CommandResult(ok=True)

    def _touch(self, hosted: HostedExecution) -> None:
        """Restart the retention timer for ``hosted``."""
        if hosted.retention is not None:
            hosted.retention.cancel()
        delay = self._config.execution.buffer_retention_minutes * 60
        hosted.retention = asyncio.get_running_loop().call_later(
            delay, self._expire, hosted.execution_id
        )

    def _expire(self, execution_id: str) -> None:
        hosted = self._executions.get(execution_id)
        if hosted is None:
            return
        if not hosted.status.is_terminal:
            self._touch(hosted)
            return
        logger.debug(f"Releasing buffer for idle execution {execution_id}")
        self._discard(hosted)

    def _discard(self, hosted: HostedExecution) -> None:
        if hosted.retention is not None:
            hosted.retention.cancel()
            hosted.retention = None
        self._executions.pop(hosted.execution_id, None)

    async def shutdown(self) -> None:
        """Abort every running execution and wait for its task to finish."""
        tasks = []
        for hosted in list(self._executions.values()):
            if not hosted.status.is_terminal:
                hosted.token.cancel()
                hosted.finish(ExecutionStatus.ABORTED)
            self._fail_pending(hosted.execution_id, "Host shutting down")
            if hosted.retention is not None:
                hosted.retention.cancel()
                hosted.retention = None
            if hosted.task is not None:
                tasks.append(hosted.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
