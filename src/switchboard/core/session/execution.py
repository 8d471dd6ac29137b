"""
Execution: one running (or finished) harness invocation as seen by a consumer.

An Execution owns an append-only, id-deduplicated envelope log and a status
machine that leaves ``in_progress`` at most once. Envelopes arrive through
``ingest`` (live, from the registry's subscription, or replayed after a
reconnect); the raw messages among them are exposed as a lazy async
sequence that ends only after the terminal envelope.

Example:
    >>> execution = await registry.start("Fix the failing test", options)
    >>> async for message in execution.messages():
    ...     render(message)
    >>> execution.status
    <ExecutionStatus.COMPLETED: 'completed'>
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from switchboard.core.harness.models import ClientTool, HarnessId

from .envelopes import (
    AbortEnvelope,
    ClearBufferEnvelope,
    CompleteEnvelope,
    ErrorEnvelope,
    RawMessageEnvelope,
    SessionStartedEnvelope,
    StartQueryEnvelope,
    StderrEnvelope,
    ToolCallEnvelope,
    ToolResponseEnvelope,
    extract_errors,
    extract_stderr,
    parse_envelope,
)
from .errors import ExecutionError
from .router import ToolCallRouter
from .transport import ExecutionTransport

logger = logging.getLogger(__name__)

DEFAULT_ABORT_TIMEOUT = 2.0

Listener = Callable[[Any], None]


class ExecutionStatus(str, Enum):
    """Lifecycle of an execution. Every state but IN_PROGRESS is final."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.IN_PROGRESS


class ExecutionState(BaseModel):
    """Point-in-time snapshot of an execution."""

    execution_id: str
    harness_id: HarnessId | None = None
    status: ExecutionStatus
    session_id: str | None = None
    events: list[Any] = Field(default_factory=list)
    created_at: datetime
    completed_at: datetime | None = None


class Execution:
    """
    Consumer-side handle for one execution.

    Ingestion, routing and status changes run synchronously on the event
    loop; the only suspension point is ``messages()`` waiting for more
    envelopes.

    Args:
        execution_id: Unique id of the execution
        harness_id: Harness running it, if known (learned from history otherwise)
        transport: Channel to the execution host
        abort_timeout: Seconds ``abort()`` waits for the host to acknowledge
        tools: Client tools whose handlers answer this execution's tool calls
    """

    def __init__(
        self,
        execution_id: str,
        harness_id: HarnessId | None,
        transport: ExecutionTransport,
        *,
        abort_timeout: float = DEFAULT_ABORT_TIMEOUT,
        tools: Iterable[ClientTool] | None = None,
    ) -> None:
        self.execution_id = execution_id
        self.harness_id = harness_id
        self._transport = transport
        self._abort_timeout = abort_timeout

        self._log: list[Any] = []
        self._seen_ids: set[str] = set()
        self._status = ExecutionStatus.IN_PROGRESS
        self._session_id: str | None = None
        self._created_at = datetime.now(timezone.utc)
        self._completed_at: datetime | None = None
        # Log length when the status left IN_PROGRESS
        self._terminal_index: int | None = None

        self._wakeup = asyncio.Event()
        self._done = asyncio.Event()
        self._consuming = False
        self._abort_requested = False

        self._message_listeners: list[Listener] = []
        self._stderr_listeners: list[Listener] = []
        self._status_listeners: list[Listener] = []

        self.router = ToolCallRouter(execution_id, self._send_tool_response)
        if tools:
            self.router.register_all(tools)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def status(self) -> ExecutionStatus:
        return self._status

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def is_terminal(self) -> bool:
        return self._status.is_terminal

    @property
    def events(self) -> list[Any]:
        """Copy of the envelope log in arrival order."""
        return list(self._log)

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def completed_at(self) -> datetime | None:
        return self._completed_at

    @property
    def state(self) -> ExecutionState:
        return ExecutionState(
            execution_id=self.execution_id,
            harness_id=self.harness_id,
            status=self._status,
            session_id=self._session_id,
            events=list(self._log),
            created_at=self._created_at,
            completed_at=self._completed_at,
        )

    def raw_messages(self) -> list[dict[str, Any]]:
        return [e.message for e in self._log if isinstance(e, RawMessageEnvelope)]

    def stderr_output(self) -> list[str]:
        return extract_stderr(self._log)

    def error_messages(self) -> list[str]:
        return extract_errors(self._log)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_message(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with each new raw_message envelope."""
        return _add_listener(self._message_listeners, listener)

    def on_stderr(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with each new stderr envelope."""
        return _add_listener(self._stderr_listeners, listener)

    def on_status(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with the new status when the execution finishes."""
        return _add_listener(self._status_listeners, listener)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(self, envelope: Any) -> bool:
        """
        Record an envelope and react to it.

        Args:
            envelope: Envelope model, or a wire dict

        Returns:
            True if the envelope was new and appended, False if it was
            dropped (duplicate id or another execution's envelope)
        """
        if isinstance(envelope, dict):
            envelope = parse_envelope(envelope)

        if envelope.execution_id != self.execution_id:
            logger.debug(
                f"Execution {self.execution_id} dropping envelope for {envelope.execution_id}"
            )
            return False
        if envelope.id in self._seen_ids:
            logger.debug(f"Execution {self.execution_id} dropping duplicate envelope {envelope.id}")
            return False

        self._seen_ids.add(envelope.id)
        self._log.append(envelope)

        if isinstance(envelope, RawMessageEnvelope):
            if self.harness_id is None:
                self.harness_id = envelope.harness_id
            _notify(self._message_listeners, envelope)
        elif isinstance(envelope, StderrEnvelope):
            _notify(self._stderr_listeners, envelope)
        elif isinstance(envelope, SessionStartedEnvelope):
            if self._session_id is None:
                self._session_id = envelope.session_id
            elif envelope.session_id != self._session_id:
                logger.warning(
                    f"Execution {self.execution_id} ignoring second session id "
                    f"{envelope.session_id} (latched {self._session_id})"
                )
        elif isinstance(envelope, CompleteEnvelope):
            self._finish(ExecutionStatus.COMPLETED)
        elif isinstance(envelope, AbortEnvelope):
            self._abort_requested = True
            self._finish(ExecutionStatus.ABORTED)
        elif isinstance(envelope, ErrorEnvelope):
            if not self._finish(ExecutionStatus.ERROR):
                logger.debug(f"Execution {self.execution_id} recorded late error: {envelope.error}")
        elif isinstance(envelope, ToolCallEnvelope):
            self.router.dispatch(envelope)
        elif isinstance(envelope, ToolResponseEnvelope):
            self.router.mark_answered(envelope.call_id)
        elif isinstance(envelope, StartQueryEnvelope):
            if self.harness_id is None:
                self.harness_id = envelope.options.harness_id

        self._wakeup.set()
        return True

    def replay(self, events: Iterable[Any]) -> int:
        """
        Ingest buffered history from the host.

        Tool calls that already have a response anywhere in the history are
        not answered again.

        Returns:
            Number of envelopes that were new
        """
        parsed = [parse_envelope(e) if isinstance(e, dict) else e for e in events]
        for envelope in parsed:
            if isinstance(envelope, ToolResponseEnvelope):
                self.router.mark_answered(envelope.call_id)

        if parsed and not self._log:
            self._created_at = parsed[0].timestamp

        return sum(1 for envelope in parsed if self.ingest(envelope))

    def _finish(self, status: ExecutionStatus) -> bool:
        if self._status.is_terminal:
            return False
        self._status = status
        self._completed_at = datetime.now(timezone.utc)
        self._terminal_index = len(self._log)
        self._wakeup.set()
        self._done.set()
        _notify(self._status_listeners, status)
        return True

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """
        Yield raw messages in arrival order until the execution finishes.

        Buffered messages are yielded first; then the generator waits for
        new ones. It ends once every message logged before the terminal
        envelope has been yielded.

        Raises:
            ExecutionError: If another consumer is already iterating
        """
        if self._consuming:
            raise ExecutionError(f"Execution {self.execution_id} already has a consumer")
        self._consuming = True
        cursor = 0
        try:
            while True:
                limit = self._terminal_index if self._terminal_index is not None else len(self._log)
                if cursor < limit:
                    envelope = self._log[cursor]
                    cursor += 1
                    if isinstance(envelope, RawMessageEnvelope):
                        yield envelope.message
                    continue
                if self._terminal_index is not None:
                    return
                self._wakeup.clear()
                await self._wakeup.wait()
        finally:
            self._consuming = False

    async def wait(self) -> ExecutionStatus:
        """Wait until the execution reaches a terminal status."""
        await self._done.wait()
        return self._status

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def abort(self) -> None:
        """
        Stop the execution.

        The local status becomes ABORTED immediately. The host is asked to
        stop the backend, but only ``abort_timeout`` seconds are spent
        waiting for it to acknowledge. Calling abort again does nothing.
        """
        if self._abort_requested:
            return
        self._abort_requested = True

        if not self._finish(ExecutionStatus.ABORTED):
            return

        try:
            result = await asyncio.wait_for(
                self._transport.abort(AbortEnvelope(execution_id=self.execution_id)),
                timeout=self._abort_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Abort of {self.execution_id} not acknowledged within {self._abort_timeout}s"
            )
            return
        except Exception as e:
            logger.warning(f"Abort request for {self.execution_id} failed: {e}")
            return

        if not result.ok:
            logger.debug(f"Host declined abort of {self.execution_id}: {result.error}")

    def clear_buffer(self) -> None:
        """Tell the host this execution's history is stored elsewhere."""
        result = self._transport.send_command(ClearBufferEnvelope(execution_id=self.execution_id))
        if not result.ok:
            logger.debug(f"Clear buffer for {self.execution_id} declined: {result.error}")

    def _send_tool_response(self, response: ToolResponseEnvelope) -> None:
        self.ingest(response)
        result = self._transport.send_command(response)
        if not result.ok:
            logger.warning(
                f"Host rejected tool response {response.call_id} for "
                f"{self.execution_id}: {result.error}"
            )


def _add_listener(listeners: list[Listener], listener: Listener) -> Callable[[], None]:
    listeners.append(listener)

    def remove() -> None:
        if listener in listeners:
            listeners.remove(listener)

    return remove


def _notify(listeners: list[Listener], value: Any) -> None:
    for listener in list(listeners):
        try:
            listener(value)
        except Exception:
            logger.exception("Execution listener raised")
