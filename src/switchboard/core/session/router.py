"""
Tool-call routing for a single execution.

When a backend calls a client tool, the host emits a ``tool_call``
envelope and blocks the backend until a matching ``tool_response`` arrives.
The router guarantees exactly one response per call id:

- registered handler: run it, answer with its result or its exception text
- no handler (typically after the consumer restarted): answer immediately
  with an "unavailable" result so the backend never waits forever
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any

from switchboard.core.harness.models import ClientTool, ToolHandler, ToolResult

from .envelopes import ToolCallEnvelope, ToolResponseEnvelope

logger = logging.getLogger(__name__)

UNAVAILABLE_HANDLER_MESSAGE = "Tool handler not available (reconnected session)"

Respond = Callable[[ToolResponseEnvelope], None]


class ToolCallRouter:
    """
    Per-execution map of tool name to handler.

    Args:
        execution_id: Execution whose tool calls this router answers
        respond: Called once with each tool_response envelope
    """

    def __init__(self, execution_id: str, respond: Respond) -> None:
        self.execution_id = execution_id
        self._respond = respond
        self._handlers: dict[str, ToolHandler] = {}
        self._answered: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def register(self, name: str, handler: ToolHandler) -> None:
        self._handlers[name] = handler

    def register_all(self, tools: Iterable[ClientTool]) -> None:
        for tool in tools:
            self.register(tool.name, tool.handler)

    def has(self, name: str) -> bool:
        return name in self._handlers

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers)

    def mark_answered(self, call_id: str) -> None:
        """Record that ``call_id`` already has a response (seen in history)."""
        self._answered.add(call_id)

    def is_answered(self, call_id: str) -> bool:
        return call_id in self._answered

    def dispatch(self, call: ToolCallEnvelope) -> None:
        """
        Answer a tool call.

        Unregistered tools are answered synchronously; registered handlers
        run as tasks on the running loop.
        """
        if call.call_id in self._answered:
            logger.debug(f"Tool call {call.call_id} already answered, skipping")
            return
        # Reserved before the handler runs; replays of this call id are ignored
        self._answered.add(call.call_id)

        handler = self._handlers.get(call.tool_name)
        if handler is None:
            logger.info(
                f"No handler for tool '{call.tool_name}' on execution {self.execution_id}"
            )
            self._send(call, result=ToolResult(content=UNAVAILABLE_HANDLER_MESSAGE))
            return

        task = asyncio.get_running_loop().create_task(self._run(call, handler))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, call: ToolCallEnvelope, handler: ToolHandler) -> None:
        try:
            result = _as_tool_result(await handler(call.args))
        except Exception as e:
            logger.warning(f"Tool '{call.tool_name}' failed: {e}")
            self._send(call, error=str(e) or type(e).__name__)
            return
        self._send(call, result=result)

    def _send(
        self,
        call: ToolCallEnvelope,
        *,
        result: ToolResult | None = None,
        error: str | None = None,
    ) -> None:
        self._respond(
            ToolResponseEnvelope(
                execution_id=call.execution_id,
                call_id=call.call_id,
                result=result,
                error=error,
            )
        )

    async def drain(self) -> None:
        """Wait for every running handler to finish and respond."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in list(self._tasks):
            task.cancel()


def _as_tool_result(outcome: Any) -> ToolResult:
    if isinstance(outcome, ToolResult):
        return outcome
    if isinstance(outcome, str):
        return ToolResult(content=outcome)
    return ToolResult.model_validate(outcome)
