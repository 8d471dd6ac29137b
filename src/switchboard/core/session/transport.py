"""
Transport between execution consumers and the execution host.

The host owns running harness processes and their buffered history; the
consumer side (ExecutionRegistry) only speaks this protocol, so the host can
live in the same process (``ExecutionHost``) or behind any channel that can
carry envelopes.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, Union, runtime_checkable

from pydantic import BaseModel, Field

from .envelopes import (
    AbortEnvelope,
    ClearBufferEnvelope,
    ReconnectEnvelope,
    StartQueryEnvelope,
    ToolResponseEnvelope,
)

EnvelopeListener = Callable[[Any], None]


class CommandResult(BaseModel):
    """Acknowledgement of a command envelope."""

    ok: bool
    error: str | None = None


class ReconnectResult(BaseModel):
    """Buffered history for an execution, if the host still has it."""

    found: bool
    events: list[Any] = Field(default_factory=list)


@runtime_checkable
class ExecutionTransport(Protocol):
    """
    Protocol for reaching an execution host.

    ``subscribe`` delivers every execution-direction envelope for every
    execution; consumers demultiplex by ``execution_id``.
    """

    def subscribe(self, listener: EnvelopeListener) -> Callable[[], None]:
        """
        Register a listener for execution-direction envelopes.

        Returns:
            A function that removes the listener
        """
        ...

    async def start_query(self, command: StartQueryEnvelope) -> CommandResult:
        """Ask the host to start running a harness query."""
        ...

    async def reconnect(self, command: ReconnectEnvelope) -> ReconnectResult:
        """Fetch buffered history for an execution."""
        ...

    async def abort(self, command: AbortEnvelope) -> CommandResult:
        """Ask the host to stop an execution's backend process."""
        ...

    def send_command(
        self, command: Union[ToolResponseEnvelope, ClearBufferEnvelope]
    ) -> CommandResult:
        """Deliver a fire-and-forget command (tool responses, buffer release)."""
        ...
