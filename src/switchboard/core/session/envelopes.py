"""
Session envelope models.

Every signal between the execution host and its consumers is an envelope:
``{id, direction, type, executionId, ...payload}``. Execution-direction
envelopes flow from a running harness to the consumer; command-direction
envelopes flow back. Envelope ids are unique, which is what makes replay
after a reconnect idempotent.

On the wire envelopes use camelCase keys; in Python they use snake_case.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from switchboard.core.harness.models import (
    ClientToolDefinition,
    HarnessErrorCode,
    HarnessId,
    HarnessUsage,
    McpHttpServerConfig,
    McpStdioServerConfig,
    QueryMode,
    ThinkingLevel,
    ToolResult,
)


def new_envelope_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


McpServer = Annotated[
    Union[McpStdioServerConfig, McpHttpServerConfig], Field(discriminator="type")
]


class QueryOptions(BaseModel):
    """
    Serializable options for starting an execution.

    Client tools appear here as definitions only; their handlers stay with
    the consumer and are reached through tool_call / tool_response.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    harness_id: HarnessId = HarnessId.CLAUDE_CODE
    cwd: Optional[str] = None
    model: Optional[str] = None
    mode: QueryMode = QueryMode.YOLO
    thinking: Optional[ThinkingLevel] = None
    resume_session_id: Optional[str] = None
    fork_session: bool = False
    system_prompt: Optional[str] = None
    append_system_prompt: Optional[str] = None
    additional_directories: list[str] = Field(default_factory=list)
    mcp_servers: dict[str, McpServer] = Field(default_factory=dict)
    client_tools: list[ClientToolDefinition] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)

    def resolved_cwd(self) -> str:
        return self.cwd or os.getcwd()


class _EnvelopeBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_envelope_id)
    execution_id: str
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


# ==============================================================================
# Execution direction (host -> consumer)
# ==============================================================================


class RawMessageEnvelope(_EnvelopeBase):
    """A harness-specific message, narrowed by the caller using ``harness_id``."""

    direction: Literal["execution"] = "execution"
    type: Literal["raw_message"] = "raw_message"
    harness_id: HarnessId
    message: dict[str, Any]


class StderrEnvelope(_EnvelopeBase):
    direction: Literal["execution"] = "execution"
    type: Literal["stderr"] = "stderr"
    data: str


class SessionStartedEnvelope(_EnvelopeBase):
    direction: Literal["execution"] = "execution"
    type: Literal["session_started"] = "session_started"
    session_id: str


class ToolCallEnvelope(_EnvelopeBase):
    """The backend is blocked until a tool_response with ``call_id`` arrives."""

    direction: Literal["execution"] = "execution"
    type: Literal["tool_call"] = "tool_call"
    call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)


class CompleteEnvelope(_EnvelopeBase):
    direction: Literal["execution"] = "execution"
    type: Literal["complete"] = "complete"
    usage: Optional[HarnessUsage] = None


class ErrorEnvelope(_EnvelopeBase):
    direction: Literal["execution"] = "execution"
    type: Literal["error"] = "error"
    error: str
    code: Optional[HarnessErrorCode] = None


# ==============================================================================
# Command direction (consumer -> host)
# ==============================================================================


class StartQueryEnvelope(_EnvelopeBase):
    direction: Literal["command"] = "command"
    type: Literal["start_query"] = "start_query"
    prompt: str
    options: QueryOptions


class ToolResponseEnvelope(_EnvelopeBase):
    direction: Literal["command"] = "command"
    type: Literal["tool_response"] = "tool_response"
    call_id: str
    result: Optional[ToolResult] = None
    error: Optional[str] = None


class AbortEnvelope(_EnvelopeBase):
    direction: Literal["command"] = "command"
    type: Literal["abort"] = "abort"


class ReconnectEnvelope(_EnvelopeBase):
    direction: Literal["command"] = "command"
    type: Literal["reconnect"] = "reconnect"


class ClearBufferEnvelope(_EnvelopeBase):
    """History is durable elsewhere; the host may release its buffer."""

    direction: Literal["command"] = "command"
    type: Literal["clear_buffer"] = "clear_buffer"


ExecutionEnvelope = Union[
    RawMessageEnvelope,
    StderrEnvelope,
    SessionStartedEnvelope,
    ToolCallEnvelope,
    CompleteEnvelope,
    ErrorEnvelope,
]

CommandEnvelope = Union[
    StartQueryEnvelope,
    ToolResponseEnvelope,
    AbortEnvelope,
    ReconnectEnvelope,
    ClearBufferEnvelope,
]

Envelope = Annotated[
    Union[
        RawMessageEnvelope,
        StderrEnvelope,
        SessionStartedEnvelope,
        ToolCallEnvelope,
        CompleteEnvelope,
        ErrorEnvelope,
        StartQueryEnvelope,
        ToolResponseEnvelope,
        AbortEnvelope,
        ReconnectEnvelope,
        ClearBufferEnvelope,
    ],
    Field(discriminator="type"),
]

_envelope_adapter: TypeAdapter[Any] = TypeAdapter(Envelope)

TERMINAL_TYPES = frozenset({"complete", "error"})


def parse_envelope(data: dict[str, Any]) -> Any:
    """
    Validate a wire dict into the matching envelope model.

    Legacy ``sdk_message`` envelopes (recorded before multiple harnesses were
    supported) are read as Claude Code ``raw_message`` envelopes.

    Raises:
        pydantic.ValidationError: If the dict is not a valid envelope
    """
    if data.get("type") == "sdk_message":
        data = {**data, "type": "raw_message"}
        data.setdefault("harnessId", HarnessId.CLAUDE_CODE.value)
    return _envelope_adapter.validate_python(data)


def is_terminal(envelope: Any) -> bool:
    return envelope.direction == "execution" and envelope.type in TERMINAL_TYPES


def extract_raw_messages(events: Iterable[Any]) -> list[RawMessageEnvelope]:
    return [e for e in events if isinstance(e, RawMessageEnvelope)]


def extract_stderr(events: Iterable[Any]) -> list[str]:
    return [e.data for e in events if isinstance(e, StderrEnvelope)]


def extract_errors(events: Iterable[Any]) -> list[str]:
    return [e.error for e in events if isinstance(e, ErrorEnvelope)]


def _is_claude_init(message: dict[str, Any]) -> bool:
    return message.get("type") == "system" and message.get("subtype") == "init"


def _is_codex_init(message: dict[str, Any]) -> bool:
    return message.get("type") == "thread.started"


INIT_MESSAGE_MATCHERS = {
    HarnessId.CLAUDE_CODE: _is_claude_init,
    HarnessId.CODEX: _is_codex_init,
}


def has_only_init_message(events: Iterable[Any]) -> bool:
    """True if the only raw message is the harness's session-init message."""
    messages = extract_raw_messages(events)
    if len(messages) != 1:
        return False
    matcher = INIT_MESSAGE_MATCHERS.get(messages[0].harness_id)
    return matcher is not None and matcher(messages[0].message)
