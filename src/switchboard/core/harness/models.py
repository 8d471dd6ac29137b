"""
Harness data models for switchboard.

Defines the static descriptions of a harness (meta, models, capabilities),
the install/auth probe result, query input, and the backend-agnostic events
an adapter yields while a query runs.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from switchboard.core.harness.cancellation import CancellationToken


class HarnessId(str, Enum):
    """Known backend identities."""

    CLAUDE_CODE = "claude-code"
    CODEX = "codex"


class QueryMode(str, Enum):
    """Permission mode a query runs under."""

    READ_ONLY = "read-only"
    YOLO = "yolo"


class ThinkingLevel(str, Enum):
    """Backend-agnostic reasoning effort."""

    LOW = "low"
    MED = "med"
    HIGH = "high"


class HarnessErrorCode(str, Enum):
    """Machine-readable reason attached to error events."""

    AUTH_FAILED = "auth_failed"
    NOT_INSTALLED = "not_installed"
    RATE_LIMITED = "rate_limited"
    CONTEXT_OVERFLOW = "context_overflow"
    PROCESS_CRASHED = "process_crashed"
    ABORTED = "aborted"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class HarnessMeta(BaseModel):
    """Display information for a harness."""

    id: HarnessId
    name: str
    vendor: str
    website: str


class HarnessModel(BaseModel):
    """A model a harness can be asked to use."""

    id: str = Field(description="Identifier passed to the backend CLI")
    label: str = Field(description="Human-readable name")
    description: str = Field(default="")
    is_default: bool = Field(default=False)


class HarnessCapabilities(BaseModel):
    """
    Static capabilities for a specific harness.

    Backends differ in which query options they honour. Callers consult this
    before offering a feature rather than branching on the harness id.
    """

    supports_system_prompt: bool = Field(
        default=False, description="Accepts a replacement system prompt"
    )
    supports_append_system_prompt: bool = Field(
        default=False, description="Accepts text appended to the default system prompt"
    )
    supports_read_only: bool = Field(default=False, description="Has a read-only mode")
    supports_mcp: bool = Field(default=False, description="Can be given MCP servers")
    supports_resume: bool = Field(default=False, description="Can resume a previous session")
    supports_fork: bool = Field(default=False, description="Can fork a resumed session")
    supports_client_tools: bool = Field(
        default=False, description="Can call tools implemented by the caller"
    )
    supports_streaming_tokens: bool = Field(
        default=False, description="Streams partial tokens while generating"
    )
    supports_cost_tracking: bool = Field(
        default=False, description="Reports dollar cost (directly or via pricing table)"
    )
    supports_named_tools: bool = Field(
        default=False, description="Honours tool allow/deny lists by name"
    )
    supports_images: bool = Field(default=False, description="Accepts image prompt parts")
    thinking_levels: list[ThinkingLevel] = Field(
        default_factory=list, description="Reasoning effort levels the backend understands"
    )

    def has(self, capability: str) -> bool:
        """
        Check if harness has a specific capability.

        Args:
            capability: Capability name without the ``supports_`` prefix

        Returns:
            True if capability is supported
        """
        return bool(getattr(self, f"supports_{capability}", False))


class InstallStatus(BaseModel):
    """
    Best-effort install and authentication state of a harness.

    Produced by probes that never raise; a failed probe is reported as
    ``installed=False`` with instructions.
    """

    model_config = ConfigDict(populate_by_name=True)

    installed: bool
    version: str | None = None
    auth_type: Literal["api-key", "account", "none"] = Field(default="none", alias="authType")
    authenticated: bool = False
    auth_instructions: str | None = Field(default=None, alias="authInstructions")
    install_instructions: str | None = Field(default=None, alias="installInstructions")


class SlashCommand(BaseModel):
    """A slash command or skill advertised by a harness for a directory."""

    name: str
    type: Literal["skill", "slash_command"]


class McpStdioServerConfig(BaseModel):
    """MCP server launched as a child process speaking stdio."""

    type: Literal["stdio"] = "stdio"
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None


class McpHttpServerConfig(BaseModel):
    """MCP server reachable over streamable HTTP."""

    type: Literal["http"] = "http"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)


McpServerConfig = Union[McpStdioServerConfig, McpHttpServerConfig]


class ToolResult(BaseModel):
    """Outcome of a client tool: content on success, error otherwise."""

    content: str | None = None
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


class ClientToolDefinition(BaseModel):
    """Serializable description of a tool implemented by the caller."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
    )


ToolHandler = Callable[[dict[str, Any]], Awaitable[ToolResult]]


@dataclass
class ClientTool:
    """A client tool definition bound to the coroutine that implements it."""

    definition: ClientToolDefinition
    handler: ToolHandler

    @property
    def name(self) -> str:
        return self.definition.name


class HarnessUsage(BaseModel):
    """Token and cost accounting reported when a turn completes."""

    model_config = ConfigDict(populate_by_name=True)

    input_tokens: int = Field(default=0, alias="inputTokens")
    output_tokens: int = Field(default=0, alias="outputTokens")
    cache_read_tokens: int | None = Field(default=None, alias="cacheReadTokens")
    cache_write_tokens: int | None = Field(default=None, alias="cacheWriteTokens")
    cost_usd: float | None = Field(default=None, alias="costUsd")
    duration_ms: int = Field(default=0, alias="durationMs")


@dataclass
class TextPart:
    text: str
    type: Literal["text"] = "text"


@dataclass
class ImagePart:
    data: str
    media_type: str
    type: Literal["image"] = "image"


PromptPart = Union[TextPart, ImagePart]


def prompt_text(prompt: str | list[PromptPart]) -> str:
    """Flatten a prompt to the text a CLI backend can accept."""
    if isinstance(prompt, str):
        return prompt
    return "\n".join(part.text for part in prompt if isinstance(part, TextPart))


@dataclass
class HarnessQuery:
    """
    Input for a single adapter invocation.

    Carries live objects (tool handlers, cancellation token) so it is a
    dataclass rather than a pydantic model. The serializable counterpart is
    ``switchboard.core.session.envelopes.QueryOptions``.
    """

    prompt: str | list[PromptPart]
    cwd: str
    token: CancellationToken
    system_prompt: str | None = None
    append_system_prompt: str | None = None
    additional_directories: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    model: str | None = None
    thinking: ThinkingLevel | None = None
    resume_session_id: str | None = None
    fork_session: bool = False
    mode: QueryMode = QueryMode.YOLO
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    mcp_servers: dict[str, McpServerConfig] = field(default_factory=dict)
    client_tools: list[ClientTool] = field(default_factory=list)


# Events yielded by HarnessAdapter.query()


@dataclass
class MessageEvent:
    message: dict[str, Any]
    type: Literal["message"] = "message"


@dataclass
class SessionStartedEvent:
    session_id: str
    type: Literal["session_started"] = "session_started"


@dataclass
class CompleteEvent:
    usage: HarnessUsage | None = None
    type: Literal["complete"] = "complete"


@dataclass
class ErrorEvent:
    error: str
    code: HarnessErrorCode = HarnessErrorCode.UNKNOWN
    type: Literal["error"] = "error"


@dataclass
class StderrEvent:
    data: str
    type: Literal["stderr"] = "stderr"


HarnessEvent = Union[MessageEvent, SessionStartedEvent, CompleteEvent, ErrorEvent, StderrEvent]


class DefunctSession(BaseModel):
    """A resume attempt the backend rejected because the session no longer exists."""

    session_id: str | None = None
    detail: str = ""
