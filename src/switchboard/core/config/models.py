"""
Configuration data models for switchboard.

These models define the structure of .switchboard.json and
~/.config/switchboard/config.json files, with validation and type safety
via Pydantic.
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

CLAUDE_ALLOWED_TOOLS = ["Read", "Edit", "Glob", "Bash", "Grep", "WebSearch", "WebFetch"]
CLAUDE_DISALLOWED_TOOLS = ["AskUserQuestion", "EnterPlanMode", "ExitPlanMode"]
CLAUDE_READ_ONLY_DISALLOWED_TOOLS = ["Edit", "Write", "NotebookEdit"]


class HarnessDefaults(BaseModel):
    """
    Per-harness defaults merged under caller options when an execution starts.

    Caller-supplied tool lists are appended to these baselines, never
    replacing them.
    """
    model: Optional[str] = Field(
        default=None,
        description="Model used when the caller does not choose one"
    )
    allowed_tools: list[str] = Field(
        default_factory=list,
        description="Tools auto-approved for every execution"
    )
    disallowed_tools: list[str] = Field(
        default_factory=list,
        description="Tools denied for every execution"
    )
    read_only_disallowed_tools: list[str] = Field(
        default_factory=list,
        description="Additional tools denied when running in read-only mode"
    )
    binary_path: Optional[str] = Field(
        default=None,
        description="Explicit path to the harness executable"
    )


def default_harness_settings() -> dict[str, HarnessDefaults]:
    return {
        "claude-code": HarnessDefaults(
            model="sonnet",
            allowed_tools=list(CLAUDE_ALLOWED_TOOLS),
            disallowed_tools=list(CLAUDE_DISALLOWED_TOOLS),
            read_only_disallowed_tools=list(CLAUDE_READ_ONLY_DISALLOWED_TOOLS),
        ),
        "codex": HarnessDefaults(model="gpt-5.3-codex"),
    }


class ProbeConfig(BaseModel):
    """
    Timeouts for install/auth and slash-command probes.

    Probes gate optional affordances, so they are kept short.
    """
    version_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for `<harness> --version`"
    )
    install_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Timeout for the authentication probe run"
    )
    slash_command_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Timeout for slash command discovery"
    )


class ExecutionConfig(BaseModel):
    """Lifecycle settings for running executions."""
    abort_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="How long abort() waits for the host to acknowledge"
    )
    buffer_retention_minutes: float = Field(
        default=30.0,
        gt=0,
        description="Idle time after which the host releases an execution's buffer"
    )
    tool_call_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="How long a backend waits for a client tool response"
    )


class PrivacyConfig(BaseModel):
    """Telemetry settings passed through to harness processes."""
    disable_telemetry: bool = Field(
        default=True,
        description="Ask harness CLIs not to send telemetry or error reports"
    )


class SwitchboardConfig(BaseModel):
    """
    Top-level switchboard configuration.

    Loaded from defaults, user config, project config, and env vars.

    Example:
        >>> config = SwitchboardConfig(default_harness="codex")
        >>> config.harness_defaults("claude-code").model
        'sonnet'
    """
    default_harness: str = Field(
        default="claude-code",
        description="Harness used when none is specified"
    )
    harnesses: dict[str, HarnessDefaults] = Field(
        default_factory=default_harness_settings,
        description="Per-harness defaults keyed by harness id"
    )
    probes: ProbeConfig = Field(
        default_factory=ProbeConfig,
        description="Discovery probe timeouts"
    )
    execution: ExecutionConfig = Field(
        default_factory=ExecutionConfig,
        description="Execution lifecycle settings"
    )
    privacy: PrivacyConfig = Field(
        default_factory=PrivacyConfig,
        description="Telemetry settings"
    )

    model_config = ConfigDict(
        extra="allow",  # Allow extra fields for forward compatibility
        validate_assignment=True,
    )

    @field_validator('harnesses', mode='before')
    @classmethod
    def validate_harnesses(cls, v: Union[dict[str, Any], None]) -> dict[str, Any]:
        """Treat a null harnesses block as empty."""
        if v is None:
            return {}
        return v

    def harness_defaults(self, harness_id: str) -> HarnessDefaults:
        """Defaults for a harness, or empty defaults if none are configured."""
        return self.harnesses.get(harness_id) or HarnessDefaults()
