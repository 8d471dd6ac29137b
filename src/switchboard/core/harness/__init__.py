"""
Harness adapters for external AI coding-agent CLIs.

This package provides a uniform adapter interface over backend CLIs
(Claude Code, Codex) along with install/auth probing, slash command
discovery, and a streaming query operation.
"""

from .backend import BaseHarness, Harness, HarnessRegistry, register_harness
from .cancellation import CancellationToken
from .errors import HarnessError, HarnessNotFoundError, HarnessNotInstalledError
from .models import (
    ClientTool,
    ClientToolDefinition,
    CompleteEvent,
    DefunctSession,
    ErrorEvent,
    HarnessCapabilities,
    HarnessErrorCode,
    HarnessEvent,
    HarnessId,
    HarnessMeta,
    HarnessModel,
    HarnessQuery,
    HarnessUsage,
    InstallStatus,
    McpHttpServerConfig,
    McpServerConfig,
    McpStdioServerConfig,
    MessageEvent,
    QueryMode,
    SessionStartedEvent,
    SlashCommand,
    StderrEvent,
    ThinkingLevel,
    ToolResult,
)

__all__ = [
    # Protocol and registry
    "BaseHarness",
    "Harness",
    "HarnessRegistry",
    "register_harness",
    "CancellationToken",
    # Errors
    "HarnessError",
    "HarnessNotFoundError",
    "HarnessNotInstalledError",
    # Models
    "ClientTool",
    "ClientToolDefinition",
    "CompleteEvent",
    "DefunctSession",
    "ErrorEvent",
    "HarnessCapabilities",
    "HarnessErrorCode",
    "HarnessEvent",
    "HarnessId",
    "HarnessMeta",
    "HarnessModel",
    "HarnessQuery",
    "HarnessUsage",
    "InstallStatus",
    "McpHttpServerConfig",
    "McpServerConfig",
    "McpStdioServerConfig",
    "MessageEvent",
    "QueryMode",
    "SessionStartedEvent",
    "SlashCommand",
    "StderrEvent",
    "ThinkingLevel",
    "ToolResult",
]
