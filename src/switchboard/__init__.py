"""
Switchboard - one protocol for AI coding-agent CLIs

Drives Claude Code and Codex as subprocesses, normalizes their output into
execution envelopes, and routes their client tool calls back to the caller.
"""

__version__ = "0.4.0"

# Re-export core models for convenience
from switchboard.core.config.models import SwitchboardConfig
from switchboard.core.harness.models import HarnessId, QueryMode, ThinkingLevel

__all__ = ["HarnessId", "QueryMode", "SwitchboardConfig", "ThinkingLevel", "__version__"]
