"""
Execution layer: envelopes, the execution host, and the consumer-side
Execution / ExecutionRegistry with client tool-call routing.
"""

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
    extract_errors,
    extract_raw_messages,
    extract_stderr,
    has_only_init_message,
    parse_envelope,
)
from .errors import (
    ExecutionError,
    ExecutionStartError,
    SessionError,
    ToolCallError,
    ToolCallTimeoutError,
)
from .execution import Execution, ExecutionState, ExecutionStatus
from .host import ExecutionHost
from .registry import ExecutionRegistry
from .router import UNAVAILABLE_HANDLER_MESSAGE, ToolCallRouter
from .transport import CommandResult, ExecutionTransport, ReconnectResult

__all__ = [
    # Envelopes
    "AbortEnvelope",
    "ClearBufferEnvelope",
    "CompleteEnvelope",
    "ErrorEnvelope",
    "QueryOptions",
    "RawMessageEnvelope",
    "ReconnectEnvelope",
    "SessionStartedEnvelope",
    "StartQueryEnvelope",
    "StderrEnvelope",
    "ToolCallEnvelope",
    "ToolResponseEnvelope",
    "extract_errors",
    "extract_raw_messages",
    "extract_stderr",
    "has_only_init_message",
    "parse_envelope",
    # Errors
    "ExecutionError",
    "ExecutionStartError",
    "SessionError",
    "ToolCallError",
    "ToolCallTimeoutError",
    # Execution
    "Execution",
    "ExecutionHost",
    "ExecutionRegistry",
    "ExecutionState",
    "ExecutionStatus",
    "ToolCallRouter",
    "UNAVAILABLE_HANDLER_MESSAGE",
    # Transport
    "CommandResult",
    "ExecutionTransport",
    "ReconnectResult",
]
