"""
Typed exceptions for the execution layer.
"""


class SessionError(Exception):
    """Base exception for execution/session errors."""


class ExecutionError(SessionError):
    """An execution was used in a way its contract does not allow."""


class ExecutionStartError(SessionError):
    """The host refused or failed to start an execution."""

    def __init__(self, execution_id: str, reason: str) -> None:
        self.execution_id = execution_id
        self.reason = reason
        super().__init__(f"Could not start execution {execution_id}: {reason}")


class ToolCallError(SessionError):
    """A client tool call was answered with an error."""


class ToolCallTimeoutError(ToolCallError):
    """No tool response arrived before the tool call timeout."""

    def __init__(self, tool_name: str, timeout_seconds: float) -> None:
        self.tool_name = tool_name
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Tool call '{tool_name}' timed out after {timeout_seconds:.0f}s")
