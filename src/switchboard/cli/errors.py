"""
Standardized error handling and exit codes for the switchboard CLI.

This module provides consistent error messaging with actionable guidance
and standardized exit codes across all CLI commands.
"""

from enum import IntEnum

from rich.console import Console

from switchboard.core.harness.models import InstallStatus

console = Console(stderr=True)


class ExitCode(IntEnum):
    """Standard exit codes for switchboard CLI operations."""

    SUCCESS = 0
    """Operation completed successfully."""

    GENERAL_ERROR = 1
    """Generic error, including an execution that ended in error."""

    USER_ERROR = 2
    """User configuration or input error (actionable by user)."""

    SIGINT = 130
    """Terminated by SIGINT (Ctrl+C), or the execution was aborted."""


def print_error(
    problem: str,
    *,
    reason: str | None = None,
    solution: str | None = None,
) -> None:
    """
    Print a standardized error message with actionable guidance.

    Args:
        problem: Brief description of what went wrong
        reason: Optional explanation of why it happened
        solution: Optional command or action to fix it

    Example:
        >>> print_error(
        ...     "Harness 'codex' is not installed",
        ...     solution="npm install -g @openai/codex",
        ... )
    """
    console.print(f"[red]Error:[/red] {problem}")

    if reason:
        console.print(f"[dim]{reason}[/dim]")

    if solution:
        console.print(f"[cyan]→ Try:[/cyan] {solution}")


def print_harness_not_found_error(harness_id: str) -> None:
    """Print error when no adapter is registered for a harness id."""
    print_error(
        f"Harness '{harness_id}' is not available",
        reason="No adapter is registered for this harness",
        solution="switchboard harnesses  # list supported harnesses",
    )


def print_harness_not_installed_error(harness_id: str, status: InstallStatus) -> None:
    """Print error when a harness CLI is missing or not logged in."""
    if not status.installed:
        print_error(
            f"Harness '{harness_id}' is not installed",
            solution=status.install_instructions,
        )
    else:
        print_error(
            f"Harness '{harness_id}' is not authenticated",
            solution=status.auth_instructions,
        )


def print_defunct_session_error(session_id: str) -> None:
    """Print error when a resumed session no longer exists on the backend."""
    print_error(
        f"Session {session_id} can no longer be resumed",
        reason="The backend has no record of this conversation",
        solution="Run again without --resume to start a new session",
    )
