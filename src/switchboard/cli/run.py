"""
Switchboard CLI - Run command.

Start one execution through an in-process ExecutionHost and stream its
messages to the terminal.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from switchboard.cli.errors import (
    ExitCode,
    print_defunct_session_error,
    print_error,
    print_harness_not_found_error,
    print_harness_not_installed_error,
)
from switchboard.core.config import SwitchboardConfig, load_config
from switchboard.core.harness import (
    HarnessErrorCode,
    HarnessId,
    HarnessRegistry,
    HarnessUsage,
    QueryMode,
    ThinkingLevel,
)
from switchboard.core.session import (
    CompleteEnvelope,
    ErrorEnvelope,
    Execution,
    ExecutionHost,
    ExecutionRegistry,
    ExecutionStartError,
    ExecutionStatus,
    QueryOptions,
)

logger = logging.getLogger(__name__)

console = Console()

STATUS_EXIT_CODES = {
    ExecutionStatus.COMPLETED: ExitCode.SUCCESS,
    ExecutionStatus.ERROR: ExitCode.GENERAL_ERROR,
    ExecutionStatus.ABORTED: ExitCode.SIGINT,
}


def message_text(harness_id: HarnessId | None, message: dict[str, Any]) -> str | None:
    """
    Pull the human-readable assistant text out of a raw harness message.

    Returns:
        The text, or None for messages with nothing to show
    """
    if harness_id == HarnessId.CODEX:
        item = message.get("item")
        if message.get("type") == "item.completed" and isinstance(item, dict):
            if item.get("type") == "agent_message":
                return item.get("text")
        return None

    if message.get("type") != "assistant":
        return None
    content = (message.get("message") or {}).get("content") or []
    texts = [
        block.get("text", "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "\n".join(t for t in texts if t) or None


def _usage(execution: Execution) -> HarnessUsage | None:
    for envelope in reversed(execution.events):
        if isinstance(envelope, CompleteEnvelope):
            return envelope.usage
    return None


def _error_code(execution: Execution) -> HarnessErrorCode | None:
    for envelope in reversed(execution.events):
        if isinstance(envelope, ErrorEnvelope):
            return envelope.code
    return None


def _print_summary(execution: Execution) -> None:
    usage = _usage(execution)
    if execution.session_id:
        console.print(f"[dim]Session: {execution.session_id}[/dim]")
    if usage is not None:
        line = f"[dim]Tokens: {usage.input_tokens} in / {usage.output_tokens} out"
        if usage.cost_usd is not None:
            line += f" · ${usage.cost_usd:.4f}"
        if usage.duration_ms:
            line += f" · {usage.duration_ms / 1000:.1f}s"
        console.print(line + "[/dim]")


async def run_execution(
    prompt: str,
    options: QueryOptions,
    config: SwitchboardConfig,
    *,
    json_output: bool = False,
    harnesses: HarnessRegistry | None = None,
) -> int:
    """
    Run one execution to completion and render it.

    Args:
        prompt: Prompt for the harness
        options: Query options (harness, model, mode, ...)
        config: Loaded configuration
        json_output: Print each raw message as a JSON line instead of text
        harnesses: Adapter registry; the default registry if omitted

    Returns:
        Process exit code reflecting the execution's terminal status
    """
    harnesses = harnesses or HarnessRegistry.default(config)
    harness = harnesses.get(options.harness_id)
    if harness is None:
        print_harness_not_found_error(options.harness_id.value)
        return ExitCode.USER_ERROR

    host = ExecutionHost(harnesses, config)
    try:
        async with ExecutionRegistry(host, config) as registry:
            try:
                execution = await registry.start(prompt, options)
            except ExecutionStartError as e:
                print_error("Could not start execution", reason=e.reason)
                return ExitCode.GENERAL_ERROR

            try:
                async for message in execution.messages():
                    if json_output:
                        typer.echo(json.dumps(message))
                        continue
                    text = message_text(execution.harness_id, message)
                    if text:
                        console.print(text)
            except asyncio.CancelledError:
                await execution.abort()
                raise

            status = await execution.wait()
            if not json_output:
                _print_summary(execution)

            if status == ExecutionStatus.ERROR:
                defunct = None
                if options.resume_session_id:
                    defunct = harness.defunct_session_id(
                        stderr=execution.stderr_output(),
                        errors=execution.error_messages(),
                        messages=execution.raw_messages(),
                    )
                code = _error_code(execution)
                if defunct is not None:
                    logger.warning(f"Defunct session: {defunct.detail}")
                    print_defunct_session_error(defunct.session_id or options.resume_session_id)
                elif code in (HarnessErrorCode.NOT_INSTALLED, HarnessErrorCode.AUTH_FAILED):
                    install_status = await harness.check_install_status()
                    print_harness_not_installed_error(harness.id.value, install_status)
                else:
                    errors = execution.error_messages()
                    print_error("Execution failed", reason=errors[-1] if errors else None)

            return STATUS_EXIT_CODES[status]
    finally:
        await host.shutdown()


def run(
    harness_id: HarnessId = typer.Argument(..., help="Harness to run"),
    prompt: str = typer.Argument(..., help="Prompt to send"),
    model: str | None = typer.Option(
        None,
        "--model",
        "-m",
        help="Model to use (defaults to the harness's configured model)",
    ),
    mode: QueryMode = typer.Option(
        QueryMode.YOLO,
        "--mode",
        help="Permission mode",
    ),
    thinking: ThinkingLevel | None = typer.Option(
        None,
        "--thinking",
        help="Reasoning effort",
    ),
    resume: str | None = typer.Option(
        None,
        "--resume",
        "-r",
        help="Resume a previous session by id",
    ),
    cwd: Path = typer.Option(
        Path("."),
        "--cwd",
        help="Working directory for the harness",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print raw harness messages as JSON lines",
    ),
) -> None:
    """
    Run a prompt through a harness and stream its output.

    Ctrl+C aborts the execution and stops the backend process.

    Examples:
        switchboard run claude-code "Explain this repository"
        switchboard run codex "Fix the failing test" --mode read-only
        switchboard run claude-code "Continue" --resume 3f2a...
    """
    project_dir = cwd.resolve()
    config = load_config(project_dir=project_dir)
    options = QueryOptions(
        harness_id=harness_id,
        cwd=str(project_dir),
        model=model,
        mode=mode,
        thinking=thinking,
        resume_session_id=resume,
    )

    try:
        exit_code = asyncio.run(run_execution(prompt, options, config, json_output=json_output))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        raise typer.Exit(ExitCode.SIGINT)

    raise typer.Exit(int(exit_code))
