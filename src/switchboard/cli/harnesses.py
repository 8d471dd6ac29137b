"""
Switchboard CLI - Harness inspection commands.

List harnesses with their install/auth state, their models, and the slash
commands they advertise for a directory.
"""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from switchboard.cli.errors import ExitCode, print_harness_not_found_error
from switchboard.core.config import load_config
from switchboard.core.harness import HarnessId, HarnessRegistry

console = Console()


def _check_mark(value: bool) -> str:
    return "[green]✓[/green]" if value else "[red]✗[/red]"


def harnesses(
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output install status as JSON",
    ),
) -> None:
    """
    Show supported harnesses and whether each is installed and logged in.

    Examples:
        switchboard harnesses
        switchboard harnesses --json
    """
    registry = HarnessRegistry.default(load_config())
    statuses = asyncio.run(registry.check_all_install_status())

    if json_output:
        payload = {
            harness_id.value: status.model_dump(mode="json", by_alias=True)
            for harness_id, status in statuses.items()
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    table = Table(title="Harnesses")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Installed", justify="center")
    table.add_column("Version", style="dim")
    table.add_column("Auth", justify="center")
    table.add_column("Next step", style="dim")

    for harness in registry.list_harnesses():
        status = statuses[harness.id]
        hint = ""
        if not status.installed:
            hint = status.install_instructions or ""
        elif not status.authenticated:
            hint = status.auth_instructions or ""
        table.add_row(
            harness.id.value,
            harness.meta().name,
            _check_mark(status.installed),
            status.version or "-",
            _check_mark(status.authenticated),
            hint,
        )

    console.print(table)


def models(
    harness_id: HarnessId | None = typer.Argument(
        None,
        help="Only show models for this harness",
    ),
) -> None:
    """
    Show the models each harness can be asked to use.

    Examples:
        switchboard models
        switchboard models codex
    """
    registry = HarnessRegistry.default(load_config())
    if harness_id is not None and not registry.has(harness_id):
        print_harness_not_found_error(harness_id.value)
        raise typer.Exit(ExitCode.USER_ERROR)

    selected = [registry.get_or_raise(harness_id)] if harness_id else registry.list_harnesses()

    table = Table(title="Models")
    table.add_column("Harness", style="cyan")
    table.add_column("Model")
    table.add_column("Label")
    table.add_column("Default", justify="center")
    for harness in selected:
        for model in harness.models():
            table.add_row(
                harness.id.value,
                model.id,
                model.label,
                "[green]✓[/green]" if model.is_default else "",
            )
    console.print(table)


def commands(
    harness_id: HarnessId = typer.Argument(..., help="Harness to ask"),
    cwd: Path = typer.Option(
        Path("."),
        "--cwd",
        help="Directory whose slash commands and skills to list",
    ),
) -> None:
    """
    Show slash commands and skills a harness advertises for a directory.

    Discovery never fails: an unreachable or slow harness shows an empty list.

    Examples:
        switchboard commands claude-code
        switchboard commands claude-code --cwd ../other-project
    """
    registry = HarnessRegistry.default(load_config())
    harness = registry.get(harness_id)
    if harness is None:
        print_harness_not_found_error(harness_id.value)
        raise typer.Exit(ExitCode.USER_ERROR)

    found = asyncio.run(harness.discover_slash_commands(str(cwd.resolve())))
    if not found:
        console.print(f"[dim]No slash commands found for {harness_id.value}[/dim]")
        return

    for command in found:
        marker = "skill" if command.type == "skill" else "command"
        console.print(f"/{command.name} [dim]({marker})[/dim]")
