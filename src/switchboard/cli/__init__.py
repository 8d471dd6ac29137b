"""
Switchboard CLI - Main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

import logging
import sys

import typer
from rich.console import Console

from switchboard import __version__
from switchboard.cli import harnesses, run
from switchboard.core.config.env import load_layered_env

# Help panel names for command grouping
PANEL_RUN = "Run Harnesses"
PANEL_INSPECT = "Inspect Harnesses"
PANEL_INSTALL = "Manage Your Switchboard Installation"

# Create the main Typer app
app = typer.Typer(
    name="switchboard",
    help="Drive AI coding-agent CLIs through one execution protocol",
    no_args_is_help=True,
    add_completion=True,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


def setup_logging(debug: bool = False) -> None:
    """
    Configure logging for all commands.

    Args:
        debug: If True, enable DEBUG level logging
    """
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug output with detailed logging",
    ),
) -> None:
    """
    Switchboard - one protocol for Claude Code and Codex.

    Quick Start:
        switchboard harnesses                         # What is installed?
        switchboard run claude-code "Explain this"    # Stream a run
        switchboard run codex "Fix it" --mode read-only
    """
    setup_logging(debug)
    # Before any command runs, so spawned harness CLIs inherit the values
    load_layered_env()

    ctx.obj = {"debug": debug}


# =============================================================================
# Run Harnesses
# =============================================================================

app.command(name="run", rich_help_panel=PANEL_RUN)(run.run)


# =============================================================================
# Inspect Harnesses
# =============================================================================

app.command(name="harnesses", rich_help_panel=PANEL_INSPECT)(harnesses.harnesses)
app.command(name="models", rich_help_panel=PANEL_INSPECT)(harnesses.models)
app.command(name="commands", rich_help_panel=PANEL_INSPECT)(harnesses.commands)


# =============================================================================
# Manage Your Switchboard Installation
# =============================================================================


@app.command(rich_help_panel=PANEL_INSTALL)
def version() -> None:
    """Show switchboard version and exit."""
    console.print(f"switchboard version {__version__}")
    raise typer.Exit(0)


def cli_main() -> None:
    """Main CLI entry point."""
    app()


__all__ = ["app", "cli_main", "setup_logging"]
