"""
ironsync CLI - Main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

import typer
from rich.console import Console

from ironsync import __version__
from ironsync.cli import sync

app = typer.Typer(
    name="ironsync",
    help="Reconcile group member data from the plugin feed, Wise Old Man and the wiki",
    no_args_is_help=True,
    add_completion=False,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"ironsync version {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show ironsync version and exit",
    ),
) -> None:
    """
    ironsync - multi-source member data reconciliation.

    Quick Start:
        1. export IRONSYNC_API_URL=https://your-plugin-host/api
        2. export IRONSYNC_GROUP="Zezima, Lynx Titan"
        3. ironsync sync
    """


app.command(name="sync")(sync.sync)
app.command(name="member")(sync.member)
app.command(name="watch")(sync.watch)
app.command(name="status")(sync.status)


def cli_main() -> None:
    """Main CLI entry point."""
    app()


__all__ = ["app", "cli_main"]
