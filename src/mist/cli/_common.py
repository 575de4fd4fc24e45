"""Shared helpers for the command line: console, logging, rendering."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..models import SessionState, SyncResult

console = Console()

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(verbose: bool) -> None:
    """Configure root logging for one CLI invocation.

    Args:
        verbose: Log progress at INFO instead of only warnings.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )


def state_icon(state: SessionState) -> str:
    """Map a terminal session state to Rich markup.

    Args:
        state: Session state.

    Returns:
        str: Rich markup string for the state.
    """
    return {
        SessionState.DONE: "[bold green]DONE[/]",
        SessionState.FAILED: "[bold red]FAILED[/]",
    }.get(state, f"[dim]{state.value.upper()}[/]")


def render_result(result: SyncResult) -> None:
    """Print a summary panel for a finished run."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Profile", f"[cyan]{escape(result.profile)}[/]")
    table.add_row("Mode", result.mode.value)
    table.add_row("Status", state_icon(result.state))
    if result.encrypted:
        table.add_row("Encrypted", str(result.encrypted))
    if result.decrypted:
        table.add_row("Decrypted", str(result.decrypted))
    if result.removed:
        table.add_row("Removed", str(len(result.removed)))
    if result.reason:
        table.add_row("Reason", f"[red]{escape(result.reason)}[/]")
    table.add_row("Path", " -> ".join(s.value for s in result.history))

    console.print(
        Panel(
            table,
            title="mist",
            border_style="green" if result.ok else "red",
        )
    )
