"""
Console output helpers built on rich.

Respects NO_COLOR and FORCE_COLOR so the worker CLI is safe in CI logs.
"""

from __future__ import annotations

import os

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

TABLEKEEPER_THEME = Theme(
    {
        "info": "#88C0D0",
        "success": "#A3BE8C",
        "warning": "#EBCB8B",
        "error": "#BF616A bold",
        "muted": "#D8DEE9",
    }
)

console = Console(
    theme=TABLEKEEPER_THEME,
    force_terminal=os.environ.get("FORCE_COLOR") is not None,
    no_color=os.environ.get("NO_COLOR") is not None,
)

STATUS_STYLES = {
    "completed": "success",
    "deleted": "success",
    "running": "info",
    "deleting": "info",
    "retrying": "warning",
    "deletion_scheduled": "warning",
    "failed": "error",
    "deletion_failed": "error",
}


def success(message: str) -> None:
    console.print(f"[success]✓ {message}[/success]")


def error(message: str) -> None:
    console.print(f"[error]✗ {message}[/error]")


def warning(message: str) -> None:
    console.print(f"[warning]⚠ {message}[/warning]")


def info(message: str) -> None:
    console.print(f"[info]ℹ {message}[/info]")


def header(title: str) -> None:
    console.print()
    console.print(Panel(f"[bold]{title}[/bold]", border_style="cyan"))


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "muted")
    return f"[{style}]{status}[/{style}]"


def print_table(title: str, columns: list[str], rows: list[list[str]]) -> None:
    table = Table(title=title)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*row)
    console.print(table)
