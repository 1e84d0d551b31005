"""Shared Rich console for command output."""

from typing import Iterable, Sequence

from rich.console import Console
from rich.table import Table

_console: Console | None = None


def get_console() -> Console:
    """Return the process-wide Rich console, creating it on first use."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def print_table(
    title: str, columns: Sequence[str], rows: Iterable[Sequence[object]]
) -> None:
    """Render rows as a Rich table.

    Args:
        title: Table caption
        columns: Header labels
        rows: Row values; None renders as a dash
    """
    table = Table(title=title, show_lines=False)
    for column in columns:
        table.add_column(column)

    count = 0
    for row in rows:
        table.add_row(*("-" if value is None else str(value) for value in row))
        count += 1

    console = get_console()
    if count:
        console.print(table)
    else:
        console.print(f"[dim]{title}: none[/dim]")
