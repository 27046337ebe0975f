"""CLI formatters — console, state indicators, table formatting."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text


def get_console(no_color: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color)


def status_indicator(running: bool) -> Text:
    if running:
        return Text("> running", style="green")
    return Text("- stopped", style="dim")


def format_age(moment: Optional[datetime], now: Optional[datetime] = None) -> str:
    """'3m05s ago' style age of a timestamp, or 'never'."""
    if moment is None:
        return "never"
    now = now or datetime.now(moment.tzinfo)
    return f"{format_duration(max(0.0, (now - moment).total_seconds()))} ago"


def format_duration(seconds: float) -> str:
    """Two most significant units of a span: '45s', '2m05s', '3h07m', '2d04h'."""
    minutes, secs = divmod(int(seconds), 60)
    if not minutes:
        return f"{secs}s"
    hours, minutes = divmod(minutes, 60)
    if not hours:
        return f"{minutes}m{secs:02d}s"
    days, hours = divmod(hours, 24)
    if not days:
        return f"{hours}h{minutes:02d}m"
    return f"{days}d{hours:02d}h"


def build_table(title: str, rows: list[tuple[str, Any]]) -> Table:
    """Two-column key/value table."""
    table = Table(title=title, show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column()
    for key, value in rows:
        table.add_row(key, value if isinstance(value, Text) else str(value))
    return table
