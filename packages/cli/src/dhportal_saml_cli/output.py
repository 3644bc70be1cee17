"""Output helpers for rendering data in the CLI."""

from __future__ import annotations
from collections.abc import Iterable
from typing import Any
from rich.console import Console
from rich.pretty import Pretty
from rich.table import Table
from rich.text import Text


_CHECK_STYLES = {"ok": "green", "warn": "yellow", "fail": "red"}
_CHECK_MARKS = {"ok": "OK", "warn": "WARN", "fail": "FAIL"}


def render_table(
    console: Console,
    *,
    title: str,
    columns: list[str],
    rows: list[list[Any]],
) -> None:
    """Render a table with ``columns`` and ``rows`` to ``console``."""
    table = Table(title=title, show_lines=False)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*[str(cell) for cell in row])
    console.print(table)


def render_json(console: Console, payload: Any, *, title: str | None = None) -> None:
    """Render a JSON-like payload using Rich's pretty printer."""
    if title:
        console.print(Text(title, style="bold"))
    console.print(Pretty(payload, indent_guides=True))


def render_checks(
    console: Console, *, title: str, checks: Iterable[tuple[str, str, str]]
) -> None:
    """Render ``(name, outcome, detail)`` rows with coloured outcomes."""
    table = Table(title=title, show_lines=False)
    table.add_column("Check")
    table.add_column("Result")
    table.add_column("Detail")
    for name, outcome, detail in checks:
        style = _CHECK_STYLES.get(outcome, "white")
        table.add_row(name, Text(_CHECK_MARKS.get(outcome, outcome), style=style), detail)
    console.print(table)


__all__ = ["render_checks", "render_json", "render_table"]
