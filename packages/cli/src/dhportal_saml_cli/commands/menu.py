"""Account menu inspection commands."""

from __future__ import annotations
from typing import Annotated
import typer
from dhportal_saml_cli.api import ApiRequestError
from dhportal_saml_cli.menu import (
    DEFAULT_MENU,
    MenuItem,
    fetch_menu,
    flatten,
    validate_menu,
)
from dhportal_saml_cli.output import render_checks, render_table
from dhportal_saml_cli.state import CLIContext


menu_app = typer.Typer(help="Inspect the portal account menu.")

MenuOption = Annotated[
    str,
    typer.Option("--menu", help="Machine name of the menu to read."),
]

_OUTCOMES = {"ok": "ok", "optional": "warn", "missing": "fail", "misplaced": "fail"}


def _load(state: CLIContext, menu: str) -> list[MenuItem]:
    try:
        return fetch_menu(state.client, menu)
    except ApiRequestError as exc:
        state.console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


@menu_app.command("show")
def show_menu(ctx: typer.Context, menu: MenuOption = DEFAULT_MENU) -> None:
    """Print the menu tree."""
    state: CLIContext = ctx.ensure_object(CLIContext)
    roots = _load(state, menu)
    rows = [
        ["  " * depth + item.title, item.url or "-", item.weight]
        for depth, item in flatten(roots)
    ]
    render_table(
        state.console,
        title=f"Menu {menu}",
        columns=["Title", "URL", "Weight"],
        rows=rows,
    )


@menu_app.command("validate")
def validate(ctx: typer.Context, menu: MenuOption = DEFAULT_MENU) -> None:
    """Check that the login, profile and logout links are in place."""
    state: CLIContext = ctx.ensure_object(CLIContext)
    result = validate_menu(_load(state, menu))
    render_checks(
        state.console,
        title=f"Menu {menu}",
        checks=[
            (
                f"{check.expected.title} ({check.expected.kind})",
                _OUTCOMES[check.outcome],
                check.outcome,
            )
            for check in result.checks
        ],
    )
    for title in result.unexpected:
        state.console.print(f"[yellow]Warning:[/yellow] unexpected item '{title}'")
    found = sum(1 for check in result.checks if check.outcome == "ok")
    state.console.print(
        f"{found}/{len(result.checks)} expected items in place, "
        f"{result.total_items} items inspected."
    )
    if not result.is_valid:
        raise typer.Exit(code=1)


__all__ = ["menu_app"]
