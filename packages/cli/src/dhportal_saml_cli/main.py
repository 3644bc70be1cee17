"""dhportal CLI entrypoint."""

from __future__ import annotations
import sys
from typing import Annotated
import click
import typer
from rich.console import Console
from dhportal_saml_cli.api import APIClient
from dhportal_saml_cli.commands.config import config_app
from dhportal_saml_cli.commands.menu import menu_app
from dhportal_saml_cli.commands.status import status_command
from dhportal_saml_cli.config import resolve_settings
from dhportal_saml_cli.errors import CLIConfigurationError, CLIError
from dhportal_saml_cli.state import CLIContext


app = typer.Typer(help="Operate the portal SAML service provider.")
app.command("status")(status_command)
app.add_typer(config_app, name="config")
app.add_typer(menu_app, name="menu")


@app.callback()
def main(
    ctx: typer.Context,
    profile: Annotated[
        str | None,
        typer.Option("--profile", help="Profile name from the CLI config."),
    ] = None,
    api_url: Annotated[
        str | None,
        typer.Option("--api-url", help="Override the deployment URL."),
    ] = None,
    admin_password: Annotated[
        str | None,
        typer.Option("--admin-password", help="Password for diagnostics endpoints."),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", help="HTTP timeout in seconds."),
    ] = None,
) -> None:
    """Configure shared CLI state and validate configuration."""
    console = Console()
    try:
        settings = resolve_settings(
            profile=profile,
            api_url=api_url,
            admin_password=admin_password,
            timeout=timeout,
        )
    except CLIConfigurationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    client = APIClient(
        base_url=settings.api_url,
        admin_password=settings.admin_password,
        timeout=settings.timeout,
        verify=settings.verify_tls,
    )
    ctx.call_on_close(client.close)
    ctx.obj = CLIContext(settings=settings, client=client, console=console)


def run() -> None:
    """Entry point used by console scripts."""
    console = Console()
    try:
        exit_code = app(standalone_mode=False)
    except click.UsageError as exc:
        console.print(f"[red]Error:[/red] {exc.message}")
        if exc.ctx and exc.ctx.command_path:
            help_cmd = f"{exc.ctx.command_path} --help"
            console.print(f"\nRun '[cyan]{help_cmd}[/cyan]' for usage information.")
        sys.exit(1)
    except CLIError as exc:
        console.print(f"[red]{exc}[/red]")
        sys.exit(1)
    if isinstance(exit_code, int) and exit_code:
        sys.exit(exit_code)


__all__ = ["app", "run"]
