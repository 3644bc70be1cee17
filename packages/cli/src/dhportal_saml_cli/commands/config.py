"""Validate the service provider configuration of this host."""

from __future__ import annotations
from typing import Annotated
import typer
from dhportal_saml.config import load_saml_settings
from dhportal_saml.errors import ConfigurationError
from dhportal_saml.metadata import MetadataStore, local_sources
from dhportal_saml_cli.output import render_json, render_table
from dhportal_saml_cli.state import CLIContext


config_app = typer.Typer(help="Inspect the local SAML configuration.")

StrictOption = Annotated[
    bool,
    typer.Option("--strict", help="Fail when any metadata source is invalid."),
]


@config_app.command("check")
def check_config(ctx: typer.Context, strict: StrictOption = False) -> None:
    """Load settings from the environment and validate local metadata."""
    state: CLIContext = ctx.ensure_object(CLIContext)
    console = state.console
    try:
        settings = load_saml_settings(refresh=True)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration invalid:[/red] {exc.message}")
        raise typer.Exit(code=1) from exc

    render_json(console, settings.redacted(), title="Settings")

    store = MetadataStore()
    store.reload(*local_sources(settings), strict=False)

    rows = [
        [
            descriptor.entity_id,
            descriptor.role,
            len(descriptor.sso_endpoints),
            len(descriptor.signing_certificates),
        ]
        for descriptor in store.entities()
    ]
    render_table(
        console,
        title="Local metadata",
        columns=["Entity", "Role", "SSO endpoints", "Signing certificates"],
        rows=rows,
    )
    for error in store.errors:
        console.print(f"[yellow]Warning:[/yellow] {error.message}")
    if settings.metadata.urls:
        console.print(
            f"{len(settings.metadata.urls)} remote metadata URL(s) are fetched at startup."
        )
    if strict and store.errors:
        raise typer.Exit(code=1)
    console.print("[green]Configuration is valid.[/green]")


__all__ = ["config_app"]
