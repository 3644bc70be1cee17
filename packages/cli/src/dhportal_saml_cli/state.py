"""Runtime state shared across CLI commands."""

from __future__ import annotations
from dataclasses import dataclass
from rich.console import Console
from dhportal_saml_cli.api import APIClient
from dhportal_saml_cli.config import CLISettings


@dataclass(slots=True)
class CLIContext:
    """Object stored on :class:`typer.Context` for command access."""

    settings: CLISettings
    client: APIClient
    console: Console


__all__ = ["CLIContext"]
