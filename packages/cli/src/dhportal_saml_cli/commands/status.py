"""Deployment reachability and SAML wiring checks."""

from __future__ import annotations
from typing import Annotated, Any
import typer
from dhportal_saml.errors import SamlError
from dhportal_saml.metadata import parse_metadata
from dhportal_saml_cli.api import APIClient, ApiRequestError
from dhportal_saml_cli.output import render_checks, render_json
from dhportal_saml_cli.state import CLIContext


Check = tuple[str, str, str]

VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Print the diagnostics payload as well."),
]


def _check_site(client: APIClient) -> Check:
    try:
        response = client.get("/", follow_redirects=True, description="site root")
    except ApiRequestError as exc:
        return ("Site", "fail", str(exc))
    if response.status_code >= 400:
        return ("Site", "fail", f"HTTP {response.status_code}")
    return ("Site", "ok", f"HTTP {response.status_code}")


def _check_health(client: APIClient) -> Check:
    try:
        payload = client.get_json("/system/health", description="health status")
    except ApiRequestError as exc:
        return ("Health", "fail", str(exc))
    status = payload.get("status") if isinstance(payload, dict) else None
    if status != "ok":
        return ("Health", "fail", f"Unexpected status {status!r}")
    return ("Health", "ok", "Service responding")


def _check_sp_metadata(client: APIClient) -> Check:
    try:
        response = client.get("/saml/metadata", description="SP metadata")
    except ApiRequestError as exc:
        return ("SP metadata", "fail", str(exc))
    if response.status_code != 200:
        return ("SP metadata", "fail", f"HTTP {response.status_code}")
    try:
        parsed = parse_metadata(response.content)
    except SamlError as exc:
        return ("SP metadata", "fail", exc.message)
    providers = [d for d in parsed.descriptors if d.role == "SP"]
    if len(providers) != 1 or parsed.errors:
        return ("SP metadata", "fail", "Document does not describe one valid SP")
    descriptor = providers[0]
    acs = descriptor.acs_endpoints[0].location if descriptor.acs_endpoints else "-"
    return ("SP metadata", "ok", f"{descriptor.entity_id} (ACS {acs})")


def _check_identity_providers(client: APIClient, info: dict[str, Any]) -> list[Check]:
    checks: list[Check] = []
    errors = info.get("metadata_errors") or []
    if errors:
        checks.append(("IdP metadata", "warn", "; ".join(str(e) for e in errors)))
    providers = [
        entity for entity in info.get("entities", []) if entity.get("role") == "IdP"
    ]
    if not providers:
        checks.append(("IdP metadata", "fail", "No identity provider loaded"))
        return checks
    for entity in providers:
        name = f"IdP {entity['entity_id']}"
        locations = entity.get("sso_locations") or []
        if not locations:
            checks.append((name, "fail", "No single sign-on endpoint"))
            continue
        try:
            response = client.probe(locations[0])
        except ApiRequestError as exc:
            checks.append((name, "fail", str(exc)))
            continue
        if response.status_code >= 500:
            checks.append((name, "fail", f"SSO endpoint HTTP {response.status_code}"))
        else:
            checks.append((name, "ok", f"SSO endpoint HTTP {response.status_code}"))
    return checks


def status_command(ctx: typer.Context, verbose: VerboseOption = False) -> None:
    """Check that the deployment and its identity providers are reachable."""
    state: CLIContext = ctx.ensure_object(CLIContext)
    client = state.client
    checks = [_check_site(client), _check_health(client), _check_sp_metadata(client)]
    info: Any = None
    if client.has_admin_credentials:
        try:
            info = client.get_json("/system/info", admin=True, description="diagnostics")
        except ApiRequestError as exc:
            checks.append(("Diagnostics", "fail", str(exc)))
        else:
            checks.append(("Diagnostics", "ok", f"Version {info.get('version') or '-'}"))
            checks.extend(_check_identity_providers(client, info))
    else:
        checks.append(
            ("Diagnostics", "warn", "Skipped, no admin password configured")
        )

    render_checks(state.console, title=f"Status of {client.base_url}", checks=checks)
    if verbose and info is not None:
        render_json(state.console, info, title="Diagnostics")
    if any(outcome == "fail" for _, outcome, _ in checks):
        raise typer.Exit(code=1)


__all__ = ["status_command"]
