"""Operations CLI for the portal SAML deployment."""

from dhportal_saml_cli.main import app, run


__all__ = ["app", "run"]
