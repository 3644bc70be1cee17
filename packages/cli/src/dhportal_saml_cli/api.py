"""HTTP client helpers for the dhportal CLI."""

from __future__ import annotations
from typing import Any
import httpx
from dhportal_saml_cli.errors import CLIError


class ApiRequestError(CLIError):
    """Raised when the CLI cannot complete an API request."""

    def __init__(self, message: str, *, response: httpx.Response | None = None) -> None:
        """Initialise the error with optional HTTP response context."""
        super().__init__(message)
        self.response = response


class APIClient:
    """Small wrapper around :class:`httpx.Client` bound to one deployment."""

    def __init__(
        self,
        *,
        base_url: str,
        admin_password: str | None = None,
        timeout: float = 10.0,
        verify: bool = True,
    ) -> None:
        """Create a client bound to the provided deployment URL."""
        headers = {"User-Agent": "dhportal-cli/1.0"}
        self._admin_password = admin_password
        self._client = httpx.Client(
            base_url=base_url, timeout=timeout, headers=headers, verify=verify
        )

    @property
    def base_url(self) -> str:
        """Deployment URL requests are sent to."""
        return str(self._client.base_url).rstrip("/")

    @property
    def has_admin_credentials(self) -> bool:
        """Return True when diagnostics endpoints can be queried."""
        return bool(self._admin_password)

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def get(
        self,
        path: str,
        *,
        admin: bool = False,
        follow_redirects: bool = False,
        description: str = "resource",
    ) -> httpx.Response:
        """Issue a GET request and return the raw response."""
        auth = ("admin", self._admin_password) if admin and self._admin_password else None
        try:
            return self._client.get(
                path, auth=auth, follow_redirects=follow_redirects
            )
        except httpx.HTTPError as exc:
            msg = f"Unable to reach {self.base_url} while fetching {description}"
            raise ApiRequestError(msg) from exc

    def get_json(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        admin: bool = False,
        description: str = "resource",
    ) -> Any:
        """Return JSON data from the deployment."""
        auth = ("admin", self._admin_password) if admin and self._admin_password else None
        try:
            response = self._client.get(path, params=params, auth=auth)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            msg = f"Request failed with status {status} while fetching {description}"
            raise ApiRequestError(msg, response=exc.response) from exc
        except httpx.HTTPError as exc:
            msg = f"Unable to reach {self.base_url} while fetching {description}"
            raise ApiRequestError(msg) from exc
        try:
            return response.json()
        except ValueError as exc:
            msg = f"Response for {description} is not JSON"
            raise ApiRequestError(msg, response=response) from exc

    def probe(self, url: str) -> httpx.Response:
        """GET an absolute URL outside the deployment, without redirects."""
        try:
            return self._client.get(url, follow_redirects=False)
        except httpx.HTTPError as exc:
            raise ApiRequestError(f"Unable to reach {url}") from exc


__all__ = ["APIClient", "ApiRequestError"]
