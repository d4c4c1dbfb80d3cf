"""Controller endpoint parsing.

Generated configuration needs discrete host, port and TLS fields where the
desired state carries a single URL string. The parsing rules are:

- The string must be an absolute URL with a scheme and a host.
- A missing port is filled from the scheme: 443 for https, 80 otherwise.
- TLS is enabled only for the https scheme.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

HTTPS_DEFAULT_PORT = 443
HTTP_DEFAULT_PORT = 80


class MalformedEndpointError(ValueError):
    """Raised when an endpoint string is not a usable absolute URL."""

    pass


@dataclass(frozen=True)
class ControllerEndpoint:
    """Resolved host/port/TLS triple for a controller or exporter URL."""

    host: str
    port: int
    ssl_enabled: bool

    @property
    def ssl_flag(self) -> str:
        """TLS flag rendered the way the agent configuration files expect it."""
        return "true" if self.ssl_enabled else "false"


def parse_endpoint(url: str) -> ControllerEndpoint:
    """Parse an endpoint URL into host, port and TLS flag.

    Args:
        url: Absolute URL such as ``https://controller.example.com:8181``.

    Returns:
        The resolved ControllerEndpoint.

    Raises:
        MalformedEndpointError: If the URL has no scheme or host, or the port
            is not a valid number.
    """
    if not url or not url.strip():
        raise MalformedEndpointError("Endpoint URL is empty")

    parts = urlsplit(url.strip())
    if not parts.scheme or not parts.netloc:
        raise MalformedEndpointError(f"Endpoint is not an absolute URL: {url}")

    host = parts.hostname
    if not host:
        raise MalformedEndpointError(f"Endpoint has no host: {url}")

    try:
        port = parts.port
    except ValueError as e:
        raise MalformedEndpointError(f"Endpoint has an invalid port: {url}") from e

    scheme = parts.scheme.lower()
    if port is None:
        port = HTTPS_DEFAULT_PORT if scheme == "https" else HTTP_DEFAULT_PORT
    if port == 0:
        raise MalformedEndpointError(f"Endpoint has an invalid port: {url}")

    return ControllerEndpoint(host=host, port=port, ssl_enabled=scheme == "https")
