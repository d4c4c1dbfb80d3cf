"""Agent self-status queries.

The cluster agent serves its effective configuration on ``GET /status``.
The reply is consumed verbatim into AgentStatus and written back onto the
desired-state object.

A failed query never fails a pass: the caller logs StatusUnavailableError
and keeps the previous status. The query is bounded by the configured
timeout so a hung agent cannot stall reconciliation.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from .models import AgentStatus

logger = logging.getLogger(__name__)

STATUS_PATH = "/status"


class StatusUnavailableError(Exception):
    """Raised when the agent status cannot be fetched or parsed."""

    pass


def service_address(name: str, namespace: str) -> str:
    """In-cluster DNS name of a service."""
    return f"{name}.{namespace}"


class StatusReporter:
    """Fetches AgentStatus from a running agent."""

    def __init__(
        self,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        """Initialize the reporter.

        Args:
            timeout_seconds: Total budget for one status request.
            transport: Optional httpx transport, used by tests.
            logger: Logger for request diagnostics.
        """
        self._timeout = timeout_seconds
        self._transport = transport
        self._logger = logger or logging.getLogger(__name__)

    def fetch_status(self, address: str, port: int) -> AgentStatus:
        """Query the agent's status endpoint.

        Args:
            address: Host name or IP of the agent.
            port: Agent server port.

        Returns:
            The reported AgentStatus.

        Raises:
            StatusUnavailableError: On network failure, timeout, non-2xx
                reply or a body that does not match the status shape.
        """
        url = f"http://{address}:{port}{STATUS_PATH}"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.get(url)
                response.raise_for_status()
                status = AgentStatus.model_validate_json(response.content)
        except httpx.TimeoutException as e:
            raise StatusUnavailableError(f"Status request to {url} timed out") from e
        except httpx.HTTPError as e:
            raise StatusUnavailableError(f"Status request to {url} failed: {e}") from e
        except ValidationError as e:
            raise StatusUnavailableError(f"Malformed status reply from {url}: {e}") from e

        self._logger.debug("Fetched agent status", extra={"url": url, "version": status.version})
        return status
