"""Execution engine REST client.

Objective:
    Provide a thin wrapper around the three execution-engine endpoints this
    project uses. This module centralizes HTTP request construction, the API
    key header and error classification.

Responsibilities:
    - Issue authenticated HTTP requests to the engine (via :mod:`requests`).
    - Create a graph, update a graph in place, read a graph's live status.
    - Classify failures as transient (retryable) or not.

High-level call tree:
    - Public API:
        - :meth:`ExecutionEngineClient.create_graph` -> external graph id
        - :meth:`ExecutionEngineClient.update_graph`
        - :meth:`ExecutionEngineClient.get_graph_status` ->
          :class:`src.workflow_composer.config.GraphStatus`
    - Internal helpers:
        - :meth:`ExecutionEngineClient._make_request` (auth + classification)

Engine endpoints used:
    - ``POST /api/v1/workflows``
    - ``PUT /api/v1/workflows/{id}``
    - ``GET /api/v1/workflows/{id}``

Error handling:
    - Timeouts, connection errors, HTTP 5xx and 429 raise
      :class:`TransientEngineError`.
    - Any other non-2xx status or an unusable response body raises
      :class:`EngineRequestError`.
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

import requests

from .config import GraphStatus, Settings
from .errors import EngineRequestError, TransientEngineError

logger = logging.getLogger(__name__)


def is_transient_status(status_code: int) -> bool:
    """Return True for statuses worth retrying (429 and 5xx)."""
    return status_code == 429 or status_code >= 500


class ExecutionEngineClient:
    """
    Client for the execution engine's workflow API.

    Attributes:
        settings: Application settings.
        base_url: Engine base URL without trailing slash.
    """

    API_PREFIX = "/api/v1"

    def __init__(self, settings: Settings) -> None:
        """
        Initialize engine client.

        Args:
            settings: Application settings with engine URL and API key.
        """
        self.settings = settings
        self.base_url = settings.engine_base_url.rstrip("/")

    def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        """Make an authenticated request to the engine.

        Args:
            method: HTTP method.
            endpoint: API path below :attr:`API_PREFIX`.
            json_data: JSON body.
            timeout: Request timeout (defaults to the configured timeout).

        Returns:
            dict: Response JSON data (``{}`` for 204 responses).

        Raises:
            TransientEngineError: For timeouts, connection errors, broken
                transfers, 429 and 5xx.
            EngineRequestError: For other failures, including requests that
                could not be sent (bad URL, redirect loops).
        """
        url = f"{self.base_url}{self.API_PREFIX}{endpoint}"
        headers = {
            "Content-Type": "application/json",
            "X-N8N-API-KEY": self.settings.engine_api_key,
        }

        try:
            response = requests.request(
                method=method,
                url=url,
                headers=headers,
                json=json_data,
                timeout=timeout or self.settings.engine_timeout_seconds,
            )
        except (
            requests.Timeout,
            requests.ConnectionError,
            requests.exceptions.ChunkedEncodingError,
        ) as e:
            logger.warning("Engine request %s %s failed: %s", method, endpoint, e)
            raise TransientEngineError(f"{method} {endpoint}: {e}") from e
        except requests.RequestException as e:
            logger.error("Engine request %s %s could not be sent: %s", method, endpoint, e)
            raise EngineRequestError(f"{method} {endpoint}: {e}") from e

        if not response.ok:
            transient = is_transient_status(response.status_code)
            log = logger.warning if transient else logger.error
            log("Engine API error: %s - %s", response.status_code, response.text)
            error_cls = TransientEngineError if transient else EngineRequestError
            raise error_cls(
                f"{method} {endpoint} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        if response.status_code == 204:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise EngineRequestError(
                f"{method} {endpoint} returned a non-JSON body", status_code=response.status_code
            ) from e

    def create_graph(self, graph: dict[str, Any], timeout: Optional[float] = None) -> str:
        """Create a new graph.

        Args:
            graph: Concrete automation graph.
            timeout: Optional request timeout.

        Returns:
            str: External graph identifier assigned by the engine.
        """
        response = self._make_request("POST", "/workflows", json_data=graph, timeout=timeout)
        external_id = response.get("id")
        if not external_id:
            raise EngineRequestError("Engine did not return an id for the created graph")
        logger.debug("Created graph %s", external_id)
        return str(external_id)

    def update_graph(
        self, external_id: str, graph: dict[str, Any], timeout: Optional[float] = None
    ) -> bool:
        """Replace an existing graph in place.

        Args:
            external_id: External graph identifier.
            graph: Concrete automation graph.
            timeout: Optional request timeout.

        Returns:
            bool: True once the engine accepted the update.
        """
        safe_id = quote(external_id, safe="")
        self._make_request("PUT", f"/workflows/{safe_id}", json_data=graph, timeout=timeout)
        logger.debug("Updated graph %s", external_id)
        return True

    def get_graph_status(self, external_id: str, timeout: Optional[float] = None) -> GraphStatus:
        """Read a graph's live status.

        An explicit ``status`` field in the response wins; otherwise the
        ``active`` flag decides between active and inactive.

        Args:
            external_id: External graph identifier.
            timeout: Optional request timeout.

        Returns:
            GraphStatus: Live status.
        """
        safe_id = quote(external_id, safe="")
        response = self._make_request("GET", f"/workflows/{safe_id}", timeout=timeout)

        status = response.get("status")
        if status:
            try:
                return GraphStatus(str(status).lower())
            except ValueError:
                logger.warning("Unknown graph status %r for %s", status, external_id)
                return GraphStatus.ERROR

        if response.get("error"):
            return GraphStatus.ERROR
        return GraphStatus.ACTIVE if response.get("active") is True else GraphStatus.INACTIVE
