"""HTTP transport to the remote authority.

Two calls are needed: a short liveness probe and a batch submission. Any
failure of the batch call is raised as a :class:`TransportError` so that the
engine can fail the whole batch; the probe never raises.
"""

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from .errors import MalformedResponseError, TransportError, TransportTimeoutError
from .protocol import BatchSyncRequest, BatchSyncResponse


logger = logging.getLogger(__name__)


class RemoteTransport:
    """Async client for the remote sync API."""

    def __init__(self, base_url: str, connectivity_timeout: float = 5.0,
                 batch_timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize the transport.

        Args:
            base_url: API root, e.g. ``http://localhost:3000/api``
            connectivity_timeout: Seconds allowed for the health probe
            batch_timeout: Seconds allowed for a batch submission
            transport: Optional httpx transport (used to plug in test doubles)
        """
        self.base_url = base_url.rstrip("/")
        self.connectivity_timeout = connectivity_timeout
        self.batch_timeout = batch_timeout
        self._transport = transport
        self.logger = logging.getLogger(__name__)

    def _client(self, timeout: float) -> httpx.AsyncClient:
        # One client per call, never shared across event loops
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def check_connectivity(self) -> bool:
        """Return True if the remote health endpoint answers successfully."""
        try:
            async with self._client(self.connectivity_timeout) as client:
                response = await client.get(self._url("health"))
            if not response.is_success:
                self.logger.debug(f"Health check returned HTTP {response.status_code}")
            return response.is_success
        except Exception as e:
            self.logger.debug(f"Connectivity check failed: {e}")
            return False

    async def submit_batch(self, request: BatchSyncRequest) -> BatchSyncResponse:
        """Send one batch and parse the per-item verdicts.

        Raises:
            TransportTimeoutError: If the request timed out
            TransportError: If the request failed or the server answered with an error status
            MalformedResponseError: If the response body could not be parsed
        """
        payload = request.model_dump(mode="json")

        try:
            async with self._client(self.batch_timeout) as client:
                response = await client.post(self._url("batch"), json=payload)
        except httpx.TimeoutException as e:
            raise TransportTimeoutError(f"Batch request timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"Batch request failed: {e}") from e

        if response.status_code >= 400:
            raise TransportError(f"Batch request rejected with HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Batch response is not valid JSON: {e}") from e

        if not isinstance(body, dict):
            raise MalformedResponseError("Batch response is not a JSON object")

        try:
            return BatchSyncResponse.model_validate(body)
        except ValidationError as e:
            raise MalformedResponseError(f"Batch response has unexpected shape: {e}") from e
