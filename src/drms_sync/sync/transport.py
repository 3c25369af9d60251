"""Push/pull client for the server of record.

Pushes are never retried here: a failed batch goes back to the queue, whose
backoff schedule owns push retries. Pulls are idempotent reads and retry
connection errors inline.
"""

from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from drms_sync.config import Settings, get_settings
from drms_sync.schemas.transport import PullResponse, PushItem, PushResult
from drms_sync.utils.exceptions import BatchRejectedError, TransientTransportError
from drms_sync.utils.logging import get_logger

logger = get_logger(__name__)

# Whole-batch statuses below 500 that should not discard the batch
TRANSIENT_BATCH_STATUSES = frozenset({401, 403, 408, 425, 429})


class SyncTransport(Protocol):
    """What the engine needs from the server of record."""

    async def push(self, items: List[PushItem]) -> List[PushResult]:
        """Push a batch and return per-item outcomes."""
        ...

    async def pull(self, since: Optional[str], limit: int) -> PullResponse:
        """Fetch server changes after ``since``."""
        ...

    async def check_health(self) -> bool:
        """Return True when the server is reachable."""
        ...


class HttpSyncTransport:
    """``SyncTransport`` over HTTP/JSON."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the transport.

        Args:
            settings: Application settings carrying base URL, API key and timeout
            client: Preconfigured client (tests pass one over ``httpx.MockTransport``)
        """
        self.settings = settings or get_settings()
        self._owns_client = client is None

        headers = {
            "Content-Type": "application/json",
            "User-Agent": "drms-sync/0.1",
        }
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"

        self.client = client or httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=self.settings.request_timeout_seconds,
            headers=headers,
        )

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._owns_client:
            await self.client.aclose()

    async def push(self, items: List[PushItem]) -> List[PushResult]:
        """Push a batch of queued mutations.

        Args:
            items: Batch to push

        Returns:
            Per-item outcomes, as many as the server reported

        Raises:
            TransientTransportError: Timeout, connection failure, 5xx or throttling
            BatchRejectedError: The server refused the whole batch (other 4xx)
        """
        body = {"changes": [item.to_wire() for item in items]}

        try:
            response = await self.client.post("/sync/push", json=body)
        except httpx.TimeoutException as e:
            raise TransientTransportError("Sync push timed out") from e
        except httpx.TransportError as e:
            raise TransientTransportError(f"Sync push failed: {e}") from e

        self._raise_for_batch_status(response, "push")

        try:
            data = response.json()
        except ValueError as e:
            raise TransientTransportError(
                "Sync push returned a non-JSON body", response.status_code
            ) from e

        raw_results = data.get("results", []) if isinstance(data, dict) else data
        if not isinstance(raw_results, list):
            raise TransientTransportError(
                "Sync push returned an unexpected body", response.status_code
            )

        results: List[PushResult] = []
        for raw in raw_results:
            try:
                results.append(PushResult.model_validate(raw))
            except ValidationError as e:
                # Items without a usable result are retried by the engine
                logger.warning("sync_push_result_invalid", result=raw, error=str(e))

        logger.debug("sync_push_completed", sent=len(items), received=len(results))
        return results

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get_pull_page(self, params: Dict[str, Any]) -> httpx.Response:
        return await self.client.get("/sync/pull", params=params)

    async def pull(self, since: Optional[str], limit: int) -> PullResponse:
        """Fetch one page of server changes.

        Args:
            since: Cursor returned by the previous page, None for a full pull
            limit: Maximum number of changes in the page

        Returns:
            Parsed page

        Raises:
            TransientTransportError: The server stayed unreachable or failed
            BatchRejectedError: The server rejected the request
        """
        params: Dict[str, Any] = {"limit": limit}
        if since:
            params["since"] = since

        try:
            response = await self._get_pull_page(params)
        except httpx.TransportError as e:
            raise TransientTransportError(f"Sync pull failed: {e}") from e

        self._raise_for_batch_status(response, "pull")

        try:
            return PullResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TransientTransportError(
                f"Sync pull returned an invalid body: {e}", response.status_code
            ) from e

    async def check_health(self) -> bool:
        """Probe ``GET /health``; any failure counts as unreachable."""
        try:
            response = await self.client.get("/health")
        except httpx.HTTPError as e:
            logger.debug("sync_health_check_failed", error=str(e))
            return False
        return response.is_success

    def _raise_for_batch_status(self, response: httpx.Response, operation: str) -> None:
        status = response.status_code
        if status < 400:
            return

        message = f"Sync {operation} returned HTTP {status}: {response.text[:200]}"
        if status >= 500 or status in TRANSIENT_BATCH_STATUSES:
            raise TransientTransportError(message, status)
        raise BatchRejectedError(message, status)
