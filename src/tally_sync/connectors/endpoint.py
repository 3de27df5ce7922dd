"""
Aggregation Endpoint Client.

Delivers sync payloads to the remote aggregation endpoint over HTTPS:
- Health probe before each cycle
- One JSON POST per payload chunk
- Rejections (4xx, success=false) are final; 429/5xx and transport
  failures are retried through the resilience chain
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from tally_sync.config import EndpointConfig, Settings
from tally_sync.connectors.resilience import CircuitBreaker, RetryPolicy, resilient
from tally_sync.core.records import SyncPayload
from tally_sync.errors import EndpointError
from tally_sync.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class DeliveryResult:
    """Outcome of an accepted payload."""

    status: int
    processed_count: int
    message: str | None = None


class EndpointClient:
    """
    HTTP client for the aggregation endpoint.

    Example:
        async with EndpointClient(settings.endpoint) as endpoint:
            if await endpoint.check_health():
                result = await endpoint.send_payload(payload)
                print(f"Accepted {result.processed_count} records")
    """

    def __init__(
        self,
        config: EndpointConfig,
        policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize endpoint client.

        Args:
            config: Endpoint settings
            policy: Retry policy (defaults to RetryPolicy())
            breaker: Circuit breaker (defaults to a fresh one)
            transport: Custom httpx transport (used by tests)
        """
        self.config = config
        self.policy = policy or RetryPolicy()
        self.breaker = breaker or CircuitBreaker("endpoint")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        self._post = resilient(
            self._post_once,
            timeout=config.timeout_seconds,
            timeout_error=lambda s: EndpointError(
                f"Endpoint did not answer within {s:.0f}s", retryable=True
            ),
            policy=self.policy,
            breaker=self.breaker,
        )

    def _get_headers(self) -> dict[str, str]:
        """Get request headers, with authentication when a token is set."""
        headers = {"Content-Type": "application/json"}
        token = self.config.api_token.get_secret_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=self._get_headers(),
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "EndpointClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def check_health(self) -> bool:
        """
        Probe the endpoint's health path.

        Returns:
            True when the endpoint answered with a 2xx status
        """
        client = await self._get_client()
        try:
            response = await client.get(self.config.health_path)
        except httpx.HTTPError as e:
            logger.warning("Endpoint health check failed: %s", e)
            return False

        if not response.is_success:
            logger.warning(
                "Endpoint health check returned status %d", response.status_code
            )
            return False
        return True

    async def _post_once(self, body: dict[str, Any]) -> DeliveryResult:
        client = await self._get_client()

        try:
            response = await client.post(self.config.sync_path, json=body)
        except httpx.TransportError as e:
            raise EndpointError(f"Connection error: {e}", retryable=True) from e
        except httpx.HTTPError as e:
            raise EndpointError(f"Request failed: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise EndpointError(
                f"Endpoint returned status {status}", status=status, retryable=True
            )
        if status >= 400:
            raise EndpointError(
                f"Endpoint rejected payload with status {status}: {response.text[:200]}",
                status=status,
            )

        return self._parse_response(response, body)

    @staticmethod
    def _parse_response(response: httpx.Response, body: dict[str, Any]) -> DeliveryResult:
        """Interpret a 2xx answer, which may still carry success=false."""
        sent = len(body.get("records", []))
        if not response.content.strip():
            return DeliveryResult(status=response.status_code, processed_count=sent)

        try:
            data = response.json()
        except (ValueError, httpx.DecodingError):
            return DeliveryResult(status=response.status_code, processed_count=sent)

        if not isinstance(data, dict):
            return DeliveryResult(status=response.status_code, processed_count=sent)

        message = data.get("message")
        if data.get("success", True) is False:
            raise EndpointError(
                f"Endpoint rejected payload: {message or 'no reason given'}",
                status=response.status_code,
            )

        processed = data.get("processedCount")
        if isinstance(processed, bool) or not isinstance(processed, int):
            processed = sent

        return DeliveryResult(
            status=response.status_code,
            processed_count=processed,
            message=message,
        )

    async def send_payload(self, payload: SyncPayload) -> DeliveryResult:
        """
        Deliver one payload chunk.

        Args:
            payload: Chunk to deliver

        Returns:
            DeliveryResult for an accepted chunk

        Raises:
            EndpointError: If the chunk was rejected or retries ran out
            CircuitOpenError: If the endpoint circuit is open
        """
        logger.debug(
            "Sending %s chunk %d/%d (%d records)",
            payload.table_name,
            payload.chunk_number,
            payload.total_chunks,
            payload.record_count,
        )
        return await self._post(payload.to_dict())


def create_endpoint_client(settings: Settings) -> EndpointClient:
    """Create an EndpointClient from settings."""
    return EndpointClient(
        settings.endpoint,
        policy=RetryPolicy.from_config(settings.retry),
        breaker=CircuitBreaker.from_config("endpoint", settings.retry),
    )
