"""
Source System Client.

Extracts one table per request from the source's XML-over-HTTP export
interface:
- Builds a collection export envelope (optionally date-bounded)
- Encodes requests and decodes responses in the configured encoding
- Wraps every call in timeout, retry and circuit breaker
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any
from xml.sax.saxutils import escape

import httpx

from tally_sync.config import Settings, SourceConfig
from tally_sync.connectors.resilience import CircuitBreaker, RetryPolicy, resilient
from tally_sync.errors import SourceError
from tally_sync.tables import get_table
from tally_sync.utils.logger import get_logger

logger = get_logger(__name__)

SOURCE_DATE_FORMAT = "%Y%m%d"


class RecordExtractor(ABC):
    """Anything that can hand over raw export data for a table."""

    @abstractmethod
    async def fetch_table(
        self,
        table_name: str,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> str:
        """
        Export one table.

        Returns:
            The raw hierarchical (XML) document; empty when nothing matched

        Raises:
            SourceError: If the source cannot be reached or fails
        """

    @abstractmethod
    async def ping(self) -> bool:
        """Whether the source is reachable."""

    async def close(self) -> None:
        """Release resources."""


def build_export_request(
    collection: str,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    company: str = "",
) -> str:
    """
    Build the XML envelope exporting one collection.

    Args:
        collection: Source collection type (e.g. "Ledger")
        from_date: Inclusive window start
        to_date: Inclusive window end
        company: Company to export from (empty = the open company)

    Returns:
        XML request body
    """
    variables = ["<SVEXPORTFORMAT>$$SysName:XML</SVEXPORTFORMAT>"]
    if from_date is not None:
        variables.append(f"<SVFROMDATE>{from_date.strftime(SOURCE_DATE_FORMAT)}</SVFROMDATE>")
    if to_date is not None:
        variables.append(f"<SVTODATE>{to_date.strftime(SOURCE_DATE_FORMAT)}</SVTODATE>")
    if company:
        variables.append(f"<SVCURRENTCOMPANY>{escape(company)}</SVCURRENTCOMPANY>")

    collection_id = f"TallySync{collection}Collection"
    return (
        '<?xml version="1.0"?>'
        "<ENVELOPE><HEADER><VERSION>1</VERSION>"
        "<TALLYREQUEST>Export</TALLYREQUEST><TYPE>Collection</TYPE>"
        f"<ID>{collection_id}</ID></HEADER>"
        "<BODY><DESC><STATICVARIABLES>"
        f"{''.join(variables)}"
        "</STATICVARIABLES><TDL><TDLMESSAGE>"
        f'<COLLECTION NAME="{collection_id}" ISMODIFY="No">'
        f"<TYPE>{collection}</TYPE><FETCH>*</FETCH>"
        "</COLLECTION></TDLMESSAGE></TDL></DESC></BODY></ENVELOPE>"
    )


class SourceClient(RecordExtractor):
    """
    HTTP client for the source's export interface.

    Example:
        async with SourceClient(settings.source) as source:
            if await source.ping():
                xml_text = await source.fetch_table("Ledgers", start, end)
    """

    def __init__(
        self,
        config: SourceConfig,
        policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize source client.

        Args:
            config: Source connection settings
            policy: Retry policy (defaults to RetryPolicy())
            breaker: Circuit breaker (defaults to a fresh one)
            transport: Custom httpx transport (used by tests)
        """
        self.config = config
        self.policy = policy or RetryPolicy()
        self.breaker = breaker or CircuitBreaker("source")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        self._post = resilient(
            self._post_once,
            timeout=config.timeout_seconds,
            timeout_error=lambda s: SourceError(
                f"Source did not answer within {s:.0f}s", retryable=True
            ),
            policy=self.policy,
            breaker=self.breaker,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.url,
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SourceClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _post_once(self, body: str) -> str:
        client = await self._get_client()
        encoding = self.config.encoding
        charset = "utf-16" if encoding.startswith("utf-16") else encoding

        try:
            response = await client.post(
                "/",
                content=body.encode(encoding),
                headers={"Content-Type": f"text/xml;charset={charset}"},
            )
        except httpx.TransportError as e:
            raise SourceError(
                f"Unable to connect to source at {self.config.url}: {e}"
            ) from e

        if response.status_code >= 400:
            raise SourceError(
                f"Source returned status {response.status_code}",
                status=response.status_code,
                retryable=response.status_code >= 500,
            )

        return response.content.decode(encoding, errors="replace")

    async def fetch_table(
        self,
        table_name: str,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> str:
        """Export one table, optionally bounded by a date window."""
        table = get_table(table_name)
        if table is None:
            raise SourceError(f"Unknown table: {table_name}", retryable=False)

        body = build_export_request(
            table.collection,
            from_date=from_date,
            to_date=to_date,
            company=self.config.company,
        )
        logger.debug(
            "Exporting %s (%s) from %s to %s",
            table_name,
            table.collection,
            from_date,
            to_date,
        )
        return await self._post(body)

    async def ping(self) -> bool:
        """Whether the source server answers at all."""
        client = await self._get_client()
        try:
            response = await client.get("/", timeout=self.config.timeout_seconds)
        except httpx.HTTPError as e:
            logger.warning("Source at %s unreachable: %s", self.config.url, e)
            return False
        return response.is_success


def create_source_client(settings: Settings) -> SourceClient:
    """Create a SourceClient from settings."""
    return SourceClient(
        settings.source,
        policy=RetryPolicy.from_config(settings.retry),
        breaker=CircuitBreaker.from_config("source", settings.retry),
    )
