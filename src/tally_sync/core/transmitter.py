"""
Chunked Transmitter.

Delivers a table's record set to the endpoint one chunk at a time:
- Chunks go out strictly in order, with a short pause in between
- The first failed chunk aborts the remaining ones
- A cancellation event is checked before every chunk

Nothing is rolled back on failure. The caller keeps its state
uncommitted, so the next cycle resends the whole record set.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, Sequence

from tally_sync.core.chunker import RecordChunker
from tally_sync.core.records import SyncMode, SyncPayload, SyncRecord
from tally_sync.errors import CircuitOpenError, EndpointError
from tally_sync.utils.logger import get_logger

logger = get_logger(__name__)


class PayloadSink(Protocol):
    """Anything that accepts payload chunks (normally EndpointClient)."""

    async def send_payload(self, payload: SyncPayload) -> Any: ...


@dataclass
class TransmissionResult:
    """Outcome of delivering one record set."""

    success: bool
    total_chunks: int
    chunks_sent: int = 0
    records_sent: int = 0
    cancelled: bool = False
    failed_chunk: int | None = None
    error: str | None = None


class ChunkedTransmitter:
    """
    Sequential, abort-on-first-failure chunk delivery.

    Example:
        transmitter = ChunkedTransmitter(endpoint, RecordChunker(100))
        result = await transmitter.transmit("Ledgers", records, SyncMode.FULL)

        if result.success:
            store.commit(working_state)
    """

    def __init__(
        self,
        sink: PayloadSink,
        chunker: RecordChunker,
        chunk_delay: float = 0.1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize transmitter.

        Args:
            sink: Receiver of payload chunks
            chunker: Splits record sets into payloads
            chunk_delay: Seconds to wait between chunks
            sleep: Awaitable sleep (replaceable in tests)
        """
        self.sink = sink
        self.chunker = chunker
        self.chunk_delay = chunk_delay
        self._sleep = sleep

    async def transmit(
        self,
        table_name: str,
        records: Sequence[SyncRecord],
        sync_mode: SyncMode,
        cancel_event: asyncio.Event | None = None,
    ) -> TransmissionResult:
        """
        Deliver every record, chunk by chunk.

        Args:
            table_name: Table the records belong to
            records: Records to deliver (may be empty)
            sync_mode: FULL or INCREMENTAL
            cancel_event: When set, no further chunk is sent

        Returns:
            TransmissionResult; ``success`` only if every chunk was accepted
        """
        total_chunks = self.chunker.count_chunks(len(records))
        result = TransmissionResult(success=False, total_chunks=total_chunks)

        for payload in self.chunker.chunk_records(table_name, records, sync_mode):
            if payload.chunk_number > 1 and self.chunk_delay > 0:
                await self._sleep(self.chunk_delay)

            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                result.error = "Cancelled"
                logger.warning(
                    "%s: cancelled before chunk %d/%d",
                    table_name,
                    payload.chunk_number,
                    total_chunks,
                )
                return result

            try:
                await self.sink.send_payload(payload)
            except (EndpointError, CircuitOpenError) as e:
                result.failed_chunk = payload.chunk_number
                result.error = str(e)
                logger.error(
                    "%s: chunk %d/%d failed, aborting remaining chunks: %s",
                    table_name,
                    payload.chunk_number,
                    total_chunks,
                    e,
                )
                return result
            except Exception as e:
                result.failed_chunk = payload.chunk_number
                result.error = f"Unexpected error: {e}"
                logger.exception(
                    "%s: chunk %d/%d raised unexpectedly, aborting remaining chunks",
                    table_name,
                    payload.chunk_number,
                    total_chunks,
                )
                return result

            result.chunks_sent += 1
            result.records_sent += payload.record_count
            logger.debug(
                "%s: chunk %d/%d delivered (%d records)",
                table_name,
                payload.chunk_number,
                total_chunks,
                payload.record_count,
            )

        result.success = True
        return result
