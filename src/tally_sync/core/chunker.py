"""
Record Chunker - Bounded-size payload builder.

Splits a table's record list into SyncPayload chunks of at most
``chunk_size`` records, numbered from 1, each carrying the totals the
receiver needs to check completeness.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Iterator, Sequence

from tally_sync.core.records import SyncMode, SyncPayload, SyncRecord


class RecordChunker:
    """
    Fixed-size chunk builder.

    Example:
        chunker = RecordChunker(chunk_size=100, source_identifier="host-1")

        for payload in chunker.chunk_records("Ledgers", records, SyncMode.FULL):
            await endpoint.send_payload(payload)
    """

    def __init__(
        self,
        chunk_size: int = 100,
        source_identifier: str = "",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize chunker.

        Args:
            chunk_size: Maximum records per payload
            source_identifier: Identifier stamped on every payload
            clock: Timestamp source (defaults to UTC now)
        """
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size
        self.source_identifier = source_identifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def count_chunks(self, total_records: int) -> int:
        """Number of chunks needed for ``total_records`` records."""
        if total_records <= 0:
            return 0
        return (total_records + self.chunk_size - 1) // self.chunk_size

    def chunk_records(
        self,
        table_name: str,
        records: Sequence[SyncRecord],
        sync_mode: SyncMode,
    ) -> Iterator[SyncPayload]:
        """
        Split records into payloads.

        Args:
            table_name: Table the records belong to
            records: All records to deliver
            sync_mode: FULL or INCREMENTAL

        Yields:
            SyncPayload objects in delivery order
        """
        total_records = len(records)
        total_chunks = self.count_chunks(total_records)

        for index, start in enumerate(range(0, total_records, self.chunk_size)):
            yield SyncPayload(
                table_name=table_name,
                records=list(records[start:start + self.chunk_size]),
                chunk_number=index + 1,
                total_chunks=total_chunks,
                total_records=total_records,
                sync_mode=sync_mode,
                timestamp=self._clock(),
                source_identifier=self.source_identifier,
            )
