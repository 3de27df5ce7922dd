"""
Sync Engine - Orchestration of per-table sync.

Coordinates all components for one table at a time:
- Source extractor for raw export data
- Normalizer for records and digests
- Change detector against the stored digest index
- Chunked transmitter for delivery
- State store, committed only after full success

Each table moves UNINITIALIZED -> BOOTSTRAPPING -> STEADY_STATE. A
bootstrap sends everything in a long lookback window; steady state sends
only records whose digest changed since the last successful sync.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from tally_sync.config import Settings
from tally_sync.connectors.endpoint import EndpointClient, create_endpoint_client
from tally_sync.connectors.source import RecordExtractor, create_source_client
from tally_sync.core.changes import ChangeDetector
from tally_sync.core.chunker import RecordChunker
from tally_sync.core.normalizer import RecordNormalizer
from tally_sync.core.records import Operation, SyncMode, SyncRecord
from tally_sync.core.state import StateStore, TableSyncState
from tally_sync.core.transmitter import ChunkedTransmitter
from tally_sync.errors import (
    CircuitOpenError,
    NormalizationError,
    SourceError,
    StateError,
)
from tally_sync.utils.logger import get_logger

logger = get_logger(__name__)

INCREMENTAL_FALLBACK = timedelta(days=1)


class TablePhase(str, Enum):
    """Lifecycle phase of one table."""

    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPING = "bootstrapping"
    STEADY_STATE = "steady_state"


@dataclass
class TableSyncResult:
    """Outcome of one table's sync attempt."""

    table_name: str
    success: bool = False
    skipped: bool = False
    cancelled: bool = False
    sync_mode: SyncMode | None = None
    records_fetched: int = 0
    records_sent: int = 0
    records_unchanged: int = 0
    chunks_sent: int = 0
    error: str | None = None


@dataclass
class CycleStats:
    """Statistics for one sync cycle."""

    tables_total: int = 0
    tables_succeeded: int = 0
    tables_failed: int = 0
    tables_skipped: int = 0
    records_fetched: int = 0
    records_sent: int = 0
    skipped_reason: str | None = None
    start_time: float = 0.0
    end_time: float = 0.0
    results: list[TableSyncResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        """Duration in seconds."""
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    @property
    def success(self) -> bool:
        """Whether the cycle ran and no table failed."""
        return self.skipped_reason is None and self.tables_failed == 0

    def add(self, result: TableSyncResult) -> None:
        """Fold one table result into the totals."""
        self.results.append(result)
        if result.skipped:
            self.tables_skipped += 1
        elif result.success:
            self.tables_succeeded += 1
        else:
            self.tables_failed += 1
            self.errors.append(f"{result.table_name}: {result.error}")
        self.records_fetched += result.records_fetched
        self.records_sent += result.records_sent


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """
    Per-table sync state machine and cycle driver.

    Example:
        engine = SyncEngine.from_settings(settings)
        try:
            stats = await engine.run_cycle()
            print(f"{stats.records_sent} records sent")
        finally:
            await engine.close()
    """

    def __init__(
        self,
        settings: Settings,
        source: RecordExtractor,
        endpoint: EndpointClient,
        store: StateStore,
        normalizer: RecordNormalizer | None = None,
        detector: ChangeDetector | None = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize sync engine.

        Args:
            settings: Application settings
            source: Record extractor
            endpoint: Aggregation endpoint client
            store: Loaded state store
            normalizer: Record normalizer (optional)
            detector: Change detector (optional)
            clock: Returns the current UTC time
            sleep: Awaitable sleep used between chunks
        """
        self.settings = settings
        self.source = source
        self.endpoint = endpoint
        self.store = store
        self.normalizer = normalizer or RecordNormalizer()
        self.detector = detector or ChangeDetector()
        self._clock = clock

        chunker = RecordChunker(
            chunk_size=settings.sync.chunk_size,
            source_identifier=settings.sync.source_identifier,
            clock=clock,
        )
        self.transmitter = ChunkedTransmitter(
            endpoint,
            chunker,
            chunk_delay=settings.sync.chunk_delay_seconds,
            sleep=sleep,
        )

        self._cycle_lock = asyncio.Lock()
        self._table_locks: dict[str, asyncio.Lock] = {}
        self._attempted: set[str] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncEngine":
        """Build an engine with real clients and a loaded state store."""
        store = StateStore(settings.sync.state_file)
        store.load()
        return cls(
            settings,
            source=create_source_client(settings),
            endpoint=create_endpoint_client(settings),
            store=store,
        )

    async def close(self) -> None:
        """Close remote clients."""
        await self.source.close()
        await self.endpoint.close()

    def phase(self, table_name: str) -> TablePhase:
        """Current lifecycle phase of a table."""
        if self.store.get_table(table_name).initial_sync_complete:
            return TablePhase.STEADY_STATE
        if table_name in self._attempted:
            return TablePhase.BOOTSTRAPPING
        return TablePhase.UNINITIALIZED

    @property
    def busy(self) -> bool:
        """Whether a cycle is running."""
        return self._cycle_lock.locked()

    def seal(self) -> None:
        """Refuse every later state commit."""
        self.store.seal()

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_cycle(self, cancel_event: asyncio.Event | None = None) -> CycleStats:
        """
        Run one sync cycle over all configured tables.

        The endpoint health probe and the source ping run first; either
        failing skips the whole cycle. A cycle requested while another is
        running is skipped, never queued.

        Args:
            cancel_event: When set, stops before the next table or chunk

        Returns:
            CycleStats for the cycle
        """
        stats = CycleStats(start_time=time.time())

        if self._cycle_lock.locked():
            logger.warning("Sync cycle already running, skipping")
            stats.skipped_reason = "Another cycle is running"
            stats.end_time = time.time()
            return stats

        async with self._cycle_lock:
            try:
                await self._run_cycle_locked(stats, cancel_event)
            finally:
                stats.end_time = time.time()

        logger.info(
            "Cycle finished in %.1fs: %d ok, %d failed, %d skipped, %d records sent",
            stats.duration_seconds,
            stats.tables_succeeded,
            stats.tables_failed,
            stats.tables_skipped,
            stats.records_sent,
        )
        return stats

    async def _run_cycle_locked(
        self,
        stats: CycleStats,
        cancel_event: asyncio.Event | None,
    ) -> None:
        tables = list(self.settings.sync.tables)
        stats.tables_total = len(tables)

        if not await self.endpoint.check_health():
            stats.skipped_reason = "Endpoint health check failed"
            logger.warning("Skipping cycle: %s", stats.skipped_reason)
            return

        if not await self.source.ping():
            stats.skipped_reason = "Source is not reachable"
            logger.warning("Skipping cycle: %s", stats.skipped_reason)
            return

        for table_name in tables:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Cycle cancelled before %s", table_name)
                break
            stats.add(await self.sync_table(table_name, cancel_event))

    # =========================================================================
    # Table
    # =========================================================================

    async def sync_table(
        self,
        table_name: str,
        cancel_event: asyncio.Event | None = None,
    ) -> TableSyncResult:
        """
        Sync one table: bootstrap if it never completed, else incremental.

        State is committed only if every chunk was delivered. A table
        already being synced is skipped.

        Args:
            table_name: Table to sync
            cancel_event: When set, stops before the next chunk

        Returns:
            TableSyncResult for the attempt
        """
        lock = self._table_locks.setdefault(table_name, asyncio.Lock())
        if lock.locked():
            logger.warning("%s is already syncing, skipping", table_name)
            return TableSyncResult(table_name=table_name, skipped=True)

        async with lock:
            try:
                return await self._sync_table_locked(table_name, cancel_event)
            except Exception as e:
                logger.exception("%s: unexpected error during sync", table_name)
                return self._fail(
                    TableSyncResult(table_name=table_name), f"Unexpected error: {e}"
                )

    def _window(self, state: TableSyncState, now: datetime) -> tuple[SyncMode, datetime]:
        """Pick the sync mode and window start for a table."""
        if not state.initial_sync_complete:
            lookback = timedelta(days=self.settings.sync.initial_lookback_days)
            return SyncMode.FULL, now - lookback

        if state.last_sync_time is None:
            return SyncMode.INCREMENTAL, now - INCREMENTAL_FALLBACK

        overlap = timedelta(minutes=self.settings.sync.overlap_minutes)
        return SyncMode.INCREMENTAL, state.last_sync_time - overlap

    async def _sync_table_locked(
        self,
        table_name: str,
        cancel_event: asyncio.Event | None,
    ) -> TableSyncResult:
        working = self.store.get_table(table_name)
        now = self._clock()
        mode, from_date = self._window(working, now)
        result = TableSyncResult(table_name=table_name, sync_mode=mode)

        if mode is SyncMode.FULL:
            self._attempted.add(table_name)
            logger.info("%s: bootstrapping from %s", table_name, from_date.date())
        else:
            logger.info("%s: incremental sync from %s", table_name, from_date)

        try:
            xml_text = await self.source.fetch_table(table_name, from_date, now)
            records = self.normalizer.normalize(xml_text, table_name)
        except (SourceError, NormalizationError, CircuitOpenError) as e:
            return self._fail(result, f"Extraction failed: {e}")

        result.records_fetched = len(records)
        to_send = self._select(working, records, mode, result)

        transmission = await self.transmitter.transmit(
            table_name, to_send, mode, cancel_event
        )
        result.chunks_sent = transmission.chunks_sent
        result.records_sent = transmission.records_sent
        if transmission.cancelled:
            result.cancelled = True
            return self._fail(result, "Cancelled during transmission")
        if not transmission.success:
            return self._fail(
                result,
                f"Chunk {transmission.failed_chunk}/{transmission.total_chunks} "
                f"failed: {transmission.error}",
            )

        for record in to_send:
            if record.operation is Operation.DELETE:
                working.digest_index.pop(record.id, None)
            else:
                working.digest_index[record.id] = record.digest
        working.last_sync_time = now
        working.initial_sync_complete = True
        working.total_records_synced += len(to_send)

        try:
            self.store.commit(working)
        except StateError as e:
            return self._fail(result, str(e))

        result.success = True
        logger.info(
            "%s: %s sync complete, %d of %d records sent",
            table_name,
            mode.value.lower(),
            result.records_sent,
            result.records_fetched,
        )
        return result

    def _select(
        self,
        working: TableSyncState,
        records: list[SyncRecord],
        mode: SyncMode,
        result: TableSyncResult,
    ) -> list[SyncRecord]:
        """Choose the records to transmit."""
        if mode is SyncMode.FULL:
            for record in records:
                record.operation = Operation.INSERT
            return list(records)

        changes = self.detector.detect(records, working.digest_index)
        deletions = self.detector.detect_deletions(records, working.digest_index)
        result.records_unchanged = len(changes.unchanged)
        logger.info(
            "%s: %d inserts, %d updates, %d unchanged",
            working.table_name,
            changes.inserts,
            changes.updates,
            len(changes.unchanged),
        )
        return changes.changed + deletions

    def _fail(self, result: TableSyncResult, error: str) -> TableSyncResult:
        result.error = error
        self.store.record_error(result.table_name, error)
        logger.error("%s: %s", result.table_name, error)
        return result
