"""Tests for the sync engine."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from conftest import (
    START,
    BlockingExtractor,
    FakeClock,
    FakeEndpoint,
    FakeExtractor,
    ledger_row,
    ledger_xml,
    no_sleep,
)
from tally_sync.config import Settings
from tally_sync.connectors.endpoint import EndpointClient
from tally_sync.connectors.resilience import CircuitBreaker, RetryPolicy
from tally_sync.core.engine import CycleStats, SyncEngine, TablePhase, TableSyncResult
from tally_sync.core.records import Operation, SyncMode, SyncPayload
from tally_sync.core.state import StateStore
from tally_sync.errors import NormalizationError, SourceError


def persisted(settings: Settings) -> StateStore:
    """Reload state from disk, ignoring anything held in memory."""
    store = StateStore(settings.sync.state_file)
    store.load()
    return store


class TestBootstrap:
    """First sync of a table."""

    @pytest.mark.asyncio
    async def test_bootstrap_sends_everything_in_chunks(
        self,
        engine: SyncEngine,
        source: FakeExtractor,
        endpoint: FakeEndpoint,
        settings: Settings,
    ) -> None:
        """250 records go out as 100/100/50 and seed the digest index."""
        source.documents["Ledgers"] = ledger_xml(250)

        stats = await engine.run_cycle()

        assert stats.success
        assert [p.chunk_number for p in endpoint.payloads] == [1, 2, 3]
        assert [p.record_count for p in endpoint.payloads] == [100, 100, 50]
        assert all(p.total_chunks == 3 for p in endpoint.payloads)
        assert all(p.total_records == 250 for p in endpoint.payloads)
        assert all(p.sync_mode is SyncMode.FULL for p in endpoint.payloads)
        assert all(
            r.operation is Operation.INSERT
            for p in endpoint.payloads
            for r in p.records
        )

        state = persisted(settings).get_table("Ledgers")
        assert state.initial_sync_complete
        assert len(state.digest_index) == 250
        assert state.last_sync_time == START
        assert state.total_records_synced == 250

    @pytest.mark.asyncio
    async def test_bootstrap_window_uses_lookback(
        self, engine: SyncEngine, source: FakeExtractor
    ) -> None:
        """Bootstrap asks for the last 365 days."""
        await engine.sync_table("Ledgers")

        _, from_date, to_date = source.calls[0]
        assert from_date == START - timedelta(days=365)
        assert to_date == START

    @pytest.mark.asyncio
    async def test_empty_bootstrap_completes(
        self, engine: SyncEngine, endpoint: FakeEndpoint, settings: Settings
    ) -> None:
        """A table with nothing to export still leaves bootstrap."""
        result = await engine.sync_table("Ledgers")

        assert result.success
        assert endpoint.payloads == []
        assert persisted(settings).get_table("Ledgers").initial_sync_complete

    @pytest.mark.asyncio
    async def test_phases(
        self,
        engine: SyncEngine,
        source: FakeExtractor,
        endpoint: FakeEndpoint,
    ) -> None:
        """UNINITIALIZED, then BOOTSTRAPPING while failing, then STEADY_STATE."""
        source.documents["Ledgers"] = ledger_xml(5)
        assert engine.phase("Ledgers") is TablePhase.UNINITIALIZED

        endpoint.fail_chunks = {1}
        await engine.sync_table("Ledgers")
        assert engine.phase("Ledgers") is TablePhase.BOOTSTRAPPING

        endpoint.fail_chunks = set()
        await engine.sync_table("Ledgers")
        assert engine.phase("Ledgers") is TablePhase.STEADY_STATE


class TestIncremental:
    """Steady-state syncs."""

    @pytest.mark.asyncio
    async def test_no_changes_sends_nothing_but_advances(
        self,
        engine: SyncEngine,
        source: FakeExtractor,
        endpoint: FakeEndpoint,
        clock: FakeClock,
        settings: Settings,
    ) -> None:
        """Unchanged data produces no payload; last sync time still moves."""
        source.documents["Ledgers"] = ledger_xml(50)
        await engine.run_cycle()
        endpoint.payloads.clear()

        later = clock.advance(minutes=15)
        result = await engine.sync_table("Ledgers")

        assert result.success
        assert result.sync_mode is SyncMode.INCREMENTAL
        assert result.records_unchanged == 50
        assert endpoint.payloads == []

        state = persisted(settings).get_table("Ledgers")
        assert state.last_sync_time == later
        assert len(state.digest_index) == 50

    @pytest.mark.asyncio
    async def test_window_starts_before_last_sync(
        self, engine: SyncEngine, source: FakeExtractor, clock: FakeClock
    ) -> None:
        """Incremental windows overlap the previous one by five minutes."""
        await engine.sync_table("Ledgers")
        clock.advance(minutes=15)

        await engine.sync_table("Ledgers")

        _, from_date, _ = source.calls[-1]
        assert from_date == START - timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_missing_last_sync_time_falls_back_one_day(
        self,
        engine: SyncEngine,
        source: FakeExtractor,
        store: StateStore,
        clock: FakeClock,
    ) -> None:
        state = store.get_table("Ledgers")
        state.initial_sync_complete = True
        store.commit(state)

        await engine.sync_table("Ledgers")

        _, from_date, _ = source.calls[-1]
        assert from_date == clock.now - timedelta(days=1)

    @pytest.mark.asyncio
    async def test_only_changed_records_are_sent(
        self,
        engine: SyncEngine,
        source: FakeExtractor,
        endpoint: FakeEndpoint,
        clock: FakeClock,
        settings: Settings,
    ) -> None:
        """A changed record is an UPDATE, an unseen one an INSERT."""
        source.documents["Ledgers"] = ledger_xml(10)
        await engine.sync_table("Ledgers")
        before = persisted(settings).get_table("Ledgers").digest_index
        endpoint.payloads.clear()

        changed = ledger_xml(10).replace(
            "<OPENINGBALANCE>3</OPENINGBALANCE>", "<OPENINGBALANCE>999</OPENINGBALANCE>"
        )
        source.documents["Ledgers"] = changed.replace(
            "</COLLECTION>", ledger_row(10) + "</COLLECTION>"
        )
        clock.advance(minutes=15)
        result = await engine.sync_table("Ledgers")

        assert result.success
        sent = {r.id: r.operation for p in endpoint.payloads for r in p.records}
        assert sent == {"guid-3": Operation.UPDATE, "guid-10": Operation.INSERT}
        assert all(p.sync_mode is SyncMode.INCREMENTAL for p in endpoint.payloads)

        state = persisted(settings).get_table("Ledgers")
        assert len(state.digest_index) == 11
        assert state.digest_index["guid-3"] != before["guid-3"]
        assert state.digest_index["guid-0"] == before["guid-0"]
        assert state.total_records_synced == 12


class TestFailures:
    """Nothing is committed unless every chunk is delivered."""

    @pytest.mark.asyncio
    async def test_partial_failure_leaves_state_and_resends_all(
        self,
        engine: SyncEngine,
        source: FakeExtractor,
        endpoint: FakeEndpoint,
        settings: Settings,
    ) -> None:
        """Chunk 2 of 3 fails: chunk 3 is never sent and state stays empty."""
        source.documents["Ledgers"] = ledger_xml(300)
        endpoint.fail_chunks = {2}

        result = await engine.sync_table("Ledgers")

        assert not result.success
        assert [p.chunk_number for p in endpoint.payloads] == [1, 2]
        assert result.chunks_sent == 1
        assert not settings.sync.state_file.exists()

        endpoint.fail_chunks = set()
        endpoint.payloads.clear()
        result = await engine.sync_table("Ledgers")

        assert result.success
        assert [p.chunk_number for p in endpoint.payloads] == [1, 2, 3]
        assert sum(p.record_count for p in endpoint.payloads) == 300
        assert all(p.sync_mode is SyncMode.FULL for p in endpoint.payloads)

    @pytest.mark.asyncio
    async def test_partial_failure_in_steady_state(
        self,
        engine: SyncEngine,
        source: FakeExtractor,
        endpoint: FakeEndpoint,
        clock: FakeClock,
        settings: Settings,
    ) -> None:
        """Failed incremental keeps the old digests and last sync time."""
        source.documents["Ledgers"] = ledger_xml(300)
        await engine.sync_table("Ledgers")
        before = persisted(settings).get_table("Ledgers")

        source.documents["Ledgers"] = ledger_xml(300, balance=1000)
        endpoint.fail_chunks = {2}
        endpoint.payloads.clear()
        clock.advance(minutes=15)
        result = await engine.sync_table("Ledgers")

        assert not result.success
        after = persisted(settings).get_table("Ledgers")
        assert after.digest_index == before.digest_index
        assert after.last_sync_time == before.last_sync_time

        endpoint.fail_chunks = set()
        endpoint.payloads.clear()
        result = await engine.sync_table("Ledgers")

        assert result.success
        assert sum(p.record_count for p in endpoint.payloads) == 300
        assert all(
            r.operation is Operation.UPDATE
            for p in endpoint.payloads
            for r in p.records
        )

    @pytest.mark.asyncio
    async def test_source_error_records_error_in_memory(
        self,
        engine: SyncEngine,
        source: FakeExtractor,
        store: StateStore,
        settings: Settings,
    ) -> None:
        source.error = SourceError("connection refused")

        result = await engine.sync_table("Ledgers")

        assert not result.success
        assert "connection refused" in (result.error or "")
        assert store.document.table_states["Ledgers"].last_error is not None
        assert not settings.sync.state_file.exists()

    @pytest.mark.asyncio
    async def test_unparseable_document_fails_table(
        self, engine: SyncEngine, source: FakeExtractor, endpoint: FakeEndpoint
    ) -> None:
        source.documents["Ledgers"] = "<ENVELOPE><LEDGER>"

        result = await engine.sync_table("Ledgers")

        assert not result.success
        assert endpoint.payloads == []

    @pytest.mark.asyncio
    async def test_normalization_error_type(self, engine: SyncEngine) -> None:
        with pytest.raises(NormalizationError):
            engine.normalizer.parse("<broken")

    @pytest.mark.asyncio
    async def test_sealed_engine_does_not_commit(
        self,
        engine: SyncEngine,
        source: FakeExtractor,
        settings: Settings,
    ) -> None:
        source.documents["Ledgers"] = ledger_xml(3)
        engine.seal()

        result = await engine.sync_table("Ledgers")

        assert not result.success
        assert "sealed" in (result.error or "")
        assert not settings.sync.state_file.exists()


class TestCycle:
    """Whole-cycle behavior."""

    @pytest.mark.asyncio
    async def test_unhealthy_endpoint_skips_cycle(
        self, engine: SyncEngine, source: FakeExtractor, endpoint: FakeEndpoint
    ) -> None:
        endpoint.healthy = False

        stats = await engine.run_cycle()

        assert stats.skipped_reason is not None
        assert not stats.success
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_unreachable_source_skips_cycle(
        self, engine: SyncEngine, source: FakeExtractor
    ) -> None:
        source.reachable = False

        stats = await engine.run_cycle()

        assert stats.skipped_reason == "Source is not reachable"
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_tables_run_in_configured_order(
        self,
        settings: Settings,
        source: FakeExtractor,
        endpoint: FakeEndpoint,
        store: StateStore,
        clock: FakeClock,
    ) -> None:
        settings.sync.tables = ["Groups", "Ledgers", "Vouchers"]
        engine = SyncEngine(
            settings, source, endpoint, store, clock=clock, sleep=no_sleep  # type: ignore[arg-type]
        )

        stats = await engine.run_cycle()

        assert [call[0] for call in source.calls] == ["Groups", "Ledgers", "Vouchers"]
        assert stats.tables_succeeded == 3

    @pytest.mark.asyncio
    async def test_cancelled_cycle_processes_nothing(
        self, engine: SyncEngine, source: FakeExtractor
    ) -> None:
        cancel = asyncio.Event()
        cancel.set()

        stats = await engine.run_cycle(cancel)

        assert source.calls == []
        assert stats.results == []

    def test_cycle_stats_counts_results(self) -> None:
        stats = CycleStats(tables_total=3)
        stats.add(TableSyncResult("A", success=True, records_sent=5))
        stats.add(TableSyncResult("B", error="boom"))
        stats.add(TableSyncResult("C", skipped=True))

        assert (stats.tables_succeeded, stats.tables_failed, stats.tables_skipped) == (1, 1, 1)
        assert stats.records_sent == 5
        assert stats.errors == ["B: boom"]
        assert not stats.success


GROUPS_XML = (
    "<ENVELOPE><BODY><DATA><COLLECTION>"
    "<GROUP><GUID>grp-1</GUID><NAME>Sundry Debtors</NAME></GROUP>"
    "</COLLECTION></DATA></BODY></ENVELOPE>"
)


class TestUnexpectedErrors:
    """An unexpected error fails its own table only."""

    @pytest.fixture
    def two_tables(self, settings: Settings, source: FakeExtractor) -> Settings:
        settings.sync.tables = ["Ledgers", "Groups"]
        source.documents["Ledgers"] = ledger_xml(3)
        source.documents["Groups"] = GROUPS_XML
        return settings

    @pytest.mark.asyncio
    async def test_odd_processed_count_does_not_end_cycle(
        self,
        two_tables: Settings,
        source: FakeExtractor,
        store: StateStore,
        clock: FakeClock,
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": True, "processedCount": "n/a"})

        endpoint = EndpointClient(
            two_tables.endpoint,
            policy=RetryPolicy(max_attempts=1),
            breaker=CircuitBreaker("endpoint"),
            transport=httpx.MockTransport(handler),
        )
        engine = SyncEngine(two_tables, source, endpoint, store, clock=clock, sleep=no_sleep)

        stats = await engine.run_cycle()
        await endpoint.close()

        assert [call[0] for call in source.calls] == ["Ledgers", "Groups"]
        assert stats.tables_succeeded == 2

    @pytest.mark.asyncio
    async def test_sink_bug_fails_only_that_table(
        self,
        two_tables: Settings,
        source: FakeExtractor,
        store: StateStore,
        clock: FakeClock,
    ) -> None:
        class BrokenForLedgers(FakeEndpoint):
            async def send_payload(self, payload: SyncPayload):  # type: ignore[override]
                if payload.table_name == "Ledgers":
                    raise RuntimeError("sink bug")
                return await super().send_payload(payload)

        endpoint = BrokenForLedgers()
        engine = SyncEngine(
            two_tables, source, endpoint, store, clock=clock, sleep=no_sleep  # type: ignore[arg-type]
        )

        stats = await engine.run_cycle()

        assert stats.tables_failed == 1
        assert stats.tables_succeeded == 1
        assert "sink bug" in stats.errors[0]
        on_disk = persisted(two_tables)
        assert not on_disk.get_table("Ledgers").initial_sync_complete
        assert on_disk.get_table("Ledgers").digest_index == {}
        assert on_disk.get_table("Groups").initial_sync_complete

    @pytest.mark.asyncio
    async def test_normalizer_bug_fails_only_that_table(
        self,
        two_tables: Settings,
        source: FakeExtractor,
        endpoint: FakeEndpoint,
        store: StateStore,
        clock: FakeClock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        engine = SyncEngine(
            two_tables, source, endpoint, store, clock=clock, sleep=no_sleep  # type: ignore[arg-type]
        )
        original = engine.normalizer.normalize

        def broken(xml_text: str, table_name: str):
            if table_name == "Ledgers":
                raise KeyError("LEDGER")
            return original(xml_text, table_name)

        monkeypatch.setattr(engine.normalizer, "normalize", broken)

        stats = await engine.run_cycle()

        assert stats.tables_failed == 1
        assert stats.tables_succeeded == 1
        assert engine.phase("Ledgers") is TablePhase.BOOTSTRAPPING
        assert "Unexpected error" in store.get_table("Ledgers").last_error


class TestLocks:
    """Overlapping triggers are skipped, never queued."""

    @pytest.mark.asyncio
    async def test_table_lock_skips_second_attempt(
        self,
        settings: Settings,
        endpoint: FakeEndpoint,
        store: StateStore,
        clock: FakeClock,
    ) -> None:
        source = BlockingExtractor({"Ledgers": ledger_xml(2)})
        engine = SyncEngine(
            settings, source, endpoint, store, clock=clock, sleep=no_sleep  # type: ignore[arg-type]
        )

        first = asyncio.create_task(engine.sync_table("Ledgers"))
        await source.started.wait()

        second = await engine.sync_table("Ledgers")
        assert second.skipped

        source.gate.set()
        assert (await first).success
        assert len(source.calls) == 1

    @pytest.mark.asyncio
    async def test_cycle_lock_skips_second_cycle(
        self,
        settings: Settings,
        endpoint: FakeEndpoint,
        store: StateStore,
        clock: FakeClock,
    ) -> None:
        source = BlockingExtractor()
        engine = SyncEngine(
            settings, source, endpoint, store, clock=clock, sleep=no_sleep  # type: ignore[arg-type]
        )

        first = asyncio.create_task(engine.run_cycle())
        await source.started.wait()
        assert engine.busy

        second = await engine.run_cycle()
        assert second.skipped_reason == "Another cycle is running"

        source.gate.set()
        assert (await first).success
        assert not engine.busy
