"""Shared fixtures and test doubles."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tally_sync.config import Settings
from tally_sync.connectors.endpoint import DeliveryResult
from tally_sync.connectors.source import RecordExtractor
from tally_sync.core.engine import SyncEngine
from tally_sync.core.records import SyncPayload
from tally_sync.core.state import StateStore
from tally_sync.errors import EndpointError


START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def ledger_row(i: int, balance: int = 0) -> str:
    """One LEDGER element identified by guid-{i}."""
    return (
        f'<LEDGER NAME="Ledger {i}">'
        f"<GUID>guid-{i}</GUID>"
        f"<NAME>Ledger {i}</NAME>"
        f"<PARENT>Sundry Debtors</PARENT>"
        f"<OPENINGBALANCE>{balance + i}</OPENINGBALANCE>"
        f"<ALTERDATE>20240115</ALTERDATE>"
        f"</LEDGER>"
    )


def ledger_xml(count: int, start: int = 0, balance: int = 0) -> str:
    """Build a ledger export with ``count`` records."""
    rows = "".join(ledger_row(i, balance) for i in range(start, start + count))
    return f"<ENVELOPE><BODY><DATA><COLLECTION>{rows}</COLLECTION></DATA></BODY></ENVELOPE>"


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeExtractor(RecordExtractor):
    """Extractor serving canned documents per table."""

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        self.documents = documents or {}
        self.reachable = True
        self.error: Exception | None = None
        self.calls: list[tuple[str, datetime | None, datetime | None]] = []
        self.closed = False

    async def fetch_table(
        self,
        table_name: str,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> str:
        self.calls.append((table_name, from_date, to_date))
        if self.error is not None:
            raise self.error
        return self.documents.get(table_name, "")

    async def ping(self) -> bool:
        return self.reachable

    async def close(self) -> None:
        self.closed = True


class BlockingExtractor(FakeExtractor):
    """Extractor that waits on a gate before answering."""

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        super().__init__(documents)
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def fetch_table(
        self,
        table_name: str,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> str:
        self.started.set()
        await self.gate.wait()
        return await super().fetch_table(table_name, from_date, to_date)


class FakeEndpoint:
    """Endpoint recording payloads; rejects configured chunk numbers."""

    def __init__(self) -> None:
        self.healthy = True
        self.fail_chunks: set[int] = set()
        self.payloads: list[SyncPayload] = []
        self.closed = False

    async def check_health(self) -> bool:
        return self.healthy

    async def send_payload(self, payload: SyncPayload) -> DeliveryResult:
        self.payloads.append(payload)
        if payload.chunk_number in self.fail_chunks:
            raise EndpointError(f"chunk {payload.chunk_number} rejected", status=400)
        return DeliveryResult(status=200, processed_count=payload.record_count)

    async def close(self) -> None:
        self.closed = True


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings for a single-table sync with no inter-chunk delay."""
    return Settings(
        endpoint={"base_url": "https://aggregator.example.com"},
        sync={
            "tables": ["Ledgers"],
            "chunk_delay_seconds": 0,
            "state_file": tmp_path / "state.json",
            "source_identifier": "test-host",
        },
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def source() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def endpoint() -> FakeEndpoint:
    return FakeEndpoint()


@pytest.fixture
def store(settings: Settings) -> StateStore:
    store = StateStore(settings.sync.state_file)
    store.load()
    return store


@pytest.fixture
def engine(
    settings: Settings,
    source: FakeExtractor,
    endpoint: FakeEndpoint,
    store: StateStore,
    clock: FakeClock,
) -> SyncEngine:
    return SyncEngine(
        settings,
        source=source,
        endpoint=endpoint,  # type: ignore[arg-type]
        store=store,
        clock=clock,
        sleep=no_sleep,
    )
