"""Core sync components for Tally Sync.

The engine and worker import the connectors, so import them from
``tally_sync.core.engine`` and ``tally_sync.core.worker`` directly.
"""

from tally_sync.core.changes import ChangeDetector, ChangeSet
from tally_sync.core.chunker import RecordChunker
from tally_sync.core.integrity import compute_digest
from tally_sync.core.normalizer import RecordNormalizer
from tally_sync.core.records import Operation, SyncMode, SyncPayload, SyncRecord
from tally_sync.core.state import StateStore, TableSyncState
from tally_sync.core.transmitter import ChunkedTransmitter, TransmissionResult

__all__ = [
    "ChangeDetector",
    "ChangeSet",
    "RecordChunker",
    "compute_digest",
    "RecordNormalizer",
    "Operation",
    "SyncMode",
    "SyncPayload",
    "SyncRecord",
    "StateStore",
    "TableSyncState",
    "ChunkedTransmitter",
    "TransmissionResult",
]
