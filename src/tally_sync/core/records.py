"""
Sync Records and payloads.

A SyncRecord is one flattened business record, rebuilt from the source
every cycle. Only its digest outlives the cycle (inside the table state).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class Operation(str, Enum):
    """What the receiver should do with a record."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncMode(str, Enum):
    """Kind of sync a payload belongs to."""

    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


@dataclass
class SyncRecord:
    """A normalized record ready for change detection and transmission."""

    id: str
    data: dict[str, Any]
    digest: str
    modified_at: datetime | None = None
    operation: Operation = Operation.INSERT

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire representation."""
        return {
            "id": self.id,
            "data": self.data,
            "digest": self.digest,
            "modifiedAt": self.modified_at.isoformat() if self.modified_at else None,
            "operation": self.operation.value,
        }


@dataclass
class SyncPayload:
    """One chunk of records sent as a single request."""

    table_name: str
    records: list[SyncRecord]
    chunk_number: int
    total_chunks: int
    total_records: int
    sync_mode: SyncMode
    timestamp: datetime
    source_identifier: str

    @property
    def record_count(self) -> int:
        """Records in this chunk."""
        return len(self.records)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON body posted to the endpoint."""
        return {
            "tableName": self.table_name,
            "records": [record.to_dict() for record in self.records],
            "chunkNumber": self.chunk_number,
            "totalChunks": self.total_chunks,
            "totalRecords": self.total_records,
            "syncMode": self.sync_mode.value,
            "timestamp": self.timestamp.isoformat(),
            "sourceIdentifier": self.source_identifier,
        }
