"""
State Store - Per-table sync state persistence.

Provides persistent tracking of:
- Whether each table finished its initial (bootstrap) sync
- The last successful sync time per table
- The digest index (record id -> digest) used for change detection
- The last error seen per table

The whole document is rewritten atomically, and only on commit.
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tally_sync.core.integrity import index_fingerprint
from tally_sync.errors import StateError
from tally_sync.utils.logger import get_logger

logger = get_logger(__name__)

STATE_VERSION = 1


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class TableSyncState:
    """Sync state for a single table."""

    table_name: str
    last_sync_time: datetime | None = None
    initial_sync_complete: bool = False
    digest_index: dict[str, str] = field(default_factory=dict)
    total_records_synced: int = 0
    last_error: str | None = None
    last_error_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "tableName": self.table_name,
            "lastSyncTime": _to_iso(self.last_sync_time),
            "initialSyncComplete": self.initial_sync_complete,
            "digestIndex": dict(self.digest_index),
            "totalRecordsSynced": self.total_records_synced,
            "lastError": self.last_error,
            "lastErrorTime": _to_iso(self.last_error_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TableSyncState":
        """Create from dictionary."""
        if not isinstance(data, dict):
            raise ValueError(f"Table state must be an object, got {type(data).__name__}")
        return cls(
            table_name=data.get("tableName", ""),
            last_sync_time=_from_iso(data.get("lastSyncTime")),
            initial_sync_complete=bool(data.get("initialSyncComplete", False)),
            digest_index=dict(data.get("digestIndex", {})),
            total_records_synced=int(data.get("totalRecordsSynced", 0)),
            last_error=data.get("lastError"),
            last_error_time=_from_iso(data.get("lastErrorTime")),
        )


@dataclass
class SyncDocument:
    """Complete persisted state: every table plus configuration flags."""

    version: int = STATE_VERSION
    is_configured: bool = False
    last_config_update: datetime | None = None
    table_states: dict[str, TableSyncState] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": self.version,
            "isConfigured": self.is_configured,
            "lastConfigUpdate": _to_iso(self.last_config_update),
            "tableStates": {
                name: state.to_dict() for name, state in self.table_states.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncDocument":
        """Create from dictionary."""
        if not isinstance(data, dict):
            raise ValueError(f"State document must be an object, got {type(data).__name__}")
        states = data.get("tableStates") or {}
        if not isinstance(states, dict):
            raise ValueError("tableStates must be an object")

        version = int(data.get("version", STATE_VERSION))
        if version > STATE_VERSION:
            raise ValueError(f"Unsupported state version: {version}")

        table_states = {}
        for name, state_data in states.items():
            state = TableSyncState.from_dict(state_data)
            state.table_name = state.table_name or name
            table_states[name] = state

        return cls(
            version=STATE_VERSION,
            is_configured=bool(data.get("isConfigured", False)),
            last_config_update=_from_iso(data.get("lastConfigUpdate")),
            table_states=table_states,
        )


class StateStore:
    """
    Per-table sync state keyed by table name.

    Callers take a working copy of a table's state, mutate it freely while
    a sync attempt runs, and hand it back through ``commit`` only when the
    attempt fully succeeded. Until then the persisted state stays
    authoritative.

    Example:
        store = StateStore(Path(".tally-sync-state.json"))
        store.load()

        working = store.get_table("Ledgers")
        working.digest_index["guid-1"] = "ab12..."
        store.commit(working)
    """

    def __init__(self, state_file: Path | str) -> None:
        """
        Initialize state store.

        Args:
            state_file: Path to the JSON state document
        """
        self.state_file = Path(state_file)
        self._document = SyncDocument()
        self._sealed = False

    @property
    def document(self) -> SyncDocument:
        """The in-memory document."""
        return self._document

    def load(self) -> SyncDocument:
        """
        Load state from file if it exists.

        A missing file gives an empty document. A corrupt file is logged
        and also treated as empty, which makes every table bootstrap again.
        """
        if not self.state_file.exists():
            self._document = SyncDocument()
            return self._document

        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
            self._document = SyncDocument.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error("Could not load state file %s: %s", self.state_file, e)
            self._document = SyncDocument()
        return self._document

    def get_table(self, table_name: str) -> TableSyncState:
        """
        Get a working copy of a table's state.

        Tables never seen before get a fresh, empty state.
        """
        state = self._document.table_states.get(table_name)
        if state is None:
            return TableSyncState(table_name=table_name)
        return copy.deepcopy(state)

    def has_table(self, table_name: str) -> bool:
        """Whether a table has any committed state."""
        return table_name in self._document.table_states

    def commit(self, state: TableSyncState) -> None:
        """
        Replace a table's state and persist the whole document.

        Raises:
            StateError: If the store is sealed or the file cannot be written.
                The in-memory document is left as it was before the call.
        """
        if self._sealed:
            raise StateError(f"State store sealed; refusing commit for {state.table_name}")

        previous = self._document.table_states.get(state.table_name)
        committed = copy.deepcopy(state)
        committed.last_error = None
        committed.last_error_time = None
        self._document.table_states[state.table_name] = committed

        try:
            self.save()
        except StateError:
            if previous is None:
                del self._document.table_states[state.table_name]
            else:
                self._document.table_states[state.table_name] = previous
            raise

    def record_error(self, table_name: str, error: str) -> None:
        """
        Note a failed attempt on a table.

        Only the in-memory error fields change; they reach disk with the
        next successful commit.
        """
        state = self._document.table_states.get(table_name)
        if state is None:
            state = TableSyncState(table_name=table_name)
            self._document.table_states[table_name] = state
        state.last_error = error
        state.last_error_time = datetime.now(timezone.utc)

    def mark_configured(self, configured: bool = True) -> None:
        """Set the configured flag; it reaches disk with the next commit."""
        self._document.is_configured = configured
        self._document.last_config_update = datetime.now(timezone.utc)

    def save(self) -> None:
        """
        Write the document atomically.

        Raises:
            StateError: If the file cannot be written
        """
        payload = json.dumps(self._document.to_dict(), indent=2)
        directory = self.state_file.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.state_file.name}.", suffix=".tmp", dir=directory
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, self.state_file)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateError(f"Could not write state file {self.state_file}: {e}") from e

    def seal(self) -> None:
        """Refuse every later commit (used once shutdown grace expires)."""
        self._sealed = True

    @property
    def sealed(self) -> bool:
        """Whether commits are refused."""
        return self._sealed

    def reset_table(self, table_name: str) -> bool:
        """Forget a table's state so it bootstraps again. Persists."""
        if table_name not in self._document.table_states:
            return False
        del self._document.table_states[table_name]
        self.save()
        return True

    def clear_state(self) -> None:
        """Clear all state and delete state file."""
        self._document = SyncDocument()
        if self.state_file.exists():
            self.state_file.unlink()

    def get_summary(self) -> dict[str, Any]:
        """Get a summary of current state for display."""
        tables_summary = {}
        for name, state in self._document.table_states.items():
            tables_summary[name] = {
                "phase": "steady" if state.initial_sync_complete else "bootstrap",
                "last_sync": _to_iso(state.last_sync_time),
                "records_tracked": len(state.digest_index),
                "fingerprint": index_fingerprint(state.digest_index)[:12],
                "total_synced": state.total_records_synced,
                "last_error": state.last_error,
            }

        return {
            "version": self._document.version,
            "is_configured": self._document.is_configured,
            "last_config_update": _to_iso(self._document.last_config_update),
            "tables": tables_summary,
        }
