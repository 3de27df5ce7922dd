"""Tests for change detection."""

from tally_sync.core.changes import ChangeDetector
from tally_sync.core.integrity import compute_digest
from tally_sync.core.records import Operation, SyncRecord


def record(record_id: str, data: dict) -> SyncRecord:
    return SyncRecord(id=record_id, data=data, digest=compute_digest(data))


class TestChangeDetector:
    """Test ChangeDetector class."""

    def test_classification(self) -> None:
        """New ids insert, changed digests update, same digests drop out."""
        same = record("a", {"NAME": "Cash"})
        changed = record("b", {"NAME": "Bank", "BALANCE": 10})
        new = record("c", {"NAME": "Sales"})
        index = {
            "a": same.digest,
            "b": compute_digest({"NAME": "Bank", "BALANCE": 5}),
        }

        changes = ChangeDetector().detect([same, changed, new], index)

        assert [r.id for r in changes.changed] == ["b", "c"]
        assert [r.id for r in changes.unchanged] == ["a"]
        assert changed.operation is Operation.UPDATE
        assert new.operation is Operation.INSERT
        assert (changes.inserts, changes.updates) == (1, 1)

    def test_empty_index_marks_everything_insert(self) -> None:
        records = [record(str(i), {"i": i}) for i in range(5)]

        changes = ChangeDetector().detect(records, {})

        assert changes.inserts == 5
        assert changes.unchanged == []

    def test_digest_case_is_ignored(self) -> None:
        item = record("a", {"x": 1})

        changes = ChangeDetector().detect([item], {"a": item.digest.upper()})

        assert changes.changed == []

    def test_missing_records_are_not_deletions(self) -> None:
        """Records absent from a windowed fetch are never reported deleted."""
        index = {"gone": "ff" * 32, "kept": "00" * 32}

        deletions = ChangeDetector().detect_deletions([record("kept", {})], index)

        assert deletions == []
