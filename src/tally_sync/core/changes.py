"""
Change Detector.

Classifies freshly extracted records against the digest index of the last
successful sync. The source keeps no change log, so a record counts as
changed exactly when its content digest differs from the stored one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from tally_sync.core.integrity import compare_digests
from tally_sync.core.records import Operation, SyncRecord


@dataclass
class ChangeSet:
    """Result of classifying one batch of records."""

    changed: list[SyncRecord] = field(default_factory=list)
    unchanged: list[SyncRecord] = field(default_factory=list)

    @property
    def inserts(self) -> int:
        """Number of records new to the index."""
        return sum(1 for r in self.changed if r.operation is Operation.INSERT)

    @property
    def updates(self) -> int:
        """Number of records whose digest changed."""
        return sum(1 for r in self.changed if r.operation is Operation.UPDATE)


class ChangeDetector:
    """
    Digest-based change classification.

    Example:
        detector = ChangeDetector()
        changes = detector.detect(records, state.digest_index)

        print(f"{changes.inserts} inserts, {changes.updates} updates")
    """

    def detect(
        self,
        records: Sequence[SyncRecord],
        digest_index: Mapping[str, str],
    ) -> ChangeSet:
        """
        Partition records into changed and unchanged.

        Records absent from the index are marked INSERT, records whose
        digest differs are marked UPDATE, and records with an identical
        digest are left out of ``changed``.

        Args:
            records: Records from the current extraction
            digest_index: Record id to digest from the last successful sync

        Returns:
            ChangeSet with operations assigned on the changed records
        """
        changes = ChangeSet()

        for record in records:
            previous = digest_index.get(record.id)
            if previous is None:
                record.operation = Operation.INSERT
                changes.changed.append(record)
            elif not compare_digests(previous, record.digest):
                record.operation = Operation.UPDATE
                changes.changed.append(record)
            else:
                changes.unchanged.append(record)

        return changes

    def detect_deletions(
        self,
        records: Sequence[SyncRecord],
        digest_index: Mapping[str, str],
    ) -> list[SyncRecord]:
        """
        Deletion detection. Always returns an empty list.

        Extraction is bounded by a date window, so a record missing from
        the current fetch is indistinguishable from a deleted one. Real
        deletion detection needs a periodic full-table reconciliation pass
        comparing every id in the index against a complete extraction.
        """
        return []
