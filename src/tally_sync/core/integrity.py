"""
Record Digests.

Content fingerprints are the only change signal the source offers, so
everything here must be deterministic:
- Canonical serialization (sorted keys, no nulls, compact separators)
- SHA-256 hex digests of record data
- Table-level fingerprints of a digest index
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping

DIGEST_ALGORITHM = "sha256"

# Length of the digest prefix used in fallback identifiers
SHORT_DIGEST_LENGTH = 16


def strip_nulls(value: Any) -> Any:
    """Recursively drop ``None`` values from mappings and sequences."""
    if isinstance(value, Mapping):
        return {
            str(k): strip_nulls(v) for k, v in value.items() if v is not None
        }
    if isinstance(value, (list, tuple)):
        return [strip_nulls(v) for v in value if v is not None]
    return value


def canonicalize(data: Any) -> str:
    """
    Serialize data to its canonical JSON form.

    Key order is fixed by sorting, so two mappings holding the same
    fields produce the same text regardless of insertion order.

    Args:
        data: JSON-compatible value (mappings, lists, scalars)

    Returns:
        Canonical JSON string
    """
    return json.dumps(
        strip_nulls(data),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def compute_digest(data: Any) -> str:
    """
    Calculate the content digest of record data.

    Args:
        data: Record data (mapping of field name to value)

    Returns:
        Hex digest (64 characters)
    """
    hasher = hashlib.new(DIGEST_ALGORITHM)
    hasher.update(canonicalize(data).encode("utf-8"))
    return hasher.hexdigest()


def digest_text(text: str) -> str:
    """Hex digest of raw text, used where no structured data exists."""
    return hashlib.new(DIGEST_ALGORITHM, text.encode("utf-8")).hexdigest()


def short_digest(text: str) -> str:
    """Truncated digest of raw text for use inside identifiers."""
    return digest_text(text)[:SHORT_DIGEST_LENGTH]


def index_fingerprint(digest_index: Mapping[str, str]) -> str:
    """
    Calculate a fingerprint for a whole digest index.

    Entries are combined in id order so the result does not depend on
    the order records were synced in.

    Args:
        digest_index: Mapping of record id to record digest

    Returns:
        Hex digest of the combined index
    """
    hasher = hashlib.new(DIGEST_ALGORITHM)
    for record_id in sorted(digest_index):
        hasher.update(record_id.encode("utf-8"))
        hasher.update(b"\x00")
        hasher.update(digest_index[record_id].encode("utf-8"))
        hasher.update(b"\n")
    return hasher.hexdigest()


def compare_digests(first: str, second: str) -> bool:
    """Compare two digests for equality."""
    return first.lower() == second.lower()
