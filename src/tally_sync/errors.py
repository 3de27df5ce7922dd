"""Exception hierarchy for Tally Sync."""

from __future__ import annotations


class TallySyncError(Exception):
    """Base exception for all sync errors."""


class SourceError(TallySyncError):
    """Raised when the source system cannot be reached or answers badly."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class NormalizationError(TallySyncError):
    """Raised when an export document cannot be parsed at all."""


class EndpointError(TallySyncError):
    """Raised when the aggregation endpoint fails or rejects a request."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class CircuitOpenError(TallySyncError):
    """Raised instead of calling a remote that is known to be down."""

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"Circuit '{name}' is open. Retry in {retry_in:.0f}s")
        self.name = name
        self.retry_in = retry_in


class StateError(TallySyncError):
    """Raised when sync state cannot be persisted."""
