"""Remote system connectors for Tally Sync."""

from tally_sync.connectors.endpoint import EndpointClient
from tally_sync.connectors.resilience import CircuitBreaker, RetryPolicy
from tally_sync.connectors.source import RecordExtractor, SourceClient

__all__ = [
    "EndpointClient",
    "CircuitBreaker",
    "RetryPolicy",
    "RecordExtractor",
    "SourceClient",
]
