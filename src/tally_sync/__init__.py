"""Tally Sync - incremental replication of Tally records to an aggregation endpoint."""

__version__ = "1.0.0"
__author__ = "Tally Sync Contributors"

from tally_sync.config import Settings, load_settings

__all__ = ["Settings", "load_settings", "__version__"]
