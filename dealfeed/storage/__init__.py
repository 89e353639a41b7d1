"""Storage layer - SQLite deal store with WAL mode and versioned migrations."""

from dealfeed.storage.db import DatabaseManager
from dealfeed.storage.models import Deal, IngestResult, IngestSummary, RefreshResult, Source

__all__ = ["DatabaseManager", "Deal", "IngestResult", "IngestSummary", "RefreshResult", "Source"]
