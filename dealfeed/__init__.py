"""Deal feed aggregator: ingest deals, compose a quota-balanced feed, persist ranks."""

__version__ = "0.1.0"
