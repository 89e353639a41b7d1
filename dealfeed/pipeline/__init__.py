"""Pipelines: source ingestion and scheduled feed refresh."""

from dealfeed.pipeline.orchestrator import FeedRefreshJob, IngestOrchestrator

__all__ = ["FeedRefreshJob", "IngestOrchestrator"]
