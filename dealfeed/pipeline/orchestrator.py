"""Ingest and feed-refresh orchestration for the deal feed.

``IngestOrchestrator`` fetches all enabled sources concurrently, normalizes
raw records into deals, and upserts them. ``FeedRefreshJob`` loads the
eligible working set, composes the feed, and writes both rank columns back
in a single transaction.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from dealfeed.config import DEFAULT_CONFIG_PATH, DEFAULT_DB_PATH, load_config
from dealfeed.feed.composer import FeedComposer
from dealfeed.feed.config import FeedConfig
from dealfeed.feed.rng import RandomSource
from dealfeed.storage.db import DatabaseManager
from dealfeed.storage.models import (
    DEFAULT_CATEGORY,
    Deal,
    IngestResult,
    IngestSummary,
    RefreshResult,
    Source,
    compute_drop_rate,
    parse_timestamp,
    to_utc_naive,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 10
DEFAULT_TIMEOUT = 30


class Connector(Protocol):
    """Anything that can pull raw deal dicts for a source."""

    async def fetch(self, source: Source) -> List[Dict[str, Any]]:
        ...


ConnectorFactory = Callable[[Dict[str, Any]], Connector]


class IngestOrchestrator:
    """Pull every enabled source in parallel and upsert the normalized deals.

    A failing source is recorded on its ``sources`` row and in the summary;
    the other sources still complete.

    Usage:
        orchestrator = IngestOrchestrator(connector_factory=build_connector)
        await orchestrator.initialize()
        summary = await orchestrator.ingest_all()
    """

    def __init__(
        self,
        config_path: str = DEFAULT_CONFIG_PATH,
        db_path: str = DEFAULT_DB_PATH,
        connector_factory: Optional[ConnectorFactory] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        request_timeout: float = DEFAULT_TIMEOUT,
    ):
        self.config_path = config_path
        self.db_path = db_path
        self.connector_factory = connector_factory
        self.request_timeout = request_timeout
        self.max_concurrent = max(1, max_concurrent)
        self.db: Optional[DatabaseManager] = None

    async def initialize(self) -> None:
        self.db = DatabaseManager(self.db_path)
        await self.db.initialize()

    async def close(self) -> None:
        if self.db is not None:
            await self.db.close()
            self.db = None

    async def ingest_all(self, source_ids: Optional[List[str]] = None) -> IngestSummary:
        """Ingest every enabled source, or only ``source_ids`` when given."""
        if self.db is None:
            await self.initialize()
        assert self.db is not None

        started = time.monotonic()
        summary = IngestSummary()
        sources = await self._select_sources(source_ids)
        if not sources:
            logger.warning("No sources to ingest (none enabled or none match %s)", source_ids)
            return summary

        for source in sources:
            await self.db.upsert_source(source)

        sem = asyncio.Semaphore(self.max_concurrent)
        outcomes = await asyncio.gather(
            *(self._ingest_source(source, sem) for source in sources),
            return_exceptions=True,
        )
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, IngestResult):
                summary.add(outcome)
            else:
                logger.error("Ingest task for %s crashed: %r", source.id, outcome)
                summary.failed_tasks += 1

        summary.duration_seconds = time.monotonic() - started
        logger.info(
            "Ingest: %d sources, %d fetched, %d upserted, %d duplicate ids, %d errors (%.1fs)",
            len(sources),
            summary.total_fetched,
            summary.total_upserted,
            summary.total_duplicates,
            summary.total_errors,
            summary.duration_seconds,
        )
        return summary

    async def _select_sources(self, source_ids: Optional[Iterable[str]]) -> List[Source]:
        assert self.db is not None
        wanted = set(source_ids) if source_ids else None
        disabled = await self.db.get_disabled_source_ids()
        selected = []
        for cfg in load_config(self.config_path).get("sources") or []:
            source = Source.from_config(cfg)
            if wanted is not None and source.id not in wanted:
                continue
            if not source.enabled or source.id in disabled:
                logger.debug("Source %s disabled; skipping", source.id)
                continue
            selected.append(source)
        return selected

    async def _ingest_source(self, source: Source, sem: asyncio.Semaphore) -> IngestResult:
        """Fetch, normalize, dedup and store one source; errors end up on the result."""
        assert self.db is not None
        result = IngestResult(source_id=source.id)
        started = time.monotonic()

        async with sem:
            try:
                raw = await self._fetch_source(source)
                result.fetched = len(raw)
                deals, result.duplicates = self._deduplicate(self.normalize_deals(raw, source))
                result.upserted = await self.db.upsert_deals(deals)
            except Exception as e:
                result.errors = 1
                result.error_message = str(e) or type(e).__name__
                logger.error("Source %s failed: %s", source.id, result.error_message)
            else:
                logger.info(
                    "Source %s: %d fetched, %d upserted, %d duplicate ids",
                    source.id, result.fetched, result.upserted, result.duplicates,
                )
            await self.db.update_source_status(
                source.id, last_fetch_at=utcnow(), last_error=result.error_message
            )

        result.duration_seconds = time.monotonic() - started
        return result

    async def _fetch_source(self, source: Source) -> List[Dict[str, Any]]:
        if self.connector_factory is None:
            logger.warning("No connector factory registered; skipping source %s", source.id)
            return []

        connector = self.connector_factory(source.config)
        try:
            return await asyncio.wait_for(connector.fetch(source), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"fetch timed out after {self.request_timeout}s") from None

    def normalize_deals(self, raw_items: List[Dict[str, Any]], source: Source) -> List[Deal]:
        """Turn connector dicts into ``Deal``s owned by ``source``.

        Records without a URL are dropped, as are deals whose sale already ended.
        """
        fallback_category = source.config.get("category") or DEFAULT_CATEGORY
        now = utcnow()
        deals = []
        expired = 0
        for raw in raw_items:
            url = raw.get("url")
            if not url:
                continue

            external_id = raw.get("external_id")
            if external_id in (None, ""):
                deal_id = Deal.hash_id(source.id, url)
            else:
                deal_id = Deal.make_id(source.id, str(external_id))

            sale_end = to_utc_naive(parse_timestamp(raw.get("sale_end_date")))
            if sale_end is not None and sale_end < now:
                expired += 1
                continue

            current = _to_float(raw.get("current_price"))
            previous = _to_float(raw.get("previous_price"))
            deals.append(
                Deal(
                    id=deal_id,
                    source=source.id,
                    title=raw.get("title") or "Untitled",
                    url=url,
                    category=raw.get("category") or fallback_category,
                    current_price=current,
                    previous_price=previous,
                    drop_rate=compute_drop_rate(previous, current),
                    sale_end_date=sale_end,
                    metadata=raw.get("metadata") or None,
                )
            )

        if expired:
            logger.info("Source %s: skipped %d expired deals", source.id, expired)
        return deals

    @staticmethod
    def _deduplicate(deals: List[Deal]) -> Tuple[List[Deal], int]:
        """Keep the biggest discount per id; returns (unique deals, number dropped)."""
        unique: Dict[str, Deal] = {}
        for deal in deals:
            kept = unique.get(deal.id)
            if kept is None or deal.drop_rate > kept.drop_rate:
                unique[deal.id] = deal
        return list(unique.values()), len(deals) - len(unique)


class FeedRefreshJob:
    """One feed refresh cycle: load eligible deals, compose, persist ranks.

    Ranks are written all-or-nothing; if the store fails the previous
    cycle's ranks remain and the error propagates. Re-running is safe.
    """

    def __init__(
        self,
        db: DatabaseManager,
        feed_config: Optional[FeedConfig] = None,
        rng: Optional[RandomSource] = None,
    ):
        self.db = db
        self.feed_config = feed_config or FeedConfig()
        self.composer = FeedComposer(self.feed_config, rng=rng)

    async def run(self) -> RefreshResult:
        started = time.monotonic()
        deals = await self.db.get_eligible_deals(self.feed_config.min_drop_rate)
        logger.info("FeedRefreshJob: loaded %d eligible deals", len(deals))

        composed = self.composer.compose(deals)
        updated = await self.db.apply_feed_orders(composed.ranks.values())

        result = RefreshResult(
            loaded=len(deals),
            updated=updated,
            allocation=composed.allocation,
            category_sizes=composed.category_sizes,
            duration_seconds=time.monotonic() - started,
        )
        logger.info(
            "FeedRefreshJob: ranked %d deals in %.2fs", result.updated, result.duration_seconds
        )
        return result


def _to_float(val: Any) -> Optional[float]:
    if val is None or val == "":
        return None
    if isinstance(val, str):
        val = val.replace(",", "").strip()
    try:
        return float(val)
    except (TypeError, ValueError):
        return None
