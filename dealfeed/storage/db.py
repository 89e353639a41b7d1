"""Async SQLite deal store with WAL mode and chunked, all-or-nothing rank writes."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set

import aiosqlite

from dealfeed.feed.composer import FeedRank
from dealfeed.storage.migrations import apply_migrations
from dealfeed.storage.models import Deal, Source, utcnow

logger = logging.getLogger(__name__)

# Matches the per-request write limit of the production document store
DEFAULT_BATCH_SIZE = 500
DEFAULT_FEED_LIMIT = 50


class DatabaseManager:
    """Deal store: sources, deals and the two persisted feed ranks.

    Usage:
        db = DatabaseManager("data/dealfeed.db")
        await db.initialize()
        feed = await db.get_feed(limit=20)
        await db.close()
    """

    PRAGMAS = (
        "PRAGMA journal_mode=WAL",
        "PRAGMA synchronous=NORMAL",
        "PRAGMA temp_store=MEMORY",
    )

    def __init__(
        self,
        db_path: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        cache_mb: int = 64,
    ):
        self.db_path = db_path
        self.batch_size = max(1, batch_size)
        self.cache_mb = cache_mb
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Migrate the schema, then open the shared connection."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        version = apply_migrations(self.db_path)

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        for pragma in self.PRAGMAS + (f"PRAGMA cache_size=-{self.cache_mb * 1000}",):
            await self._conn.execute(pragma)

        logger.info("Deal store ready: %s (schema v%d)", self.db_path, version)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize writers and commit everything in the block, or nothing."""
        assert self._conn is not None, "DatabaseManager.initialize() not called"
        async with self._write_lock:
            await self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                await self._conn.commit()
            except Exception:
                await self._conn.rollback()
                raise

    async def _fetch_all(self, sql: str, params: tuple = ()) -> List[aiosqlite.Row]:
        assert self._conn is not None, "DatabaseManager.initialize() not called"
        cursor = await self._conn.execute(sql, params)
        return list(await cursor.fetchall())

    async def _scalar(self, sql: str, params: tuple = ()) -> Any:
        rows = await self._fetch_all(sql, params)
        return rows[0][0] if rows else None

    # --- Sources ---

    async def upsert_source(self, source: Source) -> None:
        """Register a configured source; an existing row keeps its status and enabled flag."""
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT INTO sources (id, config, last_fetch_at, last_error, error_count, enabled)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET config=excluded.config""",
                source.to_row(),
            )

    async def get_source(self, source_id: str) -> Optional[Source]:
        rows = await self._fetch_all("SELECT * FROM sources WHERE id = ?", (source_id,))
        return Source.from_row(dict(rows[0])) if rows else None

    async def get_sources(self, enabled_only: bool = False) -> List[Source]:
        where = " WHERE enabled = 1" if enabled_only else ""
        rows = await self._fetch_all(f"SELECT * FROM sources{where} ORDER BY id")
        return [Source.from_row(dict(r)) for r in rows]

    async def get_disabled_source_ids(self) -> Set[str]:
        rows = await self._fetch_all("SELECT id FROM sources WHERE enabled = 0")
        return {r["id"] for r in rows}

    async def update_source_status(
        self,
        source_id: str,
        last_fetch_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
    ) -> None:
        """Record a fetch outcome; an error bumps error_count, success resets it."""
        fetched = last_fetch_at and last_fetch_at.isoformat()
        async with self._transaction() as conn:
            if last_error:
                await conn.execute(
                    """UPDATE sources
                       SET last_error = ?, error_count = error_count + 1,
                           last_fetch_at = COALESCE(?, last_fetch_at)
                       WHERE id = ?""",
                    (last_error, fetched, source_id),
                )
            else:
                await conn.execute(
                    """UPDATE sources
                       SET last_fetch_at = ?, last_error = NULL, error_count = 0
                       WHERE id = ?""",
                    (fetched, source_id),
                )

    # --- Deals ---

    async def upsert_deals(self, deals: List[Deal]) -> int:
        """Insert or refresh deals in batches. Stored ranks are left untouched."""
        if not deals:
            return 0

        now = utcnow()
        written = 0
        async with self._transaction() as conn:
            for i in range(0, len(deals), self.batch_size):
                batch = deals[i : i + self.batch_size]
                await conn.executemany(
                    """INSERT INTO deals
                       (id, source, category, title, url, current_price, previous_price,
                        drop_rate, sale_end_date, metadata, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(id) DO UPDATE SET
                           source=excluded.source,
                           category=excluded.category,
                           title=excluded.title,
                           url=excluded.url,
                           current_price=excluded.current_price,
                           previous_price=excluded.previous_price,
                           drop_rate=excluded.drop_rate,
                           sale_end_date=excluded.sale_end_date,
                           metadata=excluded.metadata,
                           updated_at=excluded.updated_at""",
                    [deal.to_row(updated_at=now) for deal in batch],
                )
                written += len(batch)

        logger.info("Upserted %d deals", written)
        return written

    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        rows = await self._fetch_all("SELECT * FROM deals WHERE id = ?", (deal_id,))
        return Deal.from_row(dict(rows[0])) if rows else None

    async def get_eligible_deals(self, min_drop_rate: float = 0.0) -> List[Deal]:
        """Working set for a feed refresh: every deal discounted at least ``min_drop_rate`` percent."""
        rows = await self._fetch_all(
            "SELECT * FROM deals WHERE drop_rate >= ? ORDER BY id", (min_drop_rate,)
        )
        return [Deal.from_row(dict(r)) for r in rows]

    async def count_deals(self, source: Optional[str] = None) -> int:
        if source:
            count = await self._scalar("SELECT COUNT(*) FROM deals WHERE source = ?", (source,))
        else:
            count = await self._scalar("SELECT COUNT(*) FROM deals")
        return count or 0

    # --- Feed ranks ---

    async def apply_feed_orders(
        self,
        ranks: Iterable[FeedRank],
        reset_unranked: bool = True,
    ) -> int:
        """Write both rank columns for every deal in one transaction.

        Rows are sent in ``batch_size`` chunks; any failure rolls back the
        whole set so the previous ranks stay in place. With
        ``reset_unranked`` deals missing from ``ranks`` drop out of the feed.
        """
        rows = [rank.to_row() for rank in ranks]
        if not rows and not reset_unranked:
            return 0

        updated = 0
        async with self._transaction() as conn:
            if reset_unranked:
                await conn.execute(
                    "UPDATE deals SET feed_order = -1, category_feed_order = -1"
                )
            for i in range(0, len(rows), self.batch_size):
                chunk = rows[i : i + self.batch_size]
                cursor = await conn.executemany(
                    """UPDATE deals SET feed_order = ?, category_feed_order = ?
                       WHERE id = ?""",
                    chunk,
                )
                updated += cursor.rowcount

        logger.info("Applied feed order to %d/%d deals", updated, len(rows))
        return updated

    async def get_feed(
        self,
        category: Optional[str] = None,
        limit: int = DEFAULT_FEED_LIMIT,
        offset: int = 0,
    ) -> List[Deal]:
        """A page of ranked deals: global order, or one category's order when ``category`` is set."""
        if category:
            sql = (
                "SELECT * FROM deals WHERE category = ? AND category_feed_order >= 0 "
                "ORDER BY category_feed_order LIMIT ? OFFSET ?"
            )
            params: tuple = (category, limit, offset)
        else:
            sql = "SELECT * FROM deals WHERE feed_order >= 0 ORDER BY feed_order LIMIT ? OFFSET ?"
            params = (limit, offset)
        return [Deal.from_row(dict(r)) for r in await self._fetch_all(sql, params)]

    # --- Maintenance ---

    async def cleanup_old_deals(
        self,
        max_age_hours: int,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Delete deals not refreshed within ``max_age_hours`` and deals whose sale ended."""
        now = now or utcnow()
        cutoff = (now - timedelta(hours=max_age_hours)).isoformat()

        async with self._transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM deals WHERE updated_at IS NOT NULL AND updated_at < ?",
                (cutoff,),
            )
            stale = cursor.rowcount
            cursor = await conn.execute(
                """DELETE FROM deals
                   WHERE sale_end_date IS NOT NULL AND sale_end_date < ?""",
                (now.isoformat(),),
            )
            expired = cursor.rowcount

        if stale or expired:
            logger.info("Cleanup: deleted %d stale and %d expired deals", stale, expired)
        return {"stale": stale, "expired": expired}

    async def vacuum(self) -> None:
        """Reclaim space left by cleanup deletes."""
        assert self._conn is not None, "DatabaseManager.initialize() not called"
        async with self._write_lock:
            await self._conn.execute("VACUUM")

    async def get_stats(self) -> Dict[str, Any]:
        """Counts for the ``status`` command."""
        stats: Dict[str, Any] = {
            "total_deals": await self._scalar("SELECT COUNT(*) FROM deals") or 0,
            "ranked_deals": await self._scalar(
                "SELECT COUNT(*) FROM deals WHERE feed_order >= 0"
            ) or 0,
            "total_sources": await self._scalar("SELECT COUNT(*) FROM sources") or 0,
        }
        for column in ("category", "source"):
            rows = await self._fetch_all(
                f"SELECT {column} AS tag, COUNT(*) AS n FROM deals GROUP BY {column} ORDER BY n DESC"
            )
            stats[f"deals_by_{column}"] = {r["tag"]: r["n"] for r in rows}

        stats["db_size_bytes"] = await self._scalar(
            "SELECT page_count * page_size FROM pragma_page_count(), pragma_page_size()"
        ) or 0
        return stats
