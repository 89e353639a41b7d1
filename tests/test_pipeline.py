"""Tests for the ingest orchestrator, the feed refresh job, and the CLI."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List

import pytest
import yaml
from click.testing import CliRunner

from dealfeed.feed import FeedConfig, SeededRandomSource, SourceQuota
from dealfeed.pipeline.cli import cli
from dealfeed.pipeline.orchestrator import FeedRefreshJob, IngestOrchestrator
from dealfeed.storage.db import DatabaseManager
from dealfeed.storage.models import UNRANKED, Deal, Source, compute_drop_rate


# --- Fixtures ---

@pytest.fixture
def tmp_dir(tmp_path):
    """Return a temporary directory with config and data subdirs."""
    config = {
        "sources": [
            {"id": "gmarket", "type": "json_api", "url": "https://example.com/api", "category": "food"},
            {"id": "ssg", "type": "file", "path": str(tmp_path / "ssg.json")},
            {"id": "lotteon", "type": "file", "path": "unused.json", "enabled": False},
        ],
    }
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump(config))

    db_path = tmp_path / "data" / "test.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)

    return {
        "config_path": str(config_path),
        "db_path": str(db_path),
        "tmp_path": tmp_path,
    }


def make_raw_deals(count: int = 5, category: str = None) -> List[Dict[str, Any]]:
    """Create raw deal dicts as a connector would return."""
    return [
        {
            "external_id": f"item-{i}",
            "title": f"Deal {i}",
            "url": f"https://example.com/deal/{i}",
            "category": category,
            "current_price": "7,000",
            "previous_price": 10000,
            "sale_end_date": None,
            "metadata": {"rank": i},
        }
        for i in range(count)
    ]


class MockConnector:
    """Mock connector that returns pre-configured deals."""

    def __init__(self, deals: List[Dict[str, Any]]):
        self._deals = deals

    async def fetch(self, source: Source) -> List[Dict[str, Any]]:
        return self._deals


class FailingConnector:
    """Mock connector that raises an exception."""

    async def fetch(self, source: Source) -> List[Dict[str, Any]]:
        raise ConnectionError("Simulated network failure")


async def seed_deals(db: DatabaseManager, counts: Dict[str, int], category: str = "food") -> List[Deal]:
    deals = [
        Deal(
            id=Deal.make_id(src, str(i)),
            source=src,
            title=f"{src} {i}",
            url=f"https://example.com/{src}/{i}",
            category=category,
            current_price=5000,
            previous_price=10000,
            drop_rate=compute_drop_rate(10000, 5000),
        )
        for src, n in counts.items()
        for i in range(n)
    ]
    await db.upsert_deals(deals)
    return deals


@pytest.fixture
async def make_orchestrator(tmp_dir):
    """Factory for initialized orchestrators over the tmp config; all closed at teardown."""
    created: List[IngestOrchestrator] = []

    async def _make(connector_factory):
        orchestrator = IngestOrchestrator(
            tmp_dir["config_path"], tmp_dir["db_path"], connector_factory=connector_factory
        )
        await orchestrator.initialize()
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        await orchestrator.close()


# --- Orchestrator Tests ---

class TestIngestOrchestrator:
    @pytest.mark.asyncio
    async def test_ingest_all_with_mock_connector(self, make_orchestrator):
        raw = make_raw_deals(5)
        orchestrator = await make_orchestrator(lambda cfg: MockConnector(raw))
        summary = await orchestrator.ingest_all()

        # lotteon is disabled in config
        assert [r.source_id for r in summary.results] == ["gmarket", "ssg"]
        assert summary.total_fetched == 10
        assert summary.total_upserted == 10
        assert summary.total_errors == 0
        assert await orchestrator.db.count_deals("gmarket") == 5

    @pytest.mark.asyncio
    async def test_ingest_single_source(self, make_orchestrator):
        orchestrator = await make_orchestrator(lambda cfg: MockConnector(make_raw_deals(3)))
        summary = await orchestrator.ingest_all(source_ids=["ssg"])
        assert [r.source_id for r in summary.results] == ["ssg"]
        assert summary.total_fetched == 3

    @pytest.mark.asyncio
    async def test_normalized_fields(self, make_orchestrator):
        orchestrator = await make_orchestrator(lambda cfg: MockConnector(make_raw_deals(1)))
        await orchestrator.ingest_all()
        gm = await orchestrator.db.get_deal("gmarket_item-0")
        ssg = await orchestrator.db.get_deal("ssg_item-0")

        assert gm.current_price == 7000
        assert gm.drop_rate == pytest.approx(30.0)
        assert gm.metadata == {"rank": 0}
        assert gm.feed_order == UNRANKED
        # Category falls back to the source config, then to "other"
        assert gm.category == "food"
        assert ssg.category == "other"

    def test_normalize_skips_missing_url_and_hashes_ids(self, tmp_dir):
        orchestrator = IngestOrchestrator(config_path=tmp_dir["config_path"])
        source = Source(id="ssg", config={"id": "ssg", "category": "beauty"})
        deals = orchestrator.normalize_deals(
            [
                {"title": "no url"},
                {"url": "https://example.com/a", "category": "digital",
                 "sale_end_date": "2030-01-01T09:00:00+09:00"},
                {"url": "https://example.com/b", "current_price": "n/a"},
            ],
            source,
        )
        assert len(deals) == 2
        first, second = deals
        assert first.id == Deal.hash_id("ssg", "https://example.com/a")
        assert first.title == "Untitled"
        assert first.category == "digital"
        assert first.drop_rate == 0.0
        assert first.sale_end_date == datetime(2030, 1, 1, 0, 0)
        assert second.category == "beauty"
        assert second.current_price is None

    @pytest.mark.asyncio
    async def test_ingest_handles_errors(self, make_orchestrator):
        orchestrator = await make_orchestrator(lambda cfg: FailingConnector())
        summary = await orchestrator.ingest_all(source_ids=["gmarket"])
        assert summary.total_errors == 1
        assert "Simulated network failure" in summary.results[0].error_message

        source = await orchestrator.db.get_source("gmarket")
        assert source.error_count == 1
        assert source.last_error == "Simulated network failure"

    @pytest.mark.asyncio
    async def test_success_clears_error_count(self, make_orchestrator):
        failing = await make_orchestrator(lambda cfg: FailingConnector())
        await failing.ingest_all(source_ids=["gmarket"])
        await failing.close()

        working = await make_orchestrator(lambda cfg: MockConnector(make_raw_deals(1)))
        await working.ingest_all(source_ids=["gmarket"])
        source = await working.db.get_source("gmarket")
        assert source.error_count == 0
        assert source.last_error is None
        assert source.last_fetch_at is not None

    @pytest.mark.asyncio
    async def test_ingest_deduplicates_within_batch(self, make_orchestrator):
        raw = make_raw_deals(3) + make_raw_deals(2)
        orchestrator = await make_orchestrator(lambda cfg: MockConnector(raw))
        summary = await orchestrator.ingest_all(source_ids=["gmarket"])
        assert summary.total_fetched == 5
        assert summary.total_duplicates == 2
        assert summary.total_upserted == 3

        # Re-ingest refreshes in place
        await orchestrator.ingest_all(source_ids=["gmarket"])
        assert await orchestrator.db.count_deals() == 3

    def test_duplicate_keeps_biggest_discount(self, tmp_dir):
        orchestrator = IngestOrchestrator(config_path=tmp_dir["config_path"])
        source = Source(id="gmarket", config={"id": "gmarket"})
        raw = [
            {"external_id": "1", "url": "https://example.com/1", "current_price": 90, "previous_price": 100},
            {"external_id": "1", "url": "https://example.com/1", "current_price": 50, "previous_price": 100},
            {"external_id": "1", "url": "https://example.com/1", "current_price": 70, "previous_price": 100},
        ]
        deals, dropped = orchestrator._deduplicate(orchestrator.normalize_deals(raw, source))
        assert dropped == 2
        assert len(deals) == 1
        assert deals[0].drop_rate == pytest.approx(50.0)
        assert deals[0].current_price == 50

    def test_normalize_skips_expired_deals(self, tmp_dir, caplog):
        orchestrator = IngestOrchestrator(config_path=tmp_dir["config_path"])
        source = Source(id="gmarket", config={"id": "gmarket"})
        raw = [
            {"external_id": "old", "url": "https://example.com/old", "sale_end_date": "2001-01-01T00:00:00Z"},
            {"external_id": "new", "url": "https://example.com/new", "sale_end_date": "2099-01-01T00:00:00Z"},
            {"external_id": "open", "url": "https://example.com/open"},
        ]
        with caplog.at_level(logging.INFO, logger="dealfeed.pipeline.orchestrator"):
            deals = orchestrator.normalize_deals(raw, source)

        assert [d.id for d in deals] == ["gmarket_new", "gmarket_open"]
        assert "skipped 1 expired deals" in caplog.text

    @pytest.mark.asyncio
    async def test_expired_deals_never_stored(self, make_orchestrator):
        raw = make_raw_deals(3)
        raw[1]["sale_end_date"] = "2001-01-01T00:00:00Z"
        orchestrator = await make_orchestrator(lambda cfg: MockConnector(raw))
        summary = await orchestrator.ingest_all(source_ids=["gmarket"])
        assert summary.total_fetched == 3
        assert summary.total_upserted == 2
        assert await orchestrator.db.get_deal("gmarket_item-1") is None

    @pytest.mark.asyncio
    async def test_ingest_without_connector(self, make_orchestrator):
        """Without a connector factory, sources should be skipped gracefully."""
        orchestrator = await make_orchestrator(None)
        summary = await orchestrator.ingest_all()
        assert summary.total_fetched == 0
        assert summary.total_errors == 0

    @pytest.mark.asyncio
    async def test_unknown_source_filter(self, make_orchestrator):
        orchestrator = await make_orchestrator(lambda cfg: MockConnector([]))
        summary = await orchestrator.ingest_all(source_ids=["nope"])
        assert summary.results == []


# --- Feed Refresh Tests ---

class TestFeedRefreshJob:
    @pytest.mark.asyncio
    async def test_refresh_ranks_every_eligible_deal(self, tmp_dir):
        db = DatabaseManager(tmp_dir["db_path"])
        await db.initialize()
        try:
            deals = await seed_deals(db, {"gmarket": 6, "ssg": 4, "best100": 5})
            job = FeedRefreshJob(db, FeedConfig(), rng=SeededRandomSource(3))
            result = await job.run()

            assert result.loaded == 15
            assert result.updated == 15
            assert result.allocation == {"best100": 5, "gmarket": 6, "ssg": 4}
            assert result.category_sizes == {"food": 15}

            feed = await db.get_feed(limit=100)
            assert [d.feed_order for d in feed] == list(range(15))
            assert {d.id for d in feed} == {d.id for d in deals}
            cat = await db.get_feed(category="food", limit=100)
            assert [d.category_feed_order for d in cat] == list(range(15))
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_ineligible_deals_drop_out(self, tmp_dir):
        db = DatabaseManager(tmp_dir["db_path"])
        await db.initialize()
        try:
            await seed_deals(db, {"gmarket": 3})
            await FeedRefreshJob(db, rng=SeededRandomSource(1)).run()

            cheap = Deal(
                id="ssg_x", source="ssg", title="x", url="https://example.com/x",
                current_price=9900, previous_price=10000, drop_rate=1.0,
            )
            await db.upsert_deals([cheap])
            config = FeedConfig(min_drop_rate=10)
            result = await FeedRefreshJob(db, config, rng=SeededRandomSource(2)).run()

            assert result.loaded == 3
            assert (await db.get_deal("ssg_x")).feed_order == UNRANKED
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_empty_store(self, tmp_dir):
        db = DatabaseManager(tmp_dir["db_path"])
        await db.initialize()
        try:
            result = await FeedRefreshJob(db).run()
            assert result.loaded == 0
            assert result.updated == 0
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_rerun_is_safe(self, tmp_dir):
        db = DatabaseManager(tmp_dir["db_path"])
        await db.initialize()
        try:
            await seed_deals(db, {"gmarket": 4, "ssg": 4})
            config = FeedConfig(quotas={"gmarket": SourceQuota(0.1, 0.5)}, groups=[])
            first = await FeedRefreshJob(db, config, rng=SeededRandomSource(7)).run()
            second = await FeedRefreshJob(db, config, rng=SeededRandomSource(8)).run()
            assert first.updated == second.updated == 8
            assert (await db.get_stats())["ranked_deals"] == 8
        finally:
            await db.close()


# --- CLI Tests ---

class TestCLI:
    def invoke(self, tmp_dir, *args):
        runner = CliRunner()
        return runner.invoke(
            cli,
            ["--db", tmp_dir["db_path"], "--config", tmp_dir["config_path"], *args],
        )

    def test_ingest_requires_target(self, tmp_dir):
        result = self.invoke(tmp_dir, "ingest")
        assert result.exit_code == 1
        assert "Specify --all or --source" in result.output

    def test_refresh_on_empty_store(self, tmp_dir):
        result = self.invoke(tmp_dir, "refresh")
        assert result.exit_code == 0
        assert "No eligible deals" in result.output

    def test_ingest_refresh_feed(self, tmp_dir):
        records = [
            {
                "external_id": str(i),
                "title": f"SSG deal {i}",
                "url": f"https://example.com/ssg/{i}",
                "category": "beauty",
                "current_price": 8000,
                "previous_price": 10000,
            }
            for i in range(4)
        ]
        (tmp_dir["tmp_path"] / "ssg.json").write_text(json.dumps(records), encoding="utf-8")

        result = self.invoke(tmp_dir, "ingest", "--source", "ssg")
        assert result.exit_code == 0, result.output

        result = self.invoke(tmp_dir, "refresh")
        assert result.exit_code == 0, result.output
        assert "Ranked 4 deals" in result.output

        result = self.invoke(tmp_dir, "feed", "--category", "beauty")
        assert result.exit_code == 0
        assert "SSG deal" in result.output

        result = self.invoke(tmp_dir, "status")
        assert result.exit_code == 0
        assert "Deals: 4 (4 ranked)" in result.output

    def test_cleanup(self, tmp_dir):
        result = self.invoke(tmp_dir, "cleanup", "--max-age-hours", "1")
        assert result.exit_code == 0
        assert "Deleted 0 stale and 0 expired deals" in result.output
