"""CLI interface for the deal feed pipeline.

Usage:
    dealfeed ingest --all
    dealfeed ingest --source gmarket
    dealfeed refresh
    dealfeed feed --category digital --limit 20
    dealfeed cleanup
    dealfeed status
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from dealfeed.config import DEFAULT_CONFIG_PATH, DEFAULT_DB_PATH, DEFAULT_MAX_AGE_HOURS, load_config
from dealfeed.connectors.factory import build_connector
from dealfeed.feed.config import FeedConfig
from dealfeed.pipeline.orchestrator import FeedRefreshJob, IngestOrchestrator
from dealfeed.storage.db import DatabaseManager
from dealfeed.storage.models import IngestSummary, Source

console = Console()


def run_async(coro):
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


@click.group()
@click.option("--db", default=DEFAULT_DB_PATH, help="Database path")
@click.option("--config", default=DEFAULT_CONFIG_PATH, help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db: str, config: str, verbose: bool):
    """Deal feed pipeline CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db
    ctx.obj["config_path"] = config


@cli.command()
@click.option("--all", "all_sources", is_flag=True, help="Ingest every enabled source")
@click.option("--source", "source_id", help="Ingest one source by id")
@click.pass_context
def ingest(ctx, all_sources: bool, source_id: Optional[str]):
    """Fetch deals from the configured sources into the store."""
    if not (all_sources or source_id):
        console.print("[red]Error:[/red] Specify --all or --source <id>")
        sys.exit(1)

    async def _run():
        orchestrator = IngestOrchestrator(
            ctx.obj["config_path"], ctx.obj["db_path"], connector_factory=build_connector
        )
        await orchestrator.initialize()
        try:
            with console.status("[bold green]Fetching deals..."):
                summary = await orchestrator.ingest_all(
                    source_ids=None if all_sources else [source_id]
                )
        finally:
            await orchestrator.close()
        console.print(_ingest_table(summary))

    run_async(_run())


def _ingest_table(summary: IngestSummary) -> Table:
    table = Table(title="Deals ingested")
    for name, style in (
        ("Source", "cyan"), ("Fetched", None), ("Stored", "green"),
        ("Dup ids", "yellow"), ("Error", "red"), ("Secs", None),
    ):
        table.add_column(name, style=style, justify="left" if name in ("Source", "Error") else "right")

    for r in summary.results:
        table.add_row(
            r.source_id, str(r.fetched), str(r.upserted), str(r.duplicates),
            (r.error_message or "")[:40], f"{r.duration_seconds:.1f}",
        )
    table.add_section()
    table.add_row(
        "[bold]all", str(summary.total_fetched), str(summary.total_upserted),
        str(summary.total_duplicates), f"{summary.total_errors} failed",
        f"{summary.duration_seconds:.1f}",
    )
    return table


@cli.command()
@click.pass_context
def refresh(ctx):
    """Recompute the global and per-category rank of every eligible deal."""

    async def _run():
        feed_config = FeedConfig.from_dict(load_config(ctx.obj["config_path"]))
        db = DatabaseManager(ctx.obj["db_path"], batch_size=feed_config.batch_limit)
        await db.initialize()
        try:
            with console.status("[bold green]Composing feed..."):
                result = await FeedRefreshJob(db, feed_config).run()

            if not result.loaded:
                console.print("[yellow]No eligible deals. Run ingest first.[/yellow]")
                return

            table = Table(title="Source Allocation")
            table.add_column("Source", style="cyan")
            table.add_column("Placed", justify="right")
            table.add_column("Share", justify="right")
            for src, count in sorted(result.allocation.items(), key=lambda kv: -kv[1]):
                table.add_row(src, str(count), f"{count / result.loaded:.1%}")
            console.print(table)
            console.print(
                f"[green]Ranked {result.updated} deals across "
                f"{len(result.category_sizes)} categories in {result.duration_seconds:.2f}s.[/green]"
            )
        finally:
            await db.close()

    try:
        run_async(_run())
    except Exception as e:
        console.print(f"[red]Refresh failed; previous ranks kept:[/red] {e}")
        sys.exit(1)


@cli.command()
@click.option("--category", "-c", help="Show one category's order")
@click.option("--limit", "-n", default=20, help="Max results")
@click.pass_context
def feed(ctx, category: Optional[str], limit: int):
    """Print the stored feed in rank order."""

    async def _run():
        db = DatabaseManager(ctx.obj["db_path"])
        await db.initialize()
        try:
            deals = await db.get_feed(category=category, limit=limit)
            if not deals:
                console.print("[yellow]Feed is empty. Run refresh first.[/yellow]")
                return

            table = Table(title=f"Feed ({category})" if category else "Feed")
            table.add_column("#", style="dim", width=5)
            table.add_column("Source", style="cyan", width=14)
            table.add_column("Category", width=12)
            table.add_column("Title", max_width=60)
            table.add_column("Drop", justify="right", width=6)

            for deal in deals:
                rank = deal.category_feed_order if category else deal.feed_order
                table.add_row(
                    str(rank),
                    deal.source,
                    deal.category,
                    deal.title[:60],
                    f"{deal.drop_rate:.0f}%",
                )
            console.print(table)
        finally:
            await db.close()

    run_async(_run())


@cli.command()
@click.option("--max-age-hours", type=int, default=None, help="Retention window (default from config)")
@click.pass_context
def cleanup(ctx, max_age_hours: Optional[int]):
    """Delete stale deals and deals whose sale has ended."""

    async def _run():
        config = load_config(ctx.obj["config_path"])
        hours = max_age_hours or (config.get("retention") or {}).get(
            "max_age_hours", DEFAULT_MAX_AGE_HOURS
        )
        db = DatabaseManager(ctx.obj["db_path"])
        await db.initialize()
        try:
            deleted = await db.cleanup_old_deals(max_age_hours=int(hours))
            console.print(
                f"[green]Deleted {deleted['stale']} stale and {deleted['expired']} expired deals.[/green]"
            )
        finally:
            await db.close()

    run_async(_run())


@cli.command()
@click.pass_context
def status(ctx):
    """Show store counts and per-source fetch health."""

    async def _run():
        db = DatabaseManager(ctx.obj["db_path"])
        await db.initialize()
        try:
            stats = await db.get_stats()
            sources = await db.get_sources()
        finally:
            await db.close()

        console.print(f"\n[bold]{ctx.obj['db_path']}[/bold] ({stats['db_size_bytes'] / 1024:.1f} KB)")
        console.print(f"  Deals: {stats['total_deals']} ({stats['ranked_deals']} ranked)")
        console.print(f"  Sources: {stats['total_sources']}")
        for label, counts in (
            ("By source", stats["deals_by_source"]),
            ("By category", stats["deals_by_category"]),
        ):
            if counts:
                console.print(f"  {label}: " + ", ".join(f"{k}={v}" for k, v in counts.items()))

        if sources:
            console.print(_source_table(sources))

    run_async(_run())


def _source_table(sources: List[Source]) -> Table:
    table = Table(title="Sources")
    table.add_column("Source", style="cyan")
    table.add_column("State")
    table.add_column("Fetched (UTC)")
    table.add_column("Failures", justify="right")
    table.add_column("Last error", max_width=50)
    for s in sources:
        if not s.enabled:
            state = "[dim]disabled"
        elif s.error_count:
            state = "[red]failing"
        else:
            state = "[green]ok"
        fetched = f"{s.last_fetch_at:%m-%d %H:%M}" if s.last_fetch_at else "-"
        table.add_row(s.id, state, fetched, str(s.error_count), s.last_error or "")
    return table


def main():
    cli()


if __name__ == "__main__":
    main()
