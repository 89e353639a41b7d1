"""Schema migrations for the deal store, tracked in ``schema_version``."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

logger = logging.getLogger(__name__)

SCHEMA_SQL = Path(__file__).with_name("schema.sql")


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: Sequence[str]


def migrations() -> List[Migration]:
    """All known migrations, oldest first."""
    return [
        Migration(1, "sources and deals tables", [SCHEMA_SQL.read_text(encoding="utf-8")]),
        Migration(
            2,
            "feed_order and category_feed_order rank columns",
            [
                "ALTER TABLE deals ADD COLUMN feed_order INTEGER NOT NULL DEFAULT -1;",
                "ALTER TABLE deals ADD COLUMN category_feed_order INTEGER NOT NULL DEFAULT -1;",
                "CREATE INDEX IF NOT EXISTS idx_deals_feed_order ON deals(feed_order);",
                "CREATE INDEX IF NOT EXISTS idx_deals_category_order "
                "ON deals(category, category_feed_order);",
            ],
        ),
    ]


def get_current_version(conn: sqlite3.Connection) -> int:
    """Highest applied version; 0 for a fresh file."""
    try:
        (version,) = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    except sqlite3.OperationalError:
        return 0
    return version or 0


def apply_migrations(db_path: str) -> int:
    """Bring ``db_path`` up to the latest schema and return its version.

    Each migration commits on its own, so a failure leaves the file at the
    last good version.
    """
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        current = get_current_version(conn)
        pending = [m for m in migrations() if m.version > current]

        for migration in pending:
            logger.info("Migrating schema to v%d: %s", migration.version, migration.description)
            try:
                for sql in migration.statements:
                    conn.executescript(sql)
                conn.execute(
                    "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                    (migration.version, migration.description),
                )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                logger.exception("Migration v%d failed", migration.version)
                raise

        version = get_current_version(conn)
    finally:
        conn.close()

    if pending:
        logger.info("Schema now at v%d (%d migration(s) applied)", version, len(pending))
    return version


def reset_database(db_path: str) -> None:
    """Drop every table and rebuild the schema. All deals and ranks are lost."""
    conn = sqlite3.connect(db_path)
    try:
        names = [
            name
            for (name,) in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
            )
        ]
        for name in names:
            conn.execute(f'DROP TABLE IF EXISTS "{name}"')
        conn.commit()
    finally:
        conn.close()
    logger.warning("Dropped %d tables in %s", len(names), db_path)

    apply_migrations(db_path)
