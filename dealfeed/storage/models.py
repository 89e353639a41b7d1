"""Data models for the deal feed storage layer."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dateutil.parser import parse as dateparse

from dealfeed.feed.shuffle import DEFAULT_SOURCE

DEFAULT_CATEGORY = "other"
UNRANKED = -1

_UNSAFE_ID_CHARS = re.compile(r"[/.#$\[\]]")


def utcnow() -> datetime:
    """Naive UTC now; every stored timestamp uses this form so ISO strings compare."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def compute_drop_rate(previous_price: Optional[float], current_price: Optional[float]) -> float:
    """Percentage discount from ``previous_price``; 0 when there is no valid reference."""
    if not previous_price or previous_price <= 0 or current_price is None:
        return 0.0
    return (previous_price - current_price) / previous_price * 100


@dataclass
class Source:
    """A configured deal source plus the fetch health tracked for it."""

    id: str
    config: Dict[str, Any]
    enabled: bool = True
    last_fetch_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_count: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> Source:
        """Build from one ``sources:`` entry; ``enabled: false`` keeps it out of ingest."""
        return cls(id=str(cfg["id"]), config=dict(cfg), enabled=bool(cfg.get("enabled", True)))

    def to_row(self) -> tuple:
        fetched = self.last_fetch_at.isoformat() if self.last_fetch_at else None
        return (
            self.id,
            json.dumps(self.config, ensure_ascii=False),
            fetched,
            self.last_error,
            self.error_count,
            1 if self.enabled else 0,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Source:
        return cls(
            id=row["id"],
            config=_parse_json(row["config"]) or {},
            enabled=row.get("enabled", 1) != 0,
            last_fetch_at=parse_timestamp(row.get("last_fetch_at")),
            last_error=row.get("last_error"),
            error_count=row.get("error_count") or 0,
            created_at=parse_timestamp(row.get("created_at")),
        )


@dataclass
class Deal:
    """A single deal listing, tagged with its source and category."""

    id: str
    source: str
    title: str
    url: str
    category: str = DEFAULT_CATEGORY
    current_price: Optional[float] = None
    previous_price: Optional[float] = None
    drop_rate: float = 0.0
    sale_end_date: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    feed_order: int = UNRANKED
    category_feed_order: int = UNRANKED
    updated_at: Optional[datetime] = None

    @staticmethod
    def make_id(source: str, external_id: str) -> str:
        """Document id: ``{source}_{external_id}`` with path-unsafe characters replaced."""
        return _UNSAFE_ID_CHARS.sub("_", f"{source}_{external_id}")

    @staticmethod
    def hash_id(source: str, url: str) -> str:
        """Fallback id for listings without an external id."""
        raw = f"{source}:{url}".encode("utf-8")
        return hashlib.sha256(raw).hexdigest()[:16]

    def to_row(self, updated_at: Optional[datetime] = None) -> tuple:
        """Row tuple for the deals table; ``updated_at`` fills in a missing timestamp."""
        stamp = self.updated_at or updated_at
        return (
            self.id,
            self.source or DEFAULT_SOURCE,
            self.category or DEFAULT_CATEGORY,
            self.title,
            self.url,
            self.current_price,
            self.previous_price,
            self.drop_rate,
            self.sale_end_date.isoformat() if self.sale_end_date else None,
            json.dumps(self.metadata) if self.metadata else None,
            stamp.isoformat() if stamp else None,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Deal:
        return cls(
            id=row["id"],
            source=row.get("source") or DEFAULT_SOURCE,
            category=row.get("category") or DEFAULT_CATEGORY,
            title=row.get("title") or "",
            url=row.get("url") or "",
            current_price=row.get("current_price"),
            previous_price=row.get("previous_price"),
            drop_rate=row.get("drop_rate") or 0.0,
            sale_end_date=parse_timestamp(row.get("sale_end_date")),
            metadata=_parse_json(row.get("metadata")),
            feed_order=_rank(row.get("feed_order")),
            category_feed_order=_rank(row.get("category_feed_order")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )


@dataclass
class IngestResult:
    """Result from ingesting one source."""

    source_id: str
    fetched: int = 0
    upserted: int = 0
    duplicates: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error_message is None


@dataclass
class IngestSummary:
    """Per-source results of one ingest run; totals are derived from them."""

    results: List[IngestResult] = field(default_factory=list)
    failed_tasks: int = 0
    duration_seconds: float = 0.0

    def add(self, result: IngestResult) -> None:
        self.results.append(result)

    def _total(self, attr: str) -> int:
        return sum(getattr(r, attr) for r in self.results)

    @property
    def total_fetched(self) -> int:
        return self._total("fetched")

    @property
    def total_upserted(self) -> int:
        return self._total("upserted")

    @property
    def total_duplicates(self) -> int:
        return self._total("duplicates")

    @property
    def total_errors(self) -> int:
        return self._total("errors") + self.failed_tasks


@dataclass
class RefreshResult:
    """Outcome of one feed refresh cycle."""

    loaded: int = 0
    updated: int = 0
    allocation: Dict[str, int] = field(default_factory=dict)
    category_sizes: Dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0


# --- Helpers ---

def _rank(val: Any) -> int:
    return UNRANKED if val is None else int(val)


def parse_timestamp(val: Any) -> Optional[datetime]:
    """Datetime from a stored or upstream value; unparseable input → None."""
    if isinstance(val, datetime):
        return val
    if not val:
        return None
    try:
        return dateparse(str(val))
    except (ValueError, OverflowError):
        return None


def _parse_json(val: Any) -> Optional[Dict[str, Any]]:
    if val is None or isinstance(val, dict):
        return val
    try:
        parsed = json.loads(val)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None
