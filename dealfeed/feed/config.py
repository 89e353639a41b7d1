"""Typed feed quota table built from the ``feed`` config section."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple

from dealfeed.feed.quota import SourceGroup, SourceQuota

logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 500

# Production table: Naver-owned sources capped at half the feed,
# external marketplaces floored at 30%.
DEFAULT_QUOTAS: Dict[str, SourceQuota] = {
    "best100": SourceQuota(min_ratio=0.05, max_ratio=0.20),
    "todayDeal": SourceQuota(min_ratio=0.03, max_ratio=0.12),
    "shoppingLive": SourceQuota(min_ratio=0.02, max_ratio=0.08),
    "naverPromo": SourceQuota(min_ratio=0.02, max_ratio=0.10),
    "11st": SourceQuota(min_ratio=0.06, max_ratio=0.12),
    "gmarket": SourceQuota(min_ratio=0.06, max_ratio=0.12),
    "auction": SourceQuota(min_ratio=0.03, max_ratio=0.08),
    "lotteon": SourceQuota(min_ratio=0.04, max_ratio=0.10),
    "ssg": SourceQuota(min_ratio=0.04, max_ratio=0.10),
}

DEFAULT_GROUPS: Tuple[SourceGroup, ...] = (
    SourceGroup(
        name="naver",
        sources=("best100", "todayDeal", "shoppingLive", "naverPromo"),
        max_total_ratio=0.50,
    ),
    SourceGroup(
        name="external",
        sources=("11st", "gmarket", "auction", "lotteon", "ssg"),
        min_total_ratio=0.30,
    ),
)


def _ratio(value: Any, default: float) -> float:
    """Clamp a configured ratio into [0, 1]; unparseable values fall back."""
    if value is None:
        return default
    try:
        ratio = float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid ratio %r; using %.2f", value, default)
        return default
    return max(0.0, min(1.0, ratio))


@dataclass
class FeedConfig:
    """Everything the feed refresh needs from the ``feed`` config section."""

    quotas: Dict[str, SourceQuota] = field(default_factory=lambda: dict(DEFAULT_QUOTAS))
    groups: List[SourceGroup] = field(default_factory=lambda: list(DEFAULT_GROUPS))
    min_drop_rate: float = 0.0
    batch_limit: int = DEFAULT_BATCH_LIMIT

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> FeedConfig:
        """Build from the full config dict (reads its ``feed`` section)."""
        feed = config.get("feed") or {}
        result = cls()

        if "quotas" in feed:
            result.quotas = parse_quotas(feed.get("quotas") or {})
        if "groups" in feed:
            result.groups = parse_groups(feed.get("groups") or [])

        result.min_drop_rate = float(feed.get("min_drop_rate", result.min_drop_rate))
        result.batch_limit = max(1, int(feed.get("batch_limit", result.batch_limit)))
        return result


def parse_quotas(raw: Mapping[str, Any]) -> Dict[str, SourceQuota]:
    quotas: Dict[str, SourceQuota] = {}
    for src, entry in raw.items():
        entry = entry or {}
        quota = SourceQuota(
            min_ratio=_ratio(entry.get("min_ratio"), 0.0),
            max_ratio=_ratio(entry.get("max_ratio"), 1.0),
        )
        if quota.min_ratio > quota.max_ratio:
            logger.warning(
                "Quota for %s has min_ratio %.2f > max_ratio %.2f; minimum wins",
                src,
                quota.min_ratio,
                quota.max_ratio,
            )
        quotas[str(src)] = quota
    return quotas


def parse_groups(raw: List[Mapping[str, Any]]) -> List[SourceGroup]:
    groups: List[SourceGroup] = []
    for entry in raw:
        min_total = entry.get("min_total_ratio")
        max_total = entry.get("max_total_ratio")
        groups.append(
            SourceGroup(
                name=str(entry.get("name", f"group{len(groups)}")),
                sources=tuple(str(s) for s in entry.get("sources") or []),
                min_total_ratio=None if min_total is None else _ratio(min_total, 0.0),
                max_total_ratio=None if max_total is None else _ratio(max_total, 1.0),
            )
        )
    return groups
