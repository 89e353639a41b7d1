"""Feed composer: quota-balanced global order plus per-category orders."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from dealfeed.feed.config import FeedConfig
from dealfeed.feed.quota import QuotaAllocator
from dealfeed.feed.rng import RandomSource, SystemRandomSource
from dealfeed.feed.shuffle import balanced_shuffle

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "other"


def id_of(item: Any) -> str:
    if isinstance(item, dict):
        return str(item["id"])
    return str(item.id)


def category_of(item: Any) -> str:
    if isinstance(item, dict):
        cat = item.get("category")
    else:
        cat = getattr(item, "category", None)
    return cat or DEFAULT_CATEGORY


@dataclass
class FeedRank:
    """Both rank integers for one deal (lower = earlier)."""

    item_id: str
    feed_order: int
    category_feed_order: int

    def to_row(self) -> tuple:
        return (self.feed_order, self.category_feed_order, self.item_id)


@dataclass
class ComposedFeed:
    """Output of one composition pass."""

    ranks: Dict[str, FeedRank] = field(default_factory=dict)
    allocation: Dict[str, int] = field(default_factory=dict)
    category_sizes: Dict[str, int] = field(default_factory=dict)

    @property
    def total_items(self) -> int:
        return len(self.ranks)

    def global_ids(self) -> List[str]:
        """Item ids in feed order."""
        return sorted(self.ranks, key=lambda i: self.ranks[i].feed_order)


class FeedComposer:
    """Assign a global rank and a category rank to every deal.

    The two passes are independent: the global order comes from the quota
    allocator over the whole pool, each category order from a plain
    balanced shuffle over that category's deals.
    """

    def __init__(
        self,
        config: Optional[FeedConfig] = None,
        rng: Optional[RandomSource] = None,
    ) -> None:
        self.config = config or FeedConfig()
        self.rng = rng or SystemRandomSource()
        self.allocator = QuotaAllocator(
            quotas=self.config.quotas,
            groups=self.config.groups,
            rng=self.rng,
        )

    def compose(self, items: Sequence[Any]) -> ComposedFeed:
        """Rank ``items`` (deal objects or dicts with ``id``/``source``/``category``)."""
        if not items:
            return ComposedFeed()

        plan = self.allocator.plan(items)
        global_order = {id_of(item): idx for idx, item in enumerate(plan.items)}

        by_category: Dict[str, List[Any]] = {}
        for item in items:
            by_category.setdefault(category_of(item), []).append(item)

        category_order: Dict[str, int] = {}
        for cat_items in by_category.values():
            for idx, item in enumerate(balanced_shuffle(cat_items, self.rng)):
                category_order[id_of(item)] = idx

        ranks = {
            item_id: FeedRank(
                item_id=item_id,
                feed_order=order,
                category_feed_order=category_order[item_id],
            )
            for item_id, order in global_order.items()
        }

        logger.info(
            "FeedComposer: ranked %d items (%d categories)",
            len(ranks),
            len(by_category),
        )
        return ComposedFeed(
            ranks=ranks,
            allocation=plan.allocation,
            category_sizes={cat: len(v) for cat, v in by_category.items()},
        )
