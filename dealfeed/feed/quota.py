"""Quota enforcement: per-source share limits, source-group limits, round-robin interleave."""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Generic, List, Mapping, Optional, Sequence, Tuple, TypeVar

from dealfeed.feed.rng import RandomSource, SystemRandomSource
from dealfeed.feed.shuffle import group_by_source, shuffle_groups, source_of

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class SourceQuota:
    """Share of the feed a single source may occupy (fractions of the total)."""

    min_ratio: float = 0.0
    max_ratio: float = 1.0


@dataclass(frozen=True)
class SourceGroup:
    """A named family of sources constrained in aggregate."""

    name: str
    sources: Tuple[str, ...]
    min_total_ratio: Optional[float] = None
    max_total_ratio: Optional[float] = None

    def __contains__(self, source: str) -> bool:
        return source in self.sources


@dataclass
class FeedPlan(Generic[T]):
    """Interleaved items plus the per-source counts that produced them."""

    items: List[T] = field(default_factory=list)
    allocation: Dict[str, int] = field(default_factory=dict)


def ceil_share(total: int, ratio: float) -> int:
    # round() absorbs float noise such as 100 * 0.07 == 7.000000000000001
    return max(0, math.ceil(round(total * ratio, 9)))


def floor_share(total: int, ratio: float) -> int:
    return max(0, math.floor(round(total * ratio, 9)))


class QuotaAllocator:
    """Pick how many items each source contributes, then interleave them.

    Minimum guarantees (per source, then per floor group) are reserved
    first; the remaining slots go to the sources with the most items left,
    within each source's max share and each ceiling group's cap. Slots still
    open after that are filled without any ratio limit.
    """

    def __init__(
        self,
        quotas: Optional[Mapping[str, SourceQuota]] = None,
        groups: Sequence[SourceGroup] = (),
        rng: Optional[RandomSource] = None,
        key: Callable[[T], str] = source_of,
    ) -> None:
        self.quotas: Dict[str, SourceQuota] = dict(quotas or {})
        self.groups: List[SourceGroup] = list(groups)
        self.rng = rng or SystemRandomSource()
        self.key = key

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def arrange(self, items: Sequence[T]) -> List[T]:
        """Return the quota-balanced, round-robin ordering of ``items``."""
        return self.plan(items).items

    def plan(self, items: Sequence[T]) -> FeedPlan[T]:
        """Group, shuffle, allocate, select and interleave in one go."""
        total = len(items)
        if total == 0:
            return FeedPlan()

        pools = shuffle_groups(group_by_source(items, self.key), self.rng)
        available = {src: len(pool) for src, pool in pools.items()}
        allocation = self.allocate(available, total)

        selected = {
            src: pools[src][:count]
            for src, count in allocation.items()
            if count > 0
        }
        ordered = self.interleave(selected)

        logger.info(
            "QuotaAllocator: %d items from %d sources → %d placed",
            total,
            len(pools),
            len(ordered),
        )
        return FeedPlan(items=ordered, allocation=allocation)

    def allocate(self, available: Mapping[str, int], total: int) -> Dict[str, int]:
        """Compute ``source → count`` for a pool with the given availability.

        ``available`` iteration order is the tie-break order for every pass.
        """
        if total <= 0:
            return {src: 0 for src in available}

        allocation = self._reserve_minimums(available, total)
        self._meet_group_floors(allocation, available, total)
        self._log_conflicts(allocation, total)

        free = total - sum(allocation.values())
        if free > 0:
            free = self._fill_within_caps(allocation, available, total, free)
        if free > 0:
            free = self._fill_residual(allocation, available, free)

        logger.debug("QuotaAllocator: allocation %s (unfilled=%d)", allocation, free)
        return allocation

    def interleave(self, selected: Mapping[str, Sequence[T]]) -> List[T]:
        """Round-robin merge: fullest queue first, never the same source twice in a row.

        The only exception is a tail where a single source is left.
        """
        queues: Dict[str, Deque[T]] = {
            src: deque(items) for src, items in selected.items() if items
        }
        result: List[T] = []
        last: Optional[str] = None

        while queues:
            candidates = [src for src in queues if src != last]
            if candidates:
                # max() keeps the first of equally long queues
                pick = max(candidates, key=lambda s: len(queues[s]))
            else:
                pick = next(iter(queues))

            queue = queues[pick]
            result.append(queue.popleft())
            last = pick
            if not queue:
                del queues[pick]

        return result

    # ------------------------------------------------------------------
    # Allocation passes
    # ------------------------------------------------------------------

    def _reserve_minimums(
        self, available: Mapping[str, int], total: int
    ) -> Dict[str, int]:
        allocation: Dict[str, int] = {}
        for src, avail in available.items():
            quota = self.quotas.get(src)
            if quota is None:
                allocation[src] = 0
            else:
                allocation[src] = min(ceil_share(total, quota.min_ratio), avail)
        return allocation

    def _meet_group_floors(
        self,
        allocation: Dict[str, int],
        available: Mapping[str, int],
        total: int,
    ) -> None:
        for group in self.groups:
            if group.min_total_ratio is None:
                continue
            floor = ceil_share(total, group.min_total_ratio)
            allocated = sum(allocation.get(src, 0) for src in group.sources)
            remaining = floor - allocated
            for src in group.sources:
                if remaining <= 0:
                    break
                if src not in available:
                    continue
                can_add = min(remaining, available[src] - allocation[src])
                if can_add > 0:
                    allocation[src] += can_add
                    remaining -= can_add
            if remaining > 0:
                logger.info(
                    "QuotaAllocator: group %s floor %d short by %d (not enough items)",
                    group.name,
                    floor,
                    remaining,
                )

    def _fill_within_caps(
        self,
        allocation: Dict[str, int],
        available: Mapping[str, int],
        total: int,
        free: int,
    ) -> int:
        ceilings = [g for g in self.groups if g.max_total_ratio is not None]
        group_used = {
            g.name: sum(allocation.get(src, 0) for src in g.sources) for g in ceilings
        }
        group_cap = {g.name: floor_share(total, g.max_total_ratio) for g in ceilings}

        for src in self._by_remaining(allocation, available):
            if free <= 0:
                break
            current = allocation[src]
            quota = self.quotas.get(src)
            cap = floor_share(total, quota.max_ratio) if quota else total

            can_add = min(free, available[src] - current, cap - current)
            member_of = [g for g in ceilings if src in g]
            for g in member_of:
                can_add = min(can_add, group_cap[g.name] - group_used[g.name])

            if can_add > 0:
                allocation[src] = current + can_add
                free -= can_add
                for g in member_of:
                    group_used[g.name] += can_add
        return free

    def _fill_residual(
        self,
        allocation: Dict[str, int],
        available: Mapping[str, int],
        free: int,
    ) -> int:
        for src in self._by_remaining(allocation, available):
            if free <= 0:
                break
            can_add = min(free, available[src] - allocation[src])
            allocation[src] += can_add
            free -= can_add
        return free

    @staticmethod
    def _by_remaining(
        allocation: Mapping[str, int], available: Mapping[str, int]
    ) -> List[str]:
        """Sources with items left, most remaining first (stable on ties)."""
        remaining = [src for src in available if available[src] > allocation[src]]
        return sorted(remaining, key=lambda s: available[s] - allocation[s], reverse=True)

    def _log_conflicts(self, allocation: Mapping[str, int], total: int) -> None:
        # Minimum guarantees win over max caps; surface it when it happens
        for src, count in allocation.items():
            quota = self.quotas.get(src)
            if quota is None:
                continue
            cap = floor_share(total, quota.max_ratio)
            if count > cap:
                logger.info(
                    "QuotaAllocator: %s minimum %d exceeds its cap %d (minimum kept)",
                    src,
                    count,
                    cap,
                )
