"""Randomized partition shuffle: per-source Fisher-Yates plus proportional spread."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import numpy as np

from dealfeed.feed.rng import RandomSource, SystemRandomSource, rand_index

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SOURCE = "other"


def source_of(item: Any) -> str:
    """Source tag of a deal-like object or mapping; blank or missing → ``"other"``."""
    if isinstance(item, dict):
        src = item.get("source")
    else:
        src = getattr(item, "source", None)
    return src or DEFAULT_SOURCE


def fisher_yates_shuffle(items: Sequence[T], rng: RandomSource) -> List[T]:
    """Return a uniformly shuffled copy of ``items``."""
    out = list(items)
    for i in range(len(out) - 1, 0, -1):
        j = rand_index(rng, i + 1)
        out[i], out[j] = out[j], out[i]
    return out


def group_by_source(
    items: Sequence[T],
    key: Callable[[T], str] = source_of,
) -> Dict[str, List[T]]:
    """Partition items by source tag, keeping first-seen source order."""
    groups: Dict[str, List[T]] = {}
    for item in items:
        groups.setdefault(key(item), []).append(item)
    return groups


def shuffle_groups(
    groups: Dict[str, List[T]], rng: RandomSource
) -> Dict[str, List[T]]:
    """Shuffle every group independently (new lists, same keys)."""
    return {src: fisher_yates_shuffle(group, rng) for src, group in groups.items()}


def balanced_shuffle(
    items: Sequence[T],
    rng: Optional[RandomSource] = None,
    key: Callable[[T], str] = source_of,
) -> List[T]:
    """Shuffle items so each source is spread evenly across the whole output.

    A source holding ``k`` of ``N`` items lands near every ``N/k``-th slot;
    each slot key gets up to half a step of jitter so source boundaries
    are not rigid.
    """
    total = len(items)
    if total == 0:
        return []
    rng = rng or SystemRandomSource()

    groups = shuffle_groups(group_by_source(items, key), rng)

    ordered: List[T] = []
    positions: List[float] = []
    for group in groups.values():
        step = total / len(group)
        for i, item in enumerate(group):
            ordered.append(item)
            positions.append(i * step + rng.next_float() * step * 0.5)

    order = np.argsort(np.asarray(positions, dtype=float), kind="stable")
    result = [ordered[int(i)] for i in order]

    logger.debug(
        "balanced_shuffle: %d items across %d sources", total, len(groups)
    )
    return result
