"""Feed composition: partition shuffle, quota allocation, and rank assignment."""

from dealfeed.feed.config import FeedConfig
from dealfeed.feed.composer import ComposedFeed, FeedComposer, FeedRank
from dealfeed.feed.quota import FeedPlan, QuotaAllocator, SourceGroup, SourceQuota
from dealfeed.feed.rng import RandomSource, SeededRandomSource, SystemRandomSource
from dealfeed.feed.shuffle import balanced_shuffle, fisher_yates_shuffle

__all__ = [
    "ComposedFeed",
    "FeedComposer",
    "FeedConfig",
    "FeedRank",
    "FeedPlan",
    "QuotaAllocator",
    "SourceGroup",
    "SourceQuota",
    "RandomSource",
    "SeededRandomSource",
    "SystemRandomSource",
    "balanced_shuffle",
    "fisher_yates_shuffle",
]
