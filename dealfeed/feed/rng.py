"""Injectable random sources for the feed algorithms."""

from __future__ import annotations

import random
from typing import Optional, Protocol


class RandomSource(Protocol):
    """Anything that can draw a uniform float in ``[0, 1)``."""

    def next_float(self) -> float:
        ...


class SystemRandomSource:
    """Production source backed by the OS entropy pool."""

    def __init__(self) -> None:
        self._rng = random.SystemRandom()

    def next_float(self) -> float:
        return self._rng.random()


class SeededRandomSource:
    """Reproducible source for tests and replays."""

    def __init__(self, seed: Optional[int] = None) -> None:
        self._rng = random.Random(seed)

    def next_float(self) -> float:
        return self._rng.random()


def rand_index(rng: RandomSource, upper: int) -> int:
    """Uniform integer in ``[0, upper)``."""
    # Guard against a source that returns exactly 1.0
    return min(int(rng.next_float() * upper), upper - 1)
