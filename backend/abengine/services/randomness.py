"""Injectable randomness and time sources.

Every random draw in the engine goes through a ``RandomSource`` so tests can
pass ``random.Random(seed)`` and replay exactly the same assignments and
bandit samples.
"""
import random
import time
from datetime import datetime, timezone
from typing import Optional, Protocol


class RandomSource(Protocol):
    """Uniform random source on [0, 1)."""

    def random(self) -> float:
        ...


class Clock(Protocol):
    """Wall clock for timestamps plus a monotonic clock for interval gating."""

    def now(self) -> datetime:
        ...

    def monotonic(self) -> float:
        ...


class SystemClock:
    """Real time. Timestamps are naive UTC, matching the database columns."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def monotonic(self) -> float:
        return time.monotonic()


def create_random_source(seed: Optional[int] = None) -> random.Random:
    """Seeded PRNG for reproducible runs, OS-seeded when ``seed`` is None."""
    return random.Random(seed)
