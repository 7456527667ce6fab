"""
Stage timing model.

Durations are nominal stage lengths perturbed by bounded random jitter.
Wall time is read through an injectable clock so deadline logic can be
driven deterministically.
"""

import math
import random
from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Source of the current time as an aware UTC datetime."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the system wall time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class ManualClock:
    """
    Clock that only moves when told to.

    Used by tests and simulations that need reproducible deadlines.
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0.0, milliseconds: float = 0.0) -> datetime:
        self._now += timedelta(seconds=seconds, milliseconds=milliseconds)
        return self._now


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def compute_duration(
    base_ms: int,
    jitter_ratio: float,
    rng: random.Random | None = None,
) -> int:
    """
    Compute a jittered stage duration.

    Args:
        base_ms: Nominal duration in milliseconds.
        jitter_ratio: Maximum relative deviation (0.15 means +/- 15%).
        rng: Optional random source.

    Returns:
        Duration in milliseconds, never negative.
    """
    draw = (rng or random).uniform(-1.0, 1.0)
    return max(0, round_half_up(base_ms + draw * base_ms * jitter_ratio))


def deadline_after(now: datetime, duration_ms: int) -> datetime:
    return now + timedelta(milliseconds=duration_ms)
