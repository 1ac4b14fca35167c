"""Cadence helper for timer-driven recomputation with an injectable clock."""
from __future__ import annotations

from datetime import datetime
from typing import Optional


class Cadence:
    """Tracks when a periodic task last ran and whether it is due again."""

    def __init__(self, interval_s: float) -> None:
        self.interval_s = float(interval_s)
        self.last_run: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        if self.last_run is None:
            return True
        return (now - self.last_run).total_seconds() >= self.interval_s

    def mark(self, now: datetime) -> None:
        self.last_run = now

    def consume(self, now: datetime) -> bool:
        """Mark the cadence as run and return True if it was due."""

        if not self.is_due(now):
            return False
        self.last_run = now
        return True

    def reset(self) -> None:
        self.last_run = None


def seconds_since(earlier: Optional[datetime], now: datetime) -> float:
    """Elapsed seconds, or infinity when ``earlier`` is unset."""

    if earlier is None:
        return float("inf")
    return (now - earlier).total_seconds()
