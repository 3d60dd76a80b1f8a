"""Wall-clock helpers. All persisted timestamps are epoch milliseconds."""

from __future__ import annotations

import time

MS_PER_HOUR = 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def resolve_now(now: int | None) -> int:
    """Use an explicit timestamp when the caller pins one, else the wall clock."""
    return now_ms() if now is None else now


def hours_to_ms(hours: float) -> int:
    return int(hours * MS_PER_HOUR)


def elapsed_hours(since: int, now: int) -> int:
    """Whole hours between two timestamps, rounded half up."""
    return int((now - since) / MS_PER_HOUR + 0.5)


def start_of_day(now: int) -> int:
    """Midnight UTC of the day containing ``now``."""
    return now - now % (24 * MS_PER_HOUR)
