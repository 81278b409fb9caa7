"""Daily streak tracking.

A streak counts consecutive active UTC calendar days. Activity within
48 hours of the previous one keeps the streak alive, so a single skipped
day is forgiven.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

STREAK_GRACE = timedelta(hours=48)


@dataclass(frozen=True)
class StreakUpdate:
    current_streak: int
    longest_streak: int
    streak_broken: bool = False


def as_utc(dt: datetime) -> datetime:
    """Interpret naive datetimes (SQLite round-trips) as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def is_new_day(earlier: datetime, later: datetime) -> bool:
    """True if the two instants fall on different UTC calendar days."""
    return as_utc(earlier).date() != as_utc(later).date()


def continues_streak(last_activity_at: datetime, activity_at: datetime) -> bool:
    """True if the gap since the last activity is within the grace window."""
    return as_utc(activity_at) - as_utc(last_activity_at) <= STREAK_GRACE


def calculate_streak(
    last_activity_at: datetime | None,
    current_streak: int,
    longest_streak: int,
    now: datetime | None = None,
) -> StreakUpdate:
    """Compute the streak state after an activity at ``now``."""
    if now is None:
        now = datetime.now(timezone.utc)

    # First activity ever
    if last_activity_at is None:
        return StreakUpdate(current_streak=1, longest_streak=max(1, longest_streak))

    if not is_new_day(last_activity_at, now):
        return StreakUpdate(current_streak=current_streak, longest_streak=longest_streak)

    if continues_streak(last_activity_at, now):
        new_streak = current_streak + 1
        return StreakUpdate(current_streak=new_streak, longest_streak=max(new_streak, longest_streak))

    return StreakUpdate(current_streak=1, longest_streak=longest_streak, streak_broken=True)
