"""Mutual activity streak.

A calendar day "qualifies" when at least two distinct users sent a message
in the room that day. The streak counts consecutive qualifying days walking
back from today. Today not qualifying yet (for example, nobody has written)
is skipped instead of breaking the streak; any earlier non-qualifying day
ends the walk.

Day boundaries are UTC midnight. Timestamps without a timezone are taken
as UTC.
"""
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, Set, Tuple

DEFAULT_LOOKBACK_DAYS = 60
DEFAULT_MIN_DISTINCT_SENDERS = 2


def utc_day(ts: datetime) -> date:
    """Calendar day of ``ts`` in UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).date()


def daily_senders(activity: Iterable[Tuple[str, datetime]]) -> Dict[date, Set[str]]:
    """Bucket ``(sender_id, created_at)`` pairs into UTC days."""
    buckets: Dict[date, Set[str]] = defaultdict(set)
    for sender_id, created_at in activity:
        buckets[utc_day(created_at)].add(sender_id)
    return dict(buckets)


def compute_streak(
    activity: Iterable[Tuple[str, datetime]],
    now: datetime,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    min_distinct_senders: int = DEFAULT_MIN_DISTINCT_SENDERS,
) -> int:
    """Count consecutive qualifying days ending today (or yesterday).

    Args:
        activity: ``(sender_id, created_at)`` pairs, any order.
        now: Current time; its UTC day is "today".
        lookback_days: Maximum number of days walked, today included.
        min_distinct_senders: Distinct senders a day needs to qualify.

    Returns:
        The streak length in days.
    """
    today = utc_day(now)
    oldest = today - timedelta(days=lookback_days - 1)
    buckets = daily_senders(
        (sender, ts) for sender, ts in activity if oldest <= utc_day(ts) <= today
    )

    streak = 0
    for offset in range(lookback_days):
        day = today - timedelta(days=offset)
        if len(buckets.get(day, ())) >= min_distinct_senders:
            streak += 1
        elif offset == 0:
            continue
        else:
            break
    return streak


class EngagementAnalyzer:
    """Configured wrapper around :func:`compute_streak`."""

    def __init__(
        self,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        min_distinct_senders: int = DEFAULT_MIN_DISTINCT_SENDERS,
    ) -> None:
        self.lookback_days = lookback_days
        self.min_distinct_senders = min_distinct_senders

    def window_start(self, now: datetime) -> datetime:
        """Earliest timestamp that can still affect the streak."""
        start_day = utc_day(now) - timedelta(days=self.lookback_days - 1)
        return datetime(start_day.year, start_day.month, start_day.day, tzinfo=timezone.utc)

    def streak(self, activity: Iterable[Tuple[str, datetime]], now: datetime) -> int:
        return compute_streak(activity, now, self.lookback_days, self.min_distinct_senders)
