"""Interval-reset rule for feature usage counters.

A stored ``usage_count`` is only meaningful inside the interval in which the
feature was last used. Once ``now`` falls into a different UTC interval the
effective count is zero; the stored value is left untouched until the next
write.
"""

from datetime import UTC, datetime, timedelta

from quotaflow.billing.tier_features import RecurringInterval


def ensure_utc(value: datetime | str | None) -> datetime | None:
    """Normalize a timestamp to an aware UTC datetime.

    Naive datetimes (as returned by SQLite) are taken to already be UTC.
    ISO-8601 strings, including a trailing ``Z``, are parsed.
    """
    if value is None:
        return None
    if isinstance(value, str):
        if not value:
            return None
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return _to_utc(value)


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_new_interval(
    last_used: datetime,
    now: datetime,
    interval: RecurringInterval | str,
) -> bool:
    """Check whether ``now`` falls into a later interval than ``last_used``.

    Args:
        last_used: When the feature was last consumed
        now: Current instant
        interval: Reset cadence of the feature

    Returns:
        True if the usage counter should be treated as zero
    """
    last = _to_utc(last_used)
    current = _to_utc(now)
    interval = RecurringInterval(interval)

    if interval is RecurringInterval.DAILY:
        return last.date() != current.date()
    if interval is RecurringInterval.WEEKLY:
        # ISO week-year and week number; Dec 31 can belong to week 1
        return last.isocalendar()[:2] != current.isocalendar()[:2]
    if interval is RecurringInterval.MONTHLY:
        return (last.year, last.month) != (current.year, current.month)
    if interval is RecurringInterval.YEARLY:
        return last.year != current.year
    return False


def effective_usage_count(
    usage_count: int,
    last_used: datetime | str | None,
    interval: RecurringInterval | str,
    now: datetime,
) -> int:
    """Apply the reset rule to a stored counter.

    Args:
        usage_count: Stored usage count
        last_used: Last consumption time, or None if never used
        interval: Reset cadence (``""`` never resets)
        now: Current instant

    Returns:
        The count that applies at ``now``
    """
    last = ensure_utc(last_used)
    if last is None:
        return usage_count
    if is_new_interval(last, now, interval):
        return 0
    return usage_count


def next_reset_at(interval: RecurringInterval | str, now: datetime) -> datetime | None:
    """Start of the next interval after ``now``, or None for non-resetting features."""
    current = _to_utc(now)
    interval = RecurringInterval(interval)
    day_start = datetime(current.year, current.month, current.day, tzinfo=UTC)

    if interval is RecurringInterval.DAILY:
        return day_start + timedelta(days=1)
    if interval is RecurringInterval.WEEKLY:
        return day_start + timedelta(days=7 - current.weekday())
    if interval is RecurringInterval.MONTHLY:
        if current.month == 12:
            return datetime(current.year + 1, 1, 1, tzinfo=UTC)
        return datetime(current.year, current.month + 1, 1, tzinfo=UTC)
    if interval is RecurringInterval.YEARLY:
        return datetime(current.year + 1, 1, 1, tzinfo=UTC)
    return None
