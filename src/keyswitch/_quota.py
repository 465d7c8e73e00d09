"""Quota period rollover and remaining-balance calculation."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from keyswitch._models import QuotaPeriod

if TYPE_CHECKING:
    from keyswitch._models import ApiKey


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def period_elapsed(period: str, last_checked_at: datetime | None, *, now: datetime | None = None) -> bool:
    """Return ``True`` if ``now`` falls in a later calendar period than ``last_checked_at``.

    Periods are calendar-aligned in UTC: same day, same ISO week, same month,
    same year. ``unlimited`` and unknown periods never roll over. A key that
    was never checked counts as rolled over.
    """
    period = period.value if isinstance(period, QuotaPeriod) else str(period).lower()
    if period not in (QuotaPeriod.DAILY, QuotaPeriod.WEEKLY, QuotaPeriod.MONTHLY, QuotaPeriod.YEARLY):
        return False
    if last_checked_at is None:
        return True

    current = _utc(now or datetime.now(tz=timezone.utc))
    last = _utc(last_checked_at)
    if period == QuotaPeriod.DAILY:
        return current.date() != last.date()
    if period == QuotaPeriod.WEEKLY:
        return current.isocalendar()[:2] != last.isocalendar()[:2]
    if period == QuotaPeriod.MONTHLY:
        return (current.year, current.month) != (last.year, last.month)
    return current.year != last.year


def remaining(
    limit: float,
    used: float,
    period: str,
    last_checked_at: datetime | None,
    *,
    now: datetime | None = None,
) -> float:
    """Return the balance left in the current period.

    A rolled-over period returns the full ``limit``. Nothing is mutated;
    refreshing ``last_checked_at`` is up to the caller.
    """
    if period_elapsed(period, last_checked_at, now=now):
        return limit
    return max(limit - used, 0.0)


def key_remaining(key: ApiKey, *, now: datetime | None = None) -> float:
    """Shortcut for :func:`remaining` on a stored key."""
    return remaining(key.quota_limit, key.quota_used, key.quota_period, key.last_checked_at, now=now)
