"""When a dataset period should be looked at again.

The source API keeps revising recent periods (late conversions inside the
attribution window), so a period is re-requested on a ladder of rungs measured
from its start: dense while the period is young, sparse later, and only
occasionally once every rung has been covered. An outstanding export is polled
on a short fixed interval instead.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from reportsync.db_models import utc_now
from reportsync.periods import resolve_local, timezone_for_country, to_local, to_naive_utc
from reportsync.schemas import Aggregation


@dataclass(frozen=True)
class RefreshPolicy:
    # Absolute hours after the period start.
    hourly_offsets: tuple[timedelta, ...] = (timedelta(hours=24), timedelta(hours=72), timedelta(hours=312))
    # Local calendar days after the period start, so rungs keep their local time of day across DST.
    daily_offset_days: tuple[int, ...] = (1, 3, 5, 7, 14, 30, 60)
    poll_interval: timedelta = timedelta(minutes=5)
    settled_interval: timedelta = timedelta(days=30)

    @classmethod
    def from_settings(cls, settings) -> "RefreshPolicy":
        return cls(
            poll_interval=timedelta(seconds=settings.poll_interval_seconds),
            settled_interval=timedelta(days=settings.settled_refresh_days),
        )


DEFAULT_POLICY = RefreshPolicy()


def refresh_rungs(
    period_start: datetime,
    aggregation: Aggregation,
    tz: ZoneInfo,
    policy: RefreshPolicy = DEFAULT_POLICY,
) -> list[datetime]:
    period_start = to_naive_utc(period_start)
    if Aggregation(aggregation) is Aggregation.HOURLY:
        return [period_start + offset for offset in sorted(policy.hourly_offsets)]

    local_start = to_local(period_start, tz).replace(tzinfo=None)
    return [resolve_local(local_start + timedelta(days=days), tz) for days in sorted(policy.daily_offset_days)]


def next_refresh_time(
    period_start: datetime,
    aggregation: Aggregation,
    last_report_created_at: datetime | None,
    report_id: str | None,
    country_code: str | None,
    *,
    now: datetime | None = None,
    policy: RefreshPolicy = DEFAULT_POLICY,
) -> datetime:
    current = to_naive_utc(now) if now is not None else utc_now()
    if report_id:
        return current + policy.poll_interval

    last_created = to_naive_utc(last_report_created_at) if last_report_created_at is not None else None
    tz = timezone_for_country(country_code)

    # A rung counts as covered once a report was requested at or after it.
    # Uncovered rungs in the past are returned as-is: the period is due now.
    for rung in refresh_rungs(period_start, aggregation, tz, policy):
        if last_created is None or last_created < rung:
            return rung

    anchor = current if last_created is None else max(current, last_created)
    return anchor + policy.settled_interval
