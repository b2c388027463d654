"""Period calendar: which time buckets an account is expected to hold.

All instants leaving this module are naive UTC datetimes, matching what the
database stores. Bucket boundaries are defined on the account's local wall
clock and resolved to UTC through the zone's real offsets, so DST transitions
move the UTC instant of a local bucket instead of breaking alignment.
"""

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from reportsync.schemas import Aggregation


COUNTRY_TIMEZONES: dict[str, str] = {
    "US": "America/Los_Angeles",
    "MX": "America/Los_Angeles",
    "CA": "America/Los_Angeles",
    "DE": "Europe/London",
    "ES": "Europe/London",
    "FR": "Europe/London",
    "IT": "Europe/London",
    "GB": "Europe/London",
    "JP": "Asia/Tokyo",
}
DEFAULT_TIMEZONE = "UTC"

# Daily retention is configured in months and approximated as 30-day months.
DAYS_PER_RETENTION_MONTH = 30


def timezone_for_country(country_code: str | None) -> ZoneInfo:
    name = COUNTRY_TIMEZONES.get((country_code or "").strip().upper(), DEFAULT_TIMEZONE)
    return ZoneInfo(name)


def as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=UTC)
    return instant.astimezone(UTC)


def to_naive_utc(instant: datetime) -> datetime:
    return as_utc(instant).replace(tzinfo=None)


def to_local(instant: datetime, tz: ZoneInfo) -> datetime:
    return as_utc(instant).astimezone(tz)


def local_date(instant: datetime, tz: ZoneInfo) -> date:
    return to_local(instant, tz).date()


def resolve_local(wall_clock: datetime, tz: ZoneInfo) -> datetime:
    """Naive local wall-clock time -> naive UTC instant.

    Wall-clock times inside a DST gap resolve with the pre-transition offset,
    i.e. they land just after the gap.
    """
    return wall_clock.replace(tzinfo=tz).astimezone(UTC).replace(tzinfo=None)


def local_midnight(day: date, tz: ZoneInfo) -> datetime:
    return resolve_local(datetime.combine(day, time()), tz)


def period_floor(now: datetime, tz: ZoneInfo, aggregation: Aggregation) -> datetime:
    """Start of the bucket containing ``now``: local top of hour or local midnight."""
    local = to_local(now, tz)
    if aggregation is Aggregation.HOURLY:
        # replace() keeps ``fold`` so the repeated hour at DST fall-back stays distinct.
        return to_naive_utc(local.replace(minute=0, second=0, microsecond=0))
    return local_midnight(local.date(), tz)


def retention_span(aggregation: Aggregation, retention_limit: int) -> int:
    """Number of buckets behind the current one that are still retained.

    Hourly retention is given in days, daily retention in months.
    """
    if retention_limit < 0:
        raise ValueError("retention_limit must not be negative")
    if aggregation is Aggregation.HOURLY:
        return retention_limit * 24
    return retention_limit * DAYS_PER_RETENTION_MONTH


def enumerate_periods(
    now: datetime,
    tz: ZoneInfo | str,
    aggregation: Aggregation,
    retention_limit: int,
) -> list[datetime]:
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    aggregation = Aggregation(aggregation)
    steps = retention_span(aggregation, retention_limit)

    if aggregation is Aggregation.HOURLY:
        current = period_floor(now, zone, aggregation)
        return [current - timedelta(hours=offset) for offset in range(steps + 1)]

    today = local_date(now, zone)
    return [local_midnight(today - timedelta(days=offset), zone) for offset in range(steps + 1)]


def retention_cutoff(now: datetime, tz: ZoneInfo | str, aggregation: Aggregation, retention_limit: int) -> datetime:
    """Oldest period start still inside the retention window."""
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    aggregation = Aggregation(aggregation)
    steps = retention_span(aggregation, retention_limit)
    if aggregation is Aggregation.HOURLY:
        return period_floor(now, zone, aggregation) - timedelta(hours=steps)
    return local_midnight(local_date(now, zone) - timedelta(days=steps), zone)
