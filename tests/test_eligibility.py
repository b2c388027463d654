from datetime import datetime, timedelta

from reportsync.eligibility import RefreshPolicy, next_refresh_time
from reportsync.schemas import Aggregation


NOW = datetime(2024, 6, 10, 12, 0)


def test_outstanding_report_polls_on_short_interval() -> None:
    result = next_refresh_time(datetime(2024, 6, 1, 7), Aggregation.DAILY, NOW, "export-1", "US", now=NOW)

    assert result == NOW + timedelta(minutes=5)


def test_hourly_never_requested_is_due_at_first_rung() -> None:
    period_start = datetime(2024, 6, 10, 2)

    result = next_refresh_time(period_start, Aggregation.HOURLY, None, None, "US", now=NOW)

    assert result == period_start + timedelta(hours=24)


def test_hourly_skips_rungs_already_covered() -> None:
    period_start = datetime(2024, 6, 5, 2)
    last_created = period_start + timedelta(hours=30)

    result = next_refresh_time(period_start, Aggregation.HOURLY, last_created, None, "US", now=NOW)

    assert result == period_start + timedelta(hours=72)


def test_uncovered_rung_in_the_past_is_returned_as_due() -> None:
    period_start = datetime(2024, 5, 1, 7)

    result = next_refresh_time(period_start, Aggregation.DAILY, None, None, "US", now=NOW)

    assert result == datetime(2024, 5, 2, 7)
    assert result < NOW


def test_all_rungs_covered_settles_to_long_interval() -> None:
    period_start = datetime(2024, 1, 1, 8)
    last_created = datetime(2024, 6, 9, 12)

    result = next_refresh_time(period_start, Aggregation.DAILY, last_created, None, "US", now=NOW)

    assert result == NOW + timedelta(days=30)


def test_settled_interval_counts_from_latest_report_when_in_future() -> None:
    period_start = datetime(2024, 1, 1, 8)
    last_created = NOW + timedelta(hours=1)

    result = next_refresh_time(period_start, Aggregation.DAILY, last_created, None, "US", now=NOW)

    assert result == last_created + timedelta(days=30)


def test_daily_rungs_keep_local_midnight_across_dst() -> None:
    # Midnight PST on March 9th; clocks move forward on March 10th.
    period_start = datetime(2024, 3, 9, 8)
    last_created = datetime(2024, 3, 10, 9)

    result = next_refresh_time(period_start, Aggregation.DAILY, last_created, None, "US", now=datetime(2024, 3, 10, 10))

    assert result == datetime(2024, 3, 12, 7)


def test_unknown_country_uses_utc_calendar() -> None:
    period_start = datetime(2024, 6, 1)

    result = next_refresh_time(period_start, Aggregation.DAILY, None, None, "ZZ", now=NOW)

    assert result == datetime(2024, 6, 2)


def test_policy_from_settings_controls_intervals(test_settings) -> None:
    policy = RefreshPolicy.from_settings(test_settings)

    assert policy.poll_interval == timedelta(seconds=test_settings.poll_interval_seconds)
    assert policy.settled_interval == timedelta(days=test_settings.settled_refresh_days)
    assert next_refresh_time(datetime(2024, 6, 1), Aggregation.DAILY, NOW, "export-1", "US", now=NOW, policy=policy) == (
        NOW + policy.poll_interval
    )
