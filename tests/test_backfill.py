from dataclasses import replace
from datetime import datetime, timedelta

from sqlalchemy import func, select

from reportsync.backfill import reconcile, reconcile_dataset_type
from reportsync.db_models import DatasetPeriod
from reportsync.schemas import Aggregation, EntityType


def _hourly_rows(db) -> list[DatasetPeriod]:
    stmt = (
        select(DatasetPeriod)
        .where(DatasetPeriod.aggregation == "hourly")
        .order_by(DatasetPeriod.period_start.desc())
    )
    return list(db.execute(stmt).scalars().all())


def test_reconcile_inserts_missing_periods_due_at_first_rung(db, now) -> None:
    result = reconcile_dataset_type(
        db,
        account_id="ACC-1",
        country_code="US",
        now=now,
        aggregation=Aggregation.HOURLY,
        entity_type=EntityType.TARGET,
        retention_limit=1,
    )

    assert result.inserted == 25
    assert result.deleted == 0

    rows = _hourly_rows(db)
    assert len(rows) == 25
    assert rows[0].period_start == datetime(2024, 6, 10, 12)
    for row in rows:
        assert row.status == "missing"
        assert row.report_id is None
        assert row.refreshing is False
        assert row.next_refresh_at == row.period_start + timedelta(hours=24)


def test_reconcile_is_idempotent(db, now) -> None:
    kwargs = {
        "account_id": "ACC-1",
        "country_code": "US",
        "now": now,
        "aggregation": Aggregation.DAILY,
        "entity_type": EntityType.PRODUCT,
        "retention_limit": 1,
    }
    first = reconcile_dataset_type(db, **kwargs)
    second = reconcile_dataset_type(db, **kwargs)

    assert first.inserted == 31
    assert second.inserted == 0
    assert second.deleted == 0
    assert db.execute(select(func.count(DatasetPeriod.id))).scalar_one() == 31


def test_reconcile_keeps_existing_rows_untouched(db, now, add_dataset) -> None:
    existing = add_dataset(datetime(2024, 6, 9, 7), status="completed", last_processed_report_id="export-9")

    reconcile_dataset_type(
        db,
        account_id="ACC-1",
        country_code="US",
        now=now,
        aggregation=Aggregation.DAILY,
        entity_type=EntityType.TARGET,
        retention_limit=1,
    )

    db.refresh(existing)
    assert existing.status == "completed"
    assert existing.last_processed_report_id == "export-9"


def test_reconcile_deletes_stale_rows_except_completed_or_claimed(db, now, add_dataset) -> None:
    stale = datetime(2024, 1, 1, 8)
    add_dataset(stale, status="error")
    add_dataset(stale - timedelta(days=1), status="completed")
    add_dataset(stale - timedelta(days=2), status="fetching", refreshing=True, claimed_at=now)

    result = reconcile_dataset_type(
        db,
        account_id="ACC-1",
        country_code="US",
        now=now,
        aggregation=Aggregation.DAILY,
        entity_type=EntityType.TARGET,
        retention_limit=1,
    )

    assert result.deleted == 1
    remaining = db.execute(
        select(DatasetPeriod.status).where(DatasetPeriod.period_start < datetime(2024, 2, 1))
    ).scalars().all()
    assert sorted(remaining) == ["completed", "fetching"]


def test_reconcile_does_not_touch_other_accounts(db, now, add_dataset) -> None:
    add_dataset(datetime(2024, 1, 1, 8), account_id="ACC-2", status="missing")

    result = reconcile_dataset_type(
        db,
        account_id="ACC-1",
        country_code="US",
        now=now,
        aggregation=Aggregation.DAILY,
        entity_type=EntityType.TARGET,
        retention_limit=1,
    )

    assert result.deleted == 0
    assert db.execute(select(func.count()).where(DatasetPeriod.account_id == "ACC-2")).scalar_one() == 1


def test_reconcile_sums_configured_dataset_types(db, now, test_settings) -> None:
    settings = replace(
        test_settings,
        dataset_types=((Aggregation.DAILY, EntityType.TARGET), (Aggregation.HOURLY, EntityType.PRODUCT)),
    )

    result = reconcile(db, account_id="ACC-1", country_code="US", now=now, settings=settings)

    assert result.inserted == 31 + 25
    counts = dict(
        db.execute(select(DatasetPeriod.aggregation, func.count()).group_by(DatasetPeriod.aggregation)).all()
    )
    assert counts == {"daily": 31, "hourly": 25}
