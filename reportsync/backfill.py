from datetime import datetime
import logging

from sqlalchemy.orm import Session

from reportsync.config import Settings
from reportsync.dataset_store import delete_stale_datasets, existing_period_starts, insert_missing_datasets
from reportsync.db_models import utc_now
from reportsync.eligibility import DEFAULT_POLICY, RefreshPolicy, next_refresh_time
from reportsync.periods import enumerate_periods, timezone_for_country, to_naive_utc
from reportsync.schemas import Aggregation, DatasetStatus, EntityType, ReconcileResult


logger = logging.getLogger(__name__)


def reconcile_dataset_type(
    db: Session,
    *,
    account_id: str,
    country_code: str,
    now: datetime,
    aggregation: Aggregation,
    entity_type: EntityType,
    retention_limit: int,
    policy: RefreshPolicy = DEFAULT_POLICY,
) -> ReconcileResult:
    """Make the stored rows for one dataset type match the retention calendar.

    Missing periods are inserted as ``missing`` rows, due at their first
    eligibility rung. Rows older than the retention window are deleted unless
    they completed or are claimed by a worker. Running it twice changes nothing.
    """
    now = to_naive_utc(now)
    aggregation = Aggregation(aggregation)
    entity_type = EntityType(entity_type)

    periods = enumerate_periods(now, timezone_for_country(country_code), aggregation, retention_limit)
    cutoff = periods[-1]
    existing = existing_period_starts(
        db,
        account_id=account_id,
        country_code=country_code,
        aggregation=aggregation,
        entity_type=entity_type,
        since=cutoff,
    )

    created_at = utc_now()
    missing = [
        {
            "account_id": account_id,
            "country_code": country_code,
            "period_start": period_start,
            "aggregation": aggregation.value,
            "entity_type": entity_type.value,
            "status": DatasetStatus.MISSING.value,
            "next_refresh_at": next_refresh_time(period_start, aggregation, None, None, country_code, now=now, policy=policy),
            "refreshing": False,
            "total_records": 0,
            "success_records": 0,
            "error_records": 0,
            "updated_at": created_at,
        }
        for period_start in periods
        if period_start not in existing
    ]
    if missing:
        insert_missing_datasets(db, missing)

    deleted = delete_stale_datasets(
        db,
        account_id=account_id,
        country_code=country_code,
        aggregation=aggregation,
        entity_type=entity_type,
        before=cutoff,
    )

    result = ReconcileResult(inserted=len(missing), deleted=deleted)
    if result.inserted or result.deleted:
        logger.info(
            "reconciled dataset periods",
            extra={
                "account_id": account_id,
                "country_code": country_code,
                "aggregation": aggregation.value,
                "entity_type": entity_type.value,
                "inserted": result.inserted,
                "deleted": result.deleted,
            },
        )
    return result


def reconcile(db: Session, *, account_id: str, country_code: str, now: datetime, settings: Settings) -> ReconcileResult:
    policy = RefreshPolicy.from_settings(settings)
    total = ReconcileResult()
    for aggregation, entity_type in settings.dataset_types:
        total += reconcile_dataset_type(
            db,
            account_id=account_id,
            country_code=country_code,
            now=now,
            aggregation=aggregation,
            entity_type=entity_type,
            retention_limit=settings.retention_limit(aggregation),
            policy=policy,
        )
    return total
