from datetime import datetime
import json

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from reportsync.db_models import AdvertiserAccount, DatasetPeriod, ParseErrorRecord, PerformanceRecord, Target, utc_now
from reportsync.errors import ConfigurationError
from reportsync.schemas import Aggregation, DatasetKey, DatasetStatus, EntityType, InvalidRecord


DATASET_KEY_COLUMNS = ("account_id", "country_code", "period_start", "aggregation", "entity_type")
PERFORMANCE_KEY_COLUMNS = ("account_id", "aggregation", "bucket_start", "ad_id", "entity_type", "entity_id")
PERFORMANCE_UPDATE_COLUMNS = (
    "bucket_date",
    "bucket_hour",
    "campaign_id",
    "ad_group_id",
    "target_match_type",
    "impressions",
    "clicks",
    "spend",
    "sales",
    "orders",
    "updated_at",
)
INSERT_CHUNK_SIZE = 500


def _insert_for(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"conflict-aware inserts are not supported on {dialect}")


def _type_filter(account_id: str, country_code: str, aggregation: Aggregation, entity_type: EntityType):
    return and_(
        DatasetPeriod.account_id == account_id,
        DatasetPeriod.country_code == country_code,
        DatasetPeriod.aggregation == Aggregation(aggregation).value,
        DatasetPeriod.entity_type == EntityType(entity_type).value,
    )


def _claimable(claim_expired_before: datetime):
    # A claim older than the timeout belongs to a worker that died mid-flight.
    return or_(
        DatasetPeriod.refreshing.is_(False),
        and_(DatasetPeriod.claimed_at.is_not(None), DatasetPeriod.claimed_at < claim_expired_before),
    )


def get_account(db: Session, account_id: str, country_code: str) -> AdvertiserAccount | None:
    stmt = select(AdvertiserAccount).where(
        AdvertiserAccount.account_id == account_id,
        AdvertiserAccount.country_code == country_code,
    )
    return db.execute(stmt).scalar_one_or_none()


def require_account(db: Session, account_id: str, country_code: str) -> AdvertiserAccount:
    account = get_account(db, account_id, country_code)
    if account is None:
        raise ConfigurationError(f"advertiser account not found: {account_id}/{country_code}")
    if not account.profile_id:
        raise ConfigurationError(f"advertiser account {account_id}/{country_code} has no profile id")
    return account


def list_accounts(db: Session, *, enabled_only: bool = False) -> list[AdvertiserAccount]:
    stmt = select(AdvertiserAccount).order_by(AdvertiserAccount.account_id, AdvertiserAccount.country_code)
    if enabled_only:
        stmt = stmt.where(AdvertiserAccount.enabled.is_(True))
    return list(db.execute(stmt).scalars().all())


def upsert_account(
    db: Session,
    *,
    account_id: str,
    country_code: str,
    profile_id: str,
    enabled: bool = True,
) -> AdvertiserAccount:
    account = get_account(db, account_id, country_code)
    if account is None:
        account = AdvertiserAccount(account_id=account_id, country_code=country_code)
        db.add(account)
    account.profile_id = profile_id
    account.enabled = enabled
    db.commit()
    db.refresh(account)
    return account


def set_account_enabled(db: Session, account_id: str, country_code: str, enabled: bool) -> AdvertiserAccount:
    account = get_account(db, account_id, country_code)
    if account is None:
        raise ConfigurationError(f"advertiser account not found: {account_id}/{country_code}")
    account.enabled = enabled
    db.commit()
    return account


def get_dataset(db: Session, key: DatasetKey) -> DatasetPeriod | None:
    stmt = select(DatasetPeriod).where(
        _type_filter(key.account_id, key.country_code, key.aggregation, key.entity_type),
        DatasetPeriod.period_start == key.period_start,
    )
    return db.execute(stmt).scalar_one_or_none()


def existing_period_starts(
    db: Session,
    *,
    account_id: str,
    country_code: str,
    aggregation: Aggregation,
    entity_type: EntityType,
    since: datetime,
) -> set[datetime]:
    stmt = select(DatasetPeriod.period_start).where(
        _type_filter(account_id, country_code, aggregation, entity_type),
        DatasetPeriod.period_start >= since,
    )
    return set(db.execute(stmt).scalars().all())


def insert_missing_datasets(db: Session, rows: list[dict[str, object]]) -> None:
    # The unique key makes a concurrent insert of the same period a no-op.
    for start in range(0, len(rows), INSERT_CHUNK_SIZE):
        chunk = rows[start : start + INSERT_CHUNK_SIZE]
        stmt = _insert_for(db, DatasetPeriod).values(chunk).on_conflict_do_nothing(index_elements=list(DATASET_KEY_COLUMNS))
        db.execute(stmt)
    db.commit()


def delete_stale_datasets(
    db: Session,
    *,
    account_id: str,
    country_code: str,
    aggregation: Aggregation,
    entity_type: EntityType,
    before: datetime,
) -> int:
    stale_ids = list(
        db.execute(
            select(DatasetPeriod.id).where(
                _type_filter(account_id, country_code, aggregation, entity_type),
                DatasetPeriod.period_start < before,
                DatasetPeriod.status != DatasetStatus.COMPLETED.value,
                DatasetPeriod.refreshing.is_(False),
            )
        )
        .scalars()
        .all()
    )
    if not stale_ids:
        return 0

    db.execute(delete(ParseErrorRecord).where(ParseErrorRecord.dataset_id.in_(stale_ids)))
    result = db.execute(
        delete(DatasetPeriod).where(DatasetPeriod.id.in_(stale_ids), DatasetPeriod.refreshing.is_(False))
    )
    db.commit()
    return result.rowcount or 0


def list_due_with_report(
    db: Session,
    *,
    account_id: str,
    country_code: str,
    aggregation: Aggregation,
    entity_type: EntityType,
    now: datetime,
    claim_expired_before: datetime,
) -> list[DatasetPeriod]:
    stmt = (
        select(DatasetPeriod)
        .where(
            _type_filter(account_id, country_code, aggregation, entity_type),
            DatasetPeriod.report_id.is_not(None),
            DatasetPeriod.next_refresh_at <= now,
            _claimable(claim_expired_before),
        )
        .order_by(DatasetPeriod.period_start.desc())
    )
    return list(db.execute(stmt).scalars().all())


def list_due_without_report(
    db: Session,
    *,
    account_id: str,
    country_code: str,
    aggregation: Aggregation,
    entity_type: EntityType,
    now: datetime,
    limit: int,
    claim_expired_before: datetime,
) -> list[DatasetPeriod]:
    if limit <= 0:
        return []
    stmt = (
        select(DatasetPeriod)
        .where(
            _type_filter(account_id, country_code, aggregation, entity_type),
            DatasetPeriod.report_id.is_(None),
            DatasetPeriod.next_refresh_at <= now,
            _claimable(claim_expired_before),
        )
        .order_by(DatasetPeriod.period_start.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def count_in_flight(
    db: Session,
    *,
    account_id: str,
    country_code: str,
    aggregation: Aggregation,
    entity_type: EntityType,
    claim_expired_before: datetime,
) -> int:
    """Rows holding an outstanding export or a live claim."""
    live_claim = and_(
        DatasetPeriod.refreshing.is_(True),
        or_(DatasetPeriod.claimed_at.is_(None), DatasetPeriod.claimed_at >= claim_expired_before),
    )
    stmt = select(func.count(DatasetPeriod.id)).where(
        _type_filter(account_id, country_code, aggregation, entity_type),
        or_(DatasetPeriod.report_id.is_not(None), live_claim),
    )
    return int(db.execute(stmt).scalar_one())


def claim_dataset(
    db: Session,
    dataset_id: int,
    *,
    now: datetime,
    claim_expired_before: datetime,
) -> DatasetPeriod | None:
    """Single conditional UPDATE ... RETURNING; None when another worker holds the row."""
    stmt = (
        update(DatasetPeriod)
        .where(DatasetPeriod.id == dataset_id, _claimable(claim_expired_before))
        .values(refreshing=True, claimed_at=now)
        .returning(DatasetPeriod)
    )
    claimed = db.execute(stmt).scalar_one_or_none()
    db.commit()
    return claimed


def update_status(db: Session, dataset: DatasetPeriod, status: DatasetStatus, error: str | None = None) -> None:
    dataset.status = status.value
    dataset.error = error
    db.commit()


def mark_report_created(db: Session, dataset: DatasetPeriod, *, report_id: str, created_at: datetime) -> None:
    dataset.report_id = report_id
    dataset.last_report_created_at = created_at
    dataset.status = DatasetStatus.FETCHING.value
    dataset.error = None
    db.commit()


def mark_report_processed(db: Session, dataset: DatasetPeriod, *, report_id: str) -> None:
    dataset.status = DatasetStatus.COMPLETED.value
    dataset.report_id = None
    dataset.last_processed_report_id = report_id
    dataset.error = None
    db.commit()


def update_progress(
    db: Session,
    dataset: DatasetPeriod,
    *,
    total_records: int | None = None,
    success_records: int | None = None,
    error_records: int | None = None,
) -> None:
    if total_records is not None:
        dataset.total_records = total_records
    if success_records is not None:
        dataset.success_records = success_records
    if error_records is not None:
        dataset.error_records = error_records
    db.commit()


def release_dataset(db: Session, dataset: DatasetPeriod, *, next_refresh_at: datetime) -> None:
    dataset.refreshing = False
    dataset.claimed_at = None
    dataset.next_refresh_at = next_refresh_at
    db.commit()


def mark_dataset_failed(
    db: Session,
    dataset: DatasetPeriod,
    *,
    error: str,
    next_refresh_at: datetime,
    clear_report: bool = False,
) -> None:
    dataset.status = DatasetStatus.ERROR.value
    if clear_report:
        dataset.report_id = None
    dataset.error = error
    dataset.refreshing = False
    dataset.claimed_at = None
    dataset.next_refresh_at = next_refresh_at
    db.commit()


def request_reprocess(db: Session, key: DatasetKey, *, now: datetime) -> DatasetPeriod:
    # Manual reprocessing is the only path that may move next_refresh_at backwards.
    dataset = get_dataset(db, key)
    if dataset is None:
        raise ConfigurationError(f"dataset not found: {key}")
    dataset.next_refresh_at = now
    db.commit()
    return dataset


def list_targets_for_ad_groups(db: Session, ad_group_ids: list[str]) -> list[Target]:
    if not ad_group_ids:
        return []
    stmt = select(Target).where(Target.ad_group_id.in_(ad_group_ids))
    return list(db.execute(stmt).scalars().all())


def store_performance_records(db: Session, records: list[dict[str, object]]) -> int:
    if not records:
        return 0
    updated_at = utc_now()
    # One statement may not touch the same key twice; the last row for a key wins.
    by_key = {tuple(record[column] for column in PERFORMANCE_KEY_COLUMNS): record for record in records}
    values = [{**record, "updated_at": updated_at} for record in by_key.values()]
    stmt = _insert_for(db, PerformanceRecord).values(values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(PERFORMANCE_KEY_COLUMNS),
        set_={column: stmt.excluded[column] for column in PERFORMANCE_UPDATE_COLUMNS},
    )
    db.execute(stmt)
    db.commit()
    return len(values)


def replace_parse_errors(
    db: Session,
    dataset: DatasetPeriod,
    *,
    report_id: str,
    invalid_records: list[InvalidRecord],
) -> None:
    db.execute(delete(ParseErrorRecord).where(ParseErrorRecord.dataset_id == dataset.id))
    for invalid in invalid_records:
        db.add(
            ParseErrorRecord(
                dataset_id=dataset.id,
                report_id=report_id,
                record_index=invalid.record_index,
                raw_record=json.dumps(invalid.record, sort_keys=True, default=str),
                reason=invalid.reason,
            )
        )
    db.commit()


def summarize_datasets(db: Session, account_id: str, country_code: str) -> list[tuple[str, str, str, int]]:
    stmt = (
        select(DatasetPeriod.aggregation, DatasetPeriod.entity_type, DatasetPeriod.status, func.count(DatasetPeriod.id))
        .where(DatasetPeriod.account_id == account_id, DatasetPeriod.country_code == country_code)
        .group_by(DatasetPeriod.aggregation, DatasetPeriod.entity_type, DatasetPeriod.status)
        .order_by(DatasetPeriod.aggregation, DatasetPeriod.entity_type, DatasetPeriod.status)
    )
    return [(row[0], row[1], row[2], int(row[3])) for row in db.execute(stmt).all()]
