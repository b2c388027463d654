from datetime import datetime, timedelta
import logging

from sqlalchemy.orm import Session

from reportsync.dataset_store import claim_dataset, count_in_flight, list_due_with_report, list_due_without_report
from reportsync.db_models import DatasetPeriod
from reportsync.periods import to_naive_utc
from reportsync.schemas import Aggregation, EntityType


logger = logging.getLogger(__name__)


def select_due(
    db: Session,
    *,
    account_id: str,
    country_code: str,
    aggregation: Aggregation,
    entity_type: EntityType,
    now: datetime,
    capacity: int,
    claim_timeout: timedelta,
) -> list[DatasetPeriod]:
    """Claim the rows to advance this cycle.

    Rows waiting on an export are always taken so they can finish. New exports
    are only started while fewer than ``capacity`` are outstanding.
    """
    now = to_naive_utc(now)
    claim_expired_before = now - claim_timeout
    scope = {
        "account_id": account_id,
        "country_code": country_code,
        "aggregation": Aggregation(aggregation),
        "entity_type": EntityType(entity_type),
    }

    in_progress = list_due_with_report(db, **scope, now=now, claim_expired_before=claim_expired_before)
    in_flight = count_in_flight(db, **scope, claim_expired_before=claim_expired_before)
    fresh = list_due_without_report(
        db,
        **scope,
        now=now,
        limit=max(0, capacity - in_flight),
        claim_expired_before=claim_expired_before,
    )

    candidate_ids = [candidate.id for candidate in [*in_progress, *fresh]]
    claimed: list[DatasetPeriod] = []
    for dataset_id in candidate_ids:
        dataset = claim_dataset(db, dataset_id, now=now, claim_expired_before=claim_expired_before)
        if dataset is None:
            logger.debug("dataset already claimed", extra={"dataset_id": dataset_id})
            continue
        claimed.append(dataset)

    logger.info(
        "selected due datasets",
        extra={
            "account_id": account_id,
            "country_code": country_code,
            "aggregation": scope["aggregation"].value,
            "entity_type": scope["entity_type"].value,
            "in_progress": len(in_progress),
            "in_flight": in_flight,
            "fresh": len(fresh),
            "claimed": len(claimed),
        },
    )
    return claimed
