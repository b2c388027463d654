from collections.abc import Callable
from datetime import datetime, timedelta
import logging

from sqlalchemy.orm import Session, sessionmaker

from reportsync.config import Settings
from reportsync.dataset_store import (
    claim_dataset,
    get_dataset,
    mark_dataset_failed,
    mark_report_created,
    mark_report_processed,
    release_dataset,
    require_account,
)
from reportsync.db_models import DatasetPeriod, utc_now
from reportsync.eligibility import RefreshPolicy, next_refresh_time
from reportsync.errors import ConfigurationError, ExportFailedError, ExportTimeoutError
from reportsync.notifier import DatasetEvent, EventKind, Notifier
from reportsync.pipeline import ReportPipeline
from reportsync.report_client import ReportApiClient
from reportsync.schemas import Aggregation, DatasetKey, EntityType, NextAction, RefreshOutcome
from reportsync.state_machine import next_action


logger = logging.getLogger(__name__)


class DatasetRefreshRunner:
    """Advances one dataset period by a single lifecycle step.

    Every refresh ends with the claim released and ``next_refresh_at`` set,
    whether the step succeeded or failed.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        client: ReportApiClient,
        notifier: Notifier,
        *,
        pipeline: ReportPipeline | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.client = client
        self.notifier = notifier
        self.pipeline = pipeline or ReportPipeline(settings, client)
        self.policy = RefreshPolicy.from_settings(settings)
        self.clock = clock

    def refresh(self, key: DatasetKey, *, claimed: bool = False) -> RefreshOutcome:
        started_at = self.clock()
        with self.session_factory() as db:
            dataset = get_dataset(db, key)
            if dataset is None:
                raise ConfigurationError(f"dataset not found: {key}")

            if not claimed:
                claim_expired_before = started_at - timedelta(seconds=self.settings.claim_timeout_seconds)
                dataset = claim_dataset(db, dataset.id, now=started_at, claim_expired_before=claim_expired_before)
                if dataset is None:
                    logger.info("dataset already being refreshed", extra=self._log_context(key))
                    return self._outcome(key, None, get_dataset(db, key))

            self.notifier.publish(DatasetEvent.from_dataset(EventKind.UPDATED, dataset))

            action: NextAction | None = None
            next_refresh_at = self._next_refresh(dataset, started_at)
            try:
                account = require_account(db, key.account_id, key.country_code)
                action = next_action(
                    dataset.period_start,
                    Aggregation(dataset.aggregation),
                    EntityType(dataset.entity_type),
                    dataset.last_report_created_at,
                    dataset.report_id,
                    dataset.country_code,
                    client=self.client,
                    profile_id=account.profile_id,
                    now=started_at,
                    export_timeout=timedelta(seconds=self.settings.export_timeout_seconds),
                )

                if action is NextAction.CREATE:
                    export = self.pipeline.create_export(dataset, account.profile_id)
                    mark_report_created(db, dataset, report_id=export.export_id, created_at=self.clock())
                    next_refresh_at = self._next_refresh(dataset, started_at)
                elif action is NextAction.PROCESS:
                    report_id = dataset.report_id
                    self.pipeline.process(db, dataset, account.profile_id)
                    mark_report_processed(db, dataset, report_id=report_id)
                    next_refresh_at = self._next_refresh(dataset, started_at)

                release_dataset(db, dataset, next_refresh_at=next_refresh_at)
            except Exception as exc:
                db.rollback()
                mark_dataset_failed(
                    db,
                    dataset,
                    error=str(exc),
                    next_refresh_at=started_at + timedelta(seconds=self.settings.error_retry_seconds),
                    clear_report=isinstance(exc, (ExportFailedError, ExportTimeoutError)),
                )
                if isinstance(exc, ConfigurationError):
                    logger.error("dataset refresh misconfigured", extra={**self._log_context(key), "error": str(exc)})
                else:
                    logger.exception("dataset refresh failed", extra=self._log_context(key))
                self.notifier.publish(DatasetEvent.from_dataset(EventKind.ERROR, dataset))
                return self._outcome(key, action, dataset)

            logger.info(
                "dataset refreshed",
                extra={
                    **self._log_context(key),
                    "action": action.value,
                    "status": dataset.status,
                    "next_refresh_at": dataset.next_refresh_at.isoformat(),
                },
            )
            self.notifier.publish(DatasetEvent.from_dataset(EventKind.UPDATED, dataset))
            return self._outcome(key, action, dataset)

    def _next_refresh(self, dataset: DatasetPeriod, started_at: datetime) -> datetime:
        computed = next_refresh_time(
            dataset.period_start,
            Aggregation(dataset.aggregation),
            dataset.last_report_created_at,
            dataset.report_id,
            dataset.country_code,
            now=started_at,
            policy=self.policy,
        )
        # Rungs already in the past would make the row due again immediately.
        return max(computed, started_at + self.policy.poll_interval)

    def _log_context(self, key: DatasetKey) -> dict[str, object]:
        return {
            "account_id": key.account_id,
            "country_code": key.country_code,
            "period_start": key.period_start.isoformat(),
            "aggregation": key.aggregation.value,
            "entity_type": key.entity_type.value,
        }

    def _outcome(self, key: DatasetKey, action: NextAction | None, dataset: DatasetPeriod | None) -> RefreshOutcome:
        if dataset is None:
            raise ConfigurationError(f"dataset not found: {key}")
        return RefreshOutcome(
            key=key,
            action=action,
            status=dataset.status,
            next_refresh_at=dataset.next_refresh_at,
            report_id=dataset.report_id,
            error=dataset.error,
        )
