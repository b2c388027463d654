from collections.abc import Callable
from datetime import datetime, timedelta
import logging

from sqlalchemy.orm import Session, sessionmaker

from reportsync.backfill import reconcile
from reportsync.config import Settings
from reportsync.dataset_store import list_accounts, require_account
from reportsync.db_models import utc_now
from reportsync.errors import ConfigurationError
from reportsync.notifier import DatasetEvent, EventKind, Notifier
from reportsync.report_client import ReportApiClient
from reportsync.runner import DatasetRefreshRunner
from reportsync.schemas import DatasetKey
from reportsync.selection import select_due


logger = logging.getLogger(__name__)

UPDATE_REPORT_DATASETS = "update-report-datasets"
UPDATE_REPORT_DATASET_FOR_ACCOUNT = "update-report-dataset-for-account"
UPDATE_REPORT_STATUS = "update-report-status"


class ReportJobs:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        queue,
        runner: DatasetRefreshRunner,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.queue = queue
        self.runner = runner
        self.notifier = notifier
        self.clock = clock

    def update_report_datasets(self, payloads: list[dict[str, object]]) -> None:
        with self.session_factory() as db:
            accounts = [(account.account_id, account.country_code) for account in list_accounts(db, enabled_only=True)]

        for account_id, country_code in accounts:
            self.queue.enqueue(
                UPDATE_REPORT_DATASET_FOR_ACCOUNT,
                {"account_id": account_id, "country_code": country_code},
            )
        logger.info("account refreshes enqueued", extra={"accounts": len(accounts)})

    def update_report_dataset_for_account(self, payloads: list[dict[str, object]]) -> None:
        for payload in payloads:
            self.refresh_account(str(payload["account_id"]), str(payload["country_code"]))

    def update_report_status(self, payloads: list[dict[str, object]]) -> None:
        for payload in payloads:
            key = DatasetKey.from_payload(payload)
            try:
                self.runner.refresh(key, claimed=True)
            except ConfigurationError as exc:
                # The period was reconciled away between selection and refresh.
                logger.warning("dataset refresh skipped", extra={"error": str(exc)})

    def refresh_account(self, account_id: str, country_code: str) -> list[DatasetKey]:
        now = self.clock()
        keys: list[DatasetKey] = []
        with self.session_factory() as db:
            account = require_account(db, account_id, country_code)
            if not account.enabled:
                logger.info("account disabled, skipping", extra={"account_id": account_id, "country_code": country_code})
                return keys

            reconcile(db, account_id=account_id, country_code=country_code, now=now, settings=self.settings)
            for aggregation, entity_type in self.settings.dataset_types:
                claimed = select_due(
                    db,
                    account_id=account_id,
                    country_code=country_code,
                    aggregation=aggregation,
                    entity_type=entity_type,
                    now=now,
                    capacity=self.settings.max_concurrent_reports,
                    claim_timeout=timedelta(seconds=self.settings.claim_timeout_seconds),
                )
                # Dispatch before the next type is selected; a later failure must not strand these claims.
                for dataset in claimed:
                    key = DatasetKey.from_dataset(dataset)
                    self.queue.enqueue(UPDATE_REPORT_STATUS, key.to_payload())
                    keys.append(key)

        self.notifier.publish(DatasetEvent(kind=EventKind.REFRESHED, account_id=account_id, country_code=country_code))
        logger.info(
            "account datasets scheduled",
            extra={"account_id": account_id, "country_code": country_code, "claimed": len(keys)},
        )
        return keys


def register_jobs(
    queue,
    settings: Settings,
    session_factory: sessionmaker[Session],
    client: ReportApiClient,
    notifier: Notifier,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> ReportJobs:
    runner = DatasetRefreshRunner(settings, session_factory, client, notifier, clock=clock)
    jobs = ReportJobs(settings, session_factory, queue, runner, notifier, clock=clock)
    queue.work(UPDATE_REPORT_DATASETS, jobs.update_report_datasets)
    queue.work(UPDATE_REPORT_DATASET_FOR_ACCOUNT, jobs.update_report_dataset_for_account)
    queue.work(UPDATE_REPORT_STATUS, jobs.update_report_status, batch_size=settings.max_concurrent_reports)
    return jobs
