from collections.abc import Callable
from datetime import datetime
import gzip
import json
from pathlib import Path
import threading

import pytest
from sqlalchemy.orm import Session, sessionmaker

from reportsync.config import Settings
from reportsync.database import build_session_factory
from reportsync.dataset_store import upsert_account
from reportsync.db_models import DatasetPeriod
from reportsync.notifier import DatasetEvent, Notifier
from reportsync.report_client import ExportError, ExportStatus
from reportsync.schemas import Aggregation, EntityType, ExportState


NOW = datetime(2024, 6, 10, 12, 0)


class FakeReportClient:
    """In-memory export API. Exports stay PROCESSING until completed or failed by the test."""

    def __init__(self) -> None:
        self.exports: dict[str, ExportStatus] = {}
        self.payloads: dict[str, bytes] = {}
        self.created: list[tuple[str, dict[str, object]]] = []
        self.status_calls: list[str] = []
        self.create_errors: list[Exception] = []
        self.download_errors: list[Exception] = []
        self._lock = threading.Lock()

    def create_export(self, profile_id: str, filters: dict[str, object]) -> ExportStatus:
        with self._lock:
            self.created.append((profile_id, filters))
            if self.create_errors:
                raise self.create_errors.pop(0)
            export_id = f"export-{len(self.exports) + 1}"
            self.exports[export_id] = ExportStatus(export_id=export_id, status=ExportState.PROCESSING)
            return self.exports[export_id]

    def get_export_status(self, profile_id: str, export_id: str) -> ExportStatus:
        self.status_calls.append(export_id)
        return self.exports[export_id]

    def download(self, url: str) -> bytes:
        if self.download_errors:
            raise self.download_errors.pop(0)
        return self.payloads[url]

    def complete(self, export_id: str, rows: list[dict[str, object]]) -> None:
        url = f"https://downloads.example.com/{export_id}.json.gz"
        self.payloads[url] = gzip.compress(json.dumps(rows).encode("utf-8"))
        self.exports[export_id] = ExportStatus(export_id=export_id, status=ExportState.COMPLETED, url=url)

    def complete_raw(self, export_id: str, data: bytes) -> None:
        url = f"https://downloads.example.com/{export_id}.bin"
        self.payloads[url] = data
        self.exports[export_id] = ExportStatus(export_id=export_id, status=ExportState.COMPLETED, url=url)

    def fail(self, export_id: str, message: str) -> None:
        self.exports[export_id] = ExportStatus(
            export_id=export_id,
            status=ExportState.FAILED,
            error=ExportError(message=message),
        )


@pytest.fixture()
def now() -> datetime:
    return NOW


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        app_name="reportsync",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        log_level="INFO",
        report_api_base_url="http://127.0.0.1:9",
        report_api_client_id="client-id",
        report_api_access_token="token",
        request_timeout_seconds=1,
        download_timeout_seconds=1,
        max_concurrent_reports=5,
        hourly_retention_days=1,
        daily_retention_months=1,
        poll_interval_seconds=300,
        error_retry_seconds=300,
        settled_refresh_days=30,
        claim_timeout_seconds=1800,
        export_poll_interval_seconds=0,
        export_poll_max_attempts=3,
        export_timeout_seconds=3600,
        upsert_batch_size=2,
        max_step_retries=1,
        retry_backoff_seconds=0,
        worker_concurrency=2,
        schedule_interval_minutes=5,
        dataset_types=((Aggregation.DAILY, EntityType.TARGET),),
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def db(session_factory: sessionmaker[Session]):
    with session_factory() as session:
        yield session


@pytest.fixture()
def fake_client() -> FakeReportClient:
    return FakeReportClient()


@pytest.fixture()
def notifier() -> Notifier:
    return Notifier()


@pytest.fixture()
def events(notifier: Notifier) -> list[DatasetEvent]:
    received: list[DatasetEvent] = []
    notifier.subscribe(received.append)
    return received


@pytest.fixture()
def account(db: Session):
    return upsert_account(db, account_id="ACC-1", country_code="US", profile_id="PROFILE-1")


@pytest.fixture()
def add_dataset(db: Session) -> Callable[..., DatasetPeriod]:
    def _add(period_start: datetime, **overrides) -> DatasetPeriod:
        values = {
            "account_id": "ACC-1",
            "country_code": "US",
            "period_start": period_start,
            "aggregation": Aggregation.DAILY.value,
            "entity_type": EntityType.TARGET.value,
            "status": "missing",
            "next_refresh_at": NOW,
            "refreshing": False,
        }
        values.update(overrides)
        dataset = DatasetPeriod(**values)
        db.add(dataset)
        db.commit()
        return dataset

    return _add


@pytest.fixture()
def target_row() -> Callable[..., dict[str, object]]:
    def _row(**overrides) -> dict[str, object]:
        row: dict[str, object] = {
            "date.value": "2024-06-01",
            "budgetCurrency.value": "USD",
            "campaign.id": 111,
            "campaign.name": "Campaign",
            "adGroup.id": "AG-1",
            "adGroup.name": "Ad group",
            "ad.id": "AD-1",
            "target.value": "running shoes",
            "target.matchType": "EXACT",
            "searchTerm.value": "running shoes",
            "metric.impressions": 100,
            "metric.clicks": 7,
            "metric.purchases": 2,
            "metric.sales": 59.9,
            "metric.totalCost": 12.5,
        }
        row.update(overrides)
        return row

    return _row
