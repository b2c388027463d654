from dataclasses import dataclass
import os

from dotenv import load_dotenv

from reportsync.schemas import Aggregation, EntityType


load_dotenv()

DEFAULT_DATASET_TYPES = "daily:target,hourly:target,daily:product,hourly:product"


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    report_api_base_url: str
    report_api_client_id: str
    report_api_access_token: str
    request_timeout_seconds: float
    download_timeout_seconds: float
    max_concurrent_reports: int
    hourly_retention_days: int
    daily_retention_months: int
    poll_interval_seconds: int
    error_retry_seconds: int
    settled_refresh_days: int
    claim_timeout_seconds: int
    export_poll_interval_seconds: float
    export_poll_max_attempts: int
    export_timeout_seconds: int
    upsert_batch_size: int
    max_step_retries: int
    retry_backoff_seconds: float
    worker_concurrency: int
    schedule_interval_minutes: int
    dataset_types: tuple[tuple[Aggregation, EntityType], ...]

    def retention_limit(self, aggregation: Aggregation) -> int:
        if aggregation is Aggregation.HOURLY:
            return self.hourly_retention_days
        return self.daily_retention_months


def parse_dataset_types(raw: str) -> tuple[tuple[Aggregation, EntityType], ...]:
    dataset_types: list[tuple[Aggregation, EntityType]] = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        aggregation, sep, entity_type = item.partition(":")
        if not sep:
            raise ValueError(f"dataset type must look like 'aggregation:entity_type', got {item!r}")
        pair = (Aggregation(aggregation.strip()), EntityType(entity_type.strip()))
        if pair not in dataset_types:
            dataset_types.append(pair)
    if not dataset_types:
        raise ValueError("at least one dataset type must be configured")
    return tuple(dataset_types)


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "reportsync"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./reportsync.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        report_api_base_url=os.getenv("REPORT_API_BASE_URL", "https://advertising-api.amazon.com"),
        report_api_client_id=os.getenv("REPORT_API_CLIENT_ID", ""),
        report_api_access_token=os.getenv("REPORT_API_ACCESS_TOKEN", ""),
        request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30")),
        download_timeout_seconds=float(os.getenv("DOWNLOAD_TIMEOUT_SECONDS", "60")),
        max_concurrent_reports=int(os.getenv("MAX_CONCURRENT_REPORTS", "5")),
        hourly_retention_days=int(os.getenv("HOURLY_RETENTION_DAYS", "14")),
        daily_retention_months=int(os.getenv("DAILY_RETENTION_MONTHS", "15")),
        poll_interval_seconds=int(os.getenv("POLL_INTERVAL_SECONDS", "300")),
        error_retry_seconds=int(os.getenv("ERROR_RETRY_SECONDS", "300")),
        settled_refresh_days=int(os.getenv("SETTLED_REFRESH_DAYS", "30")),
        claim_timeout_seconds=int(os.getenv("CLAIM_TIMEOUT_SECONDS", "1800")),
        export_poll_interval_seconds=float(os.getenv("EXPORT_POLL_INTERVAL_SECONDS", "5")),
        export_poll_max_attempts=int(os.getenv("EXPORT_POLL_MAX_ATTEMPTS", "12")),
        export_timeout_seconds=int(os.getenv("EXPORT_TIMEOUT_SECONDS", "10800")),
        upsert_batch_size=int(os.getenv("UPSERT_BATCH_SIZE", "1000")),
        max_step_retries=int(os.getenv("MAX_STEP_RETRIES", "2")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "1")),
        worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", "4")),
        schedule_interval_minutes=int(os.getenv("SCHEDULE_INTERVAL_MINUTES", "5")),
        dataset_types=parse_dataset_types(os.getenv("DATASET_TYPES", DEFAULT_DATASET_TYPES)),
    )
