from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
import time

from sqlalchemy.orm import Session

from reportsync.config import Settings
from reportsync.dataset_store import replace_parse_errors, store_performance_records, update_progress, update_status
from reportsync.db_models import DatasetPeriod
from reportsync.errors import ReportApiError, is_transient
from reportsync.periods import local_date, timezone_for_country
from reportsync.report_client import ExportStatus, ReportApiClient, wait_for_export
from reportsync.report_rows import (
    DailyProductRow,
    DailyTargetRow,
    HourlyProductRow,
    HourlyTargetRow,
    ReportRow,
    export_fields,
    validate_payload,
)
from reportsync.retry import call_with_retries
from reportsync.schemas import Aggregation, DatasetStatus, EntityType, ParseResult
from reportsync.step_logic import (
    BucketStrategy,
    DailyBuckets,
    HourlyBuckets,
    IdentityResolver,
    ProductResolver,
    TargetCache,
    batched,
    decompress_payload,
    transform_rows,
)


logger = logging.getLogger(__name__)

EXPORT_FORMAT = "GZIP_JSON"


def _target_resolver(db: Session, rows: Sequence[ReportRow]) -> IdentityResolver:
    return TargetCache.build(db, (row.ad_group_id for row in rows))


def _product_resolver(db: Session, rows: Sequence[ReportRow]) -> IdentityResolver:
    return ProductResolver()


@dataclass(frozen=True)
class ReportVariant:
    aggregation: Aggregation
    entity_type: EntityType
    row_model: type[ReportRow]
    buckets: BucketStrategy
    time_unit: str
    resolver_factory: Callable[[Session, Sequence[ReportRow]], IdentityResolver]


REPORT_VARIANTS: dict[tuple[Aggregation, EntityType], ReportVariant] = {
    (variant.aggregation, variant.entity_type): variant
    for variant in (
        ReportVariant(Aggregation.HOURLY, EntityType.TARGET, HourlyTargetRow, HourlyBuckets(), "HOURLY", _target_resolver),
        ReportVariant(Aggregation.DAILY, EntityType.TARGET, DailyTargetRow, DailyBuckets(), "DAILY", _target_resolver),
        ReportVariant(Aggregation.HOURLY, EntityType.PRODUCT, HourlyProductRow, HourlyBuckets(), "HOURLY", _product_resolver),
        ReportVariant(Aggregation.DAILY, EntityType.PRODUCT, DailyProductRow, DailyBuckets(), "DAILY", _product_resolver),
    )
}


def variant_for(aggregation: Aggregation | str, entity_type: EntityType | str) -> ReportVariant:
    return REPORT_VARIANTS[(Aggregation(aggregation), EntityType(entity_type))]


class ReportPipeline:
    """Creates exports for dataset periods and loads finished exports into performance_records."""

    def __init__(
        self,
        settings: Settings,
        client: ReportApiClient,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.client = client
        self.sleep = sleep

    def export_filters(self, dataset: DatasetPeriod) -> dict[str, object]:
        variant = variant_for(dataset.aggregation, dataset.entity_type)
        day = local_date(dataset.period_start, timezone_for_country(dataset.country_code)).isoformat()
        return {
            "accessRequestedAccounts": [{"advertiserAccountId": dataset.account_id}],
            "reports": [
                {
                    "format": EXPORT_FORMAT,
                    "timeUnit": variant.time_unit,
                    "periods": [{"datePeriod": {"startDate": day, "endDate": day}}],
                    "query": {"fields": export_fields(variant.row_model)},
                }
            ],
        }

    def create_export(self, dataset: DatasetPeriod, profile_id: str) -> ExportStatus:
        filters = self.export_filters(dataset)
        export = self._with_retries(lambda: self.client.create_export(profile_id, filters))
        if not export.export_id:
            raise ReportApiError(
                f"create export for {dataset.aggregation} {dataset.entity_type} {dataset.period_start.isoformat()} "
                "returned no export id",
                transient=False,
            )

        logger.info(
            "export created",
            extra={
                "account_id": dataset.account_id,
                "country_code": dataset.country_code,
                "period_start": dataset.period_start.isoformat(),
                "aggregation": dataset.aggregation,
                "entity_type": dataset.entity_type,
                "report_id": export.export_id,
            },
        )
        return export

    def process(self, db: Session, dataset: DatasetPeriod, profile_id: str) -> ParseResult:
        report_id = dataset.report_id
        if not report_id:
            raise ValueError(f"dataset {dataset.id} has no report to process")

        variant = variant_for(dataset.aggregation, dataset.entity_type)
        tz = timezone_for_country(dataset.country_code)

        export = wait_for_export(
            self.client,
            profile_id,
            report_id,
            poll_interval_seconds=self.settings.export_poll_interval_seconds,
            max_attempts=self.settings.export_poll_max_attempts,
            sleep=self.sleep,
        )
        if not export.url:
            raise ReportApiError(f"export {report_id} completed without a download url", transient=False)

        update_status(db, dataset, DatasetStatus.PARSING)
        payload = self._with_retries(lambda: self.client.download(export.url))
        rows = validate_payload(variant.row_model, decompress_payload(payload))

        resolver = variant.resolver_factory(db, rows)
        valid, invalid = transform_rows(
            rows,
            account_id=dataset.account_id,
            entity_type=variant.entity_type,
            tz=tz,
            buckets=variant.buckets,
            resolver=resolver,
        )
        update_progress(db, dataset, total_records=len(rows), success_records=0, error_records=len(invalid))

        stored = 0
        for batch in batched(valid, self.settings.upsert_batch_size):
            store_performance_records(db, list(batch))
            stored += len(batch)
            update_progress(db, dataset, success_records=stored)

        replace_parse_errors(db, dataset, report_id=report_id, invalid_records=invalid)
        if invalid:
            logger.warning(
                "report rows could not be transformed",
                extra={"report_id": report_id, "error_records": len(invalid), "first_error": invalid[0].reason},
            )

        logger.info(
            "export processed",
            extra={"report_id": report_id, "total_records": len(rows), "success_records": stored},
        )
        return ParseResult(total_records=len(rows), success_records=stored, error_records=len(invalid))

    def _with_retries(self, fn):
        return call_with_retries(
            fn,
            max_retries=self.settings.max_step_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
            should_retry=is_transient,
            sleep=self.sleep,
        )
