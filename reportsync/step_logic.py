from collections.abc import Iterable, Iterator, Sequence
from datetime import date, datetime, time
import gzip
import json
import re
from typing import Protocol, TypeVar
import zlib
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from reportsync.dataset_store import list_targets_for_ad_groups
from reportsync.errors import PayloadValidationError, RowTransformError
from reportsync.periods import local_midnight, resolve_local
from reportsync.report_rows import ReportRow
from reportsync.schemas import Aggregation, BucketTime, EntityType, InvalidRecord


T = TypeVar("T")

HOURLY_VALUE_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2})T(\d{2})(?::|$)")
ASIN_PATTERN = re.compile(r'asin(?:-expanded)?="([^"]+)"')
MANUAL_MATCH_TYPES = frozenset({"PHRASE", "BROAD", "EXACT"})
PREDEFINED_MATCH_TYPE_MAP = {
    "close-match": "SEARCH_CLOSE_MATCH",
    "loose-match": "SEARCH_LOOSE_MATCH",
    "substitutes": "PRODUCT_SUBSTITUTES",
    "complements": "PRODUCT_COMPLEMENTS",
}


def decompress_payload(data: bytes) -> object:
    try:
        return json.loads(gzip.decompress(data).decode("utf-8"))
    except (OSError, EOFError, zlib.error) as exc:
        raise PayloadValidationError(f"report payload is not valid gzip: {exc}") from exc
    except ValueError as exc:
        raise PayloadValidationError(f"report payload is not valid JSON: {exc}") from exc


def batched(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    for start in range(0, len(items), size):
        yield items[start : start + size]


def normalize_hour_value(hour_value: str, date_value: str | None) -> str:
    """Hourly exports carry either ``YYYY-MM-DDTHH:MM:SS`` or a bare hour next to ``date.value``."""
    if "T" in hour_value:
        return hour_value
    if not date_value:
        raise RowTransformError(f"missing date.value for hour.value {hour_value!r}")
    try:
        hour = int(float(hour_value))
    except ValueError as exc:
        raise RowTransformError(f"invalid hour.value {hour_value!r}") from exc
    return f"{date_value}T{hour:02d}:00:00"


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise RowTransformError(f"invalid date {value!r}") from exc


class BucketStrategy(Protocol):
    aggregation: Aggregation

    def bucket_for(self, row: ReportRow, tz: ZoneInfo) -> BucketTime: ...


class HourlyBuckets:
    aggregation = Aggregation.HOURLY

    def bucket_for(self, row: ReportRow, tz: ZoneInfo) -> BucketTime:
        hour_value = normalize_hour_value(row.hour_value, getattr(row, "date_value", None))
        match = HOURLY_VALUE_PATTERN.match(hour_value)
        if not match:
            raise RowTransformError(f"invalid hour.value {hour_value!r}")

        bucket_date = match.group(1)
        bucket_hour = int(match.group(2))
        if bucket_hour > 23:
            raise RowTransformError(f"invalid hour.value {hour_value!r}")

        wall_clock = datetime.combine(_parse_date(bucket_date), time(hour=bucket_hour))
        return BucketTime(
            bucket_start=resolve_local(wall_clock, tz),
            bucket_date=bucket_date,
            bucket_hour=bucket_hour,
        )


class DailyBuckets:
    aggregation = Aggregation.DAILY

    def bucket_for(self, row: ReportRow, tz: ZoneInfo) -> BucketTime:
        day = _parse_date(row.date_value)
        return BucketTime(bucket_start=local_midnight(day, tz), bucket_date=day.isoformat(), bucket_hour=None)


class IdentityResolver(Protocol):
    def resolve(self, row: ReportRow) -> tuple[str, str | None]: ...


def _ascii_only(value: str | None) -> str:
    return (value or "").encode("ascii", "ignore").decode("ascii").strip()


def parse_asin(target_value: str) -> str | None:
    match = ASIN_PATTERN.search(target_value)
    return match.group(1) if match else None


def export_match_type(match_type: str, target_value: str) -> str:
    """Map a report's target.matchType onto the match type stored with targets."""
    if match_type in MANUAL_MATCH_TYPES:
        return match_type
    if match_type == "TARGETING_EXPRESSION":
        return "PRODUCT_SIMILAR" if "expanded" in target_value else "PRODUCT_EXACT"
    if match_type == "TARGETING_EXPRESSION_PREDEFINED":
        try:
            return PREDEFINED_MATCH_TYPE_MAP[target_value]
        except KeyError as exc:
            expected = ", ".join(PREDEFINED_MATCH_TYPE_MAP)
            raise RowTransformError(
                f"invalid predefined expression value {target_value!r}, expected one of: {expected}"
            ) from exc
    raise RowTransformError(f"unsupported target match type {match_type!r}")


class TargetCache:
    """Targets of a report's ad groups, loaded once and looked up per row."""

    def __init__(self) -> None:
        self.manual_keyword: dict[tuple[str, str, str], str] = {}
        self.product: dict[tuple[str, str, str], str] = {}
        self.auto: dict[tuple[str, str], str] = {}

    @classmethod
    def build(cls, db: Session, ad_group_ids: Iterable[str]) -> "TargetCache":
        cache = cls()
        for target in list_targets_for_ad_groups(db, sorted(set(ad_group_ids))):
            if not target.ad_group_id or not target.match_type:
                continue
            if target.keyword:
                cache.manual_keyword[(target.ad_group_id, target.keyword, target.match_type)] = target.target_id
            if target.asin:
                cache.product[(target.ad_group_id, target.asin, target.match_type)] = target.target_id
            if target.target_type == "AUTO":
                cache.auto[(target.ad_group_id, target.match_type)] = target.target_id
        return cache

    def target_id(self, ad_group_id: str, target_value: str, match_type: str) -> tuple[str, str]:
        stored_match_type = export_match_type(match_type, target_value)

        if match_type in MANUAL_MATCH_TYPES:
            target_id = self.manual_keyword.get((ad_group_id, target_value, stored_match_type))
            if target_id is None:
                raise RowTransformError(f"no target for keyword {target_value!r} ({match_type}) in ad group {ad_group_id}")
            return target_id, stored_match_type

        if match_type == "TARGETING_EXPRESSION":
            asin = parse_asin(target_value)
            if asin is None:
                raise RowTransformError(f"could not parse an ASIN from {target_value!r}")
            target_id = self.product.get((ad_group_id, asin, stored_match_type))
            if target_id is None:
                raise RowTransformError(f"no target for asin {asin} ({stored_match_type}) in ad group {ad_group_id}")
            return target_id, stored_match_type

        target_id = self.auto.get((ad_group_id, stored_match_type))
        if target_id is None:
            raise RowTransformError(f"no auto target {stored_match_type} in ad group {ad_group_id}")
        return target_id, stored_match_type

    def resolve(self, row: ReportRow) -> tuple[str, str | None]:
        if row.target_value and row.target_match_type:
            return self.target_id(row.ad_group_id, row.target_value, row.target_match_type)

        # Rows without target columns are attributed to the exact keyword matching the search term.
        keyword = _ascii_only(getattr(row, "search_term", None))
        if not keyword:
            raise RowTransformError(f"row in ad group {row.ad_group_id} has neither a target nor a search term")
        target_id = self.manual_keyword.get((row.ad_group_id, keyword, "EXACT"))
        if target_id is None:
            raise RowTransformError(f"no exact keyword target for search term {keyword!r} in ad group {row.ad_group_id}")
        return target_id, "EXACT"


class ProductResolver:
    def resolve(self, row: ReportRow) -> tuple[str, str | None]:
        product_id = getattr(row, "advertised_product_id", None)
        if not product_id:
            raise RowTransformError(f"row for ad {row.ad_id} has no advertisedProduct.id")
        return product_id, None


def transform_rows(
    rows: Sequence[ReportRow],
    *,
    account_id: str,
    entity_type: EntityType,
    tz: ZoneInfo,
    buckets: BucketStrategy,
    resolver: IdentityResolver,
) -> tuple[list[dict[str, object]], list[InvalidRecord]]:
    valid: list[dict[str, object]] = []
    invalid: list[InvalidRecord] = []

    for index, row in enumerate(rows):
        try:
            bucket = buckets.bucket_for(row, tz)
            entity_id, match_type = resolver.resolve(row)
        except RowTransformError as exc:
            invalid.append(InvalidRecord(index, row.model_dump(by_alias=True), str(exc)))
            continue

        valid.append(
            {
                "account_id": account_id,
                "aggregation": buckets.aggregation.value,
                "bucket_start": bucket.bucket_start,
                "bucket_date": bucket.bucket_date,
                "bucket_hour": bucket.bucket_hour,
                "campaign_id": row.campaign_id,
                "ad_group_id": row.ad_group_id,
                "ad_id": row.ad_id,
                "entity_type": EntityType(entity_type).value,
                "entity_id": entity_id,
                "target_match_type": match_type,
                "impressions": row.impressions,
                "clicks": row.clicks,
                "spend": row.total_cost,
                "sales": row.sales,
                "orders": row.purchases,
            }
        )

    return valid, invalid
