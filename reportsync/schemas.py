from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class Aggregation(StrEnum):
    HOURLY = "hourly"
    DAILY = "daily"


class EntityType(StrEnum):
    TARGET = "target"
    PRODUCT = "product"


class DatasetStatus(StrEnum):
    MISSING = "missing"
    FETCHING = "fetching"
    PARSING = "parsing"
    COMPLETED = "completed"
    ERROR = "error"


class NextAction(StrEnum):
    NONE = "none"
    CREATE = "create"
    PROCESS = "process"
    # Only produced by the pure decision table; next_action raises instead.
    FAIL = "fail"


class ExportState(StrEnum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class DatasetKey:
    account_id: str
    country_code: str
    period_start: datetime
    aggregation: Aggregation
    entity_type: EntityType

    @classmethod
    def from_dataset(cls, dataset) -> "DatasetKey":
        return cls(
            account_id=dataset.account_id,
            country_code=dataset.country_code,
            period_start=dataset.period_start,
            aggregation=Aggregation(dataset.aggregation),
            entity_type=EntityType(dataset.entity_type),
        )

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> "DatasetKey":
        return cls(
            account_id=str(payload["account_id"]),
            country_code=str(payload["country_code"]),
            period_start=datetime.fromisoformat(str(payload["period_start"])),
            aggregation=Aggregation(str(payload["aggregation"])),
            entity_type=EntityType(str(payload["entity_type"])),
        )

    def to_payload(self) -> dict[str, object]:
        return {
            "account_id": self.account_id,
            "country_code": self.country_code,
            "period_start": self.period_start.isoformat(),
            "aggregation": self.aggregation.value,
            "entity_type": self.entity_type.value,
        }


@dataclass(frozen=True)
class InvalidRecord:
    record_index: int
    record: dict[str, object]
    reason: str


@dataclass(frozen=True)
class BucketTime:
    bucket_start: datetime
    bucket_date: str
    bucket_hour: int | None


@dataclass(frozen=True)
class ReconcileResult:
    inserted: int = 0
    deleted: int = 0

    def __add__(self, other: "ReconcileResult") -> "ReconcileResult":
        return ReconcileResult(inserted=self.inserted + other.inserted, deleted=self.deleted + other.deleted)


@dataclass(frozen=True)
class ParseResult:
    total_records: int
    success_records: int
    error_records: int


@dataclass(frozen=True)
class RefreshOutcome:
    key: DatasetKey
    action: NextAction | None
    status: str
    next_refresh_at: datetime
    report_id: str | None
    error: str | None
