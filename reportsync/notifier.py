from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import StrEnum
import logging
import threading


logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    UPDATED = "updated"
    ERROR = "error"
    REFRESHED = "refreshed"


@dataclass(frozen=True)
class DatasetEvent:
    kind: EventKind
    account_id: str
    country_code: str
    period_start: datetime | None = None
    aggregation: str | None = None
    entity_type: str | None = None
    status: str | None = None
    refreshing: bool = False
    report_id: str | None = None
    error: str | None = None

    @classmethod
    def from_dataset(cls, kind: EventKind, dataset) -> "DatasetEvent":
        return cls(
            kind=kind,
            account_id=dataset.account_id,
            country_code=dataset.country_code,
            period_start=dataset.period_start,
            aggregation=dataset.aggregation,
            entity_type=dataset.entity_type,
            status=dataset.status,
            refreshing=bool(dataset.refreshing),
            report_id=dataset.report_id,
            error=dataset.error,
        )

    def to_payload(self) -> dict[str, object]:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        if self.period_start is not None:
            payload["period_start"] = self.period_start.isoformat()
        return payload


Subscriber = Callable[[DatasetEvent], None]


class Notifier:
    """In-process fan-out of dataset events to subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: DatasetEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                # A broken subscriber must not fail the dataset refresh.
                logger.exception("event subscriber failed", extra={"kind": event.kind.value})


def log_event(event: DatasetEvent) -> None:
    logger.info("dataset event", extra=event.to_payload())
