from datetime import datetime

from reportsync.notifier import DatasetEvent, EventKind, Notifier


def _event(kind: EventKind = EventKind.UPDATED) -> DatasetEvent:
    return DatasetEvent(
        kind=kind,
        account_id="ACC-1",
        country_code="US",
        period_start=datetime(2024, 6, 1, 7),
        aggregation="daily",
        entity_type="target",
        status="fetching",
        refreshing=True,
        report_id="export-1",
    )


def test_publish_reaches_every_subscriber_until_unsubscribed() -> None:
    notifier = Notifier()
    first: list[DatasetEvent] = []
    second: list[DatasetEvent] = []
    unsubscribe = notifier.subscribe(first.append)
    notifier.subscribe(second.append)

    notifier.publish(_event())
    unsubscribe()
    notifier.publish(_event(EventKind.ERROR))

    assert [event.kind for event in first] == [EventKind.UPDATED]
    assert [event.kind for event in second] == [EventKind.UPDATED, EventKind.ERROR]


def test_failing_subscriber_does_not_block_others() -> None:
    notifier = Notifier()
    received: list[DatasetEvent] = []

    def explode(event: DatasetEvent) -> None:
        raise RuntimeError("down")

    notifier.subscribe(explode)
    notifier.subscribe(received.append)

    notifier.publish(_event())

    assert len(received) == 1


def test_event_payload_is_serializable() -> None:
    payload = _event().to_payload()

    assert payload["kind"] == "updated"
    assert payload["period_start"] == "2024-06-01T07:00:00"
    assert payload["report_id"] == "export-1"
