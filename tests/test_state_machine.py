from datetime import datetime, timedelta

import pytest

from reportsync.errors import ExportFailedError, ExportTimeoutError
from reportsync.schemas import Aggregation, EntityType, ExportState, NextAction
from reportsync.state_machine import next_action, resolve_action


PERIOD_START = datetime(2024, 6, 1, 7)


@pytest.mark.parametrize(
    ("report_id", "remote_status", "expected"),
    [
        (None, None, NextAction.CREATE),
        ("", None, NextAction.CREATE),
        ("export-1", ExportState.PROCESSING, NextAction.NONE),
        ("export-1", ExportState.COMPLETED, NextAction.PROCESS),
        ("export-1", ExportState.FAILED, NextAction.FAIL),
        ("export-1", "COMPLETED", NextAction.PROCESS),
    ],
)
def test_resolve_action_decision_table(report_id, remote_status, expected) -> None:
    assert resolve_action(report_id, remote_status) is expected


def test_resolve_action_requires_remote_status_for_outstanding_report() -> None:
    with pytest.raises(ValueError):
        resolve_action("export-1", None)


def test_resolve_action_rejects_unknown_remote_status() -> None:
    with pytest.raises(ValueError):
        resolve_action("export-1", "CANCELLED")


def _next_action(fake_client, report_id):
    return next_action(
        PERIOD_START,
        Aggregation.DAILY,
        EntityType.TARGET,
        None,
        report_id,
        "US",
        client=fake_client,
        profile_id="PROFILE-1",
    )


def test_next_action_without_report_does_not_query_api(fake_client) -> None:
    assert _next_action(fake_client, None) is NextAction.CREATE
    assert fake_client.status_calls == []


def test_next_action_follows_remote_status(fake_client, target_row) -> None:
    export = fake_client.create_export("PROFILE-1", {})
    assert _next_action(fake_client, export.export_id) is NextAction.NONE

    fake_client.complete(export.export_id, [target_row()])
    assert _next_action(fake_client, export.export_id) is NextAction.PROCESS
    assert fake_client.status_calls == [export.export_id, export.export_id]


def test_next_action_raises_for_failed_export(fake_client) -> None:
    export = fake_client.create_export("PROFILE-1", {})
    fake_client.fail(export.export_id, "report generation failed upstream")

    with pytest.raises(ExportFailedError, match="report generation failed upstream"):
        _next_action(fake_client, export.export_id)


def test_next_action_times_out_long_running_export(fake_client) -> None:
    export = fake_client.create_export("PROFILE-1", {})
    requested_at = datetime(2024, 6, 2, 8)

    def check(now, last_report_created_at=requested_at):
        return next_action(
            PERIOD_START,
            Aggregation.DAILY,
            EntityType.TARGET,
            last_report_created_at,
            export.export_id,
            "US",
            client=fake_client,
            profile_id="PROFILE-1",
            now=now,
            export_timeout=timedelta(hours=3),
        )

    assert check(requested_at + timedelta(hours=3)) is NextAction.NONE
    assert check(requested_at + timedelta(days=2), last_report_created_at=None) is NextAction.NONE
    with pytest.raises(ExportTimeoutError, match="timed out"):
        check(requested_at + timedelta(hours=3, minutes=1))
