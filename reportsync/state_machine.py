"""Decides what one refresh pass does for a dataset period.

    report_id | remote status | action
    ----------+---------------+---------
    None      | (not queried) | create
    set       | PROCESSING    | none  -> ExportTimeoutError once older than export_timeout
    set       | COMPLETED     | process
    set       | FAILED        | fail  -> raised as ExportFailedError by next_action
"""

from datetime import datetime, timedelta
import logging

from reportsync.errors import ExportFailedError, ExportTimeoutError
from reportsync.report_client import ReportApiClient
from reportsync.schemas import Aggregation, EntityType, ExportState, NextAction


logger = logging.getLogger(__name__)

_REMOTE_ACTIONS: dict[ExportState, NextAction] = {
    ExportState.PROCESSING: NextAction.NONE,
    ExportState.COMPLETED: NextAction.PROCESS,
    ExportState.FAILED: NextAction.FAIL,
}


def resolve_action(report_id: str | None, remote_status: ExportState | str | None) -> NextAction:
    if not report_id:
        return NextAction.CREATE
    if remote_status is None:
        raise ValueError(f"remote status is required to resolve report {report_id}")
    return _REMOTE_ACTIONS[ExportState(remote_status)]


def next_action(
    period_start: datetime,
    aggregation: Aggregation,
    entity_type: EntityType,
    last_report_created_at: datetime | None,
    report_id: str | None,
    country_code: str,
    *,
    client: ReportApiClient,
    profile_id: str,
    now: datetime | None = None,
    export_timeout: timedelta | None = None,
) -> NextAction:
    remote_status: ExportState | None = None
    error_message: str | None = None
    if report_id:
        export = client.get_export_status(profile_id, report_id)
        remote_status = export.status
        error_message = export.error.message if export.error else None

    action = resolve_action(report_id, remote_status)
    logger.debug(
        "resolved next action",
        extra={
            "period_start": period_start.isoformat(),
            "aggregation": str(aggregation),
            "entity_type": str(entity_type),
            "country_code": country_code,
            "report_id": report_id,
            "remote_status": str(remote_status) if remote_status else None,
            "last_report_created_at": last_report_created_at.isoformat() if last_report_created_at else None,
            "action": action.value,
        },
    )
    if action is NextAction.FAIL:
        raise ExportFailedError(f"export {report_id} failed: {error_message or 'no reason given'}")
    if action is NextAction.NONE and export_timeout is not None and now is not None and last_report_created_at:
        age = now - last_report_created_at
        if age > export_timeout:
            raise ExportTimeoutError(
                f"export {report_id} timed out: still processing {int(age.total_seconds())}s after it was requested"
            )
    return action
