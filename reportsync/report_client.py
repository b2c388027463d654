import logging
import time
from collections.abc import Callable
from typing import Protocol
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field
import requests

from reportsync.errors import ExportFailedError, ExportTimeoutError, ReportApiError
from reportsync.schemas import ExportState


logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class ExportError(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    error_code: str | None = Field(default=None, alias="errorCode")
    message: str


class ExportStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    export_id: str = Field(alias="exportId")
    status: ExportState
    url: str | None = None
    error: ExportError | None = None


class ReportApiClient(Protocol):
    def create_export(self, profile_id: str, filters: dict[str, object]) -> ExportStatus: ...

    def get_export_status(self, profile_id: str, export_id: str) -> ExportStatus: ...

    def download(self, url: str) -> bytes: ...


class HttpReportClient:
    """Report export API over HTTP. Every call is bounded by a request timeout."""

    def __init__(
        self,
        *,
        base_url: str,
        client_id: str,
        access_token: str,
        timeout_seconds: float,
        download_timeout_seconds: float,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.download_timeout_seconds = download_timeout_seconds
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {access_token}",
                "Amazon-Advertising-API-ClientId": client_id,
            }
        )

    @classmethod
    def from_settings(cls, settings) -> "HttpReportClient":
        return cls(
            base_url=settings.report_api_base_url,
            client_id=settings.report_api_client_id,
            access_token=settings.report_api_access_token,
            timeout_seconds=settings.request_timeout_seconds,
            download_timeout_seconds=settings.download_timeout_seconds,
        )

    def create_export(self, profile_id: str, filters: dict[str, object]) -> ExportStatus:
        response = self._request("POST", "/exports", profile_id=profile_id, json=filters)
        return self._parse_status(response, "create export")

    def get_export_status(self, profile_id: str, export_id: str) -> ExportStatus:
        response = self._request("GET", f"/exports/{quote(export_id, safe='')}", profile_id=profile_id)
        return self._parse_status(response, "get export status")

    def download(self, url: str) -> bytes:
        # Download URLs are pre-signed; the API credentials must not be forwarded.
        response = self._send(
            lambda: requests.get(url, timeout=self.download_timeout_seconds),
            description="download export",
        )
        return response.content

    def _request(
        self,
        method: str,
        path: str,
        *,
        profile_id: str,
        json: dict[str, object] | None = None,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        return self._send(
            lambda: self.session.request(
                method,
                url,
                headers={"Amazon-Advertising-API-Scope": str(profile_id)},
                json=json,
                timeout=self.timeout_seconds,
            ),
            description=f"{method} {path}",
        )

    def _send(self, call: Callable[[], requests.Response], *, description: str) -> requests.Response:
        try:
            response = call()
        except requests.Timeout as exc:
            raise ReportApiError(f"{description} timed out", transient=True) from exc
        except requests.RequestException as exc:
            raise ReportApiError(f"{description} failed: {exc}", transient=True) from exc

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise ReportApiError(
                f"{description} failed: {response.status_code} {response.reason}",
                transient=True,
                status_code=response.status_code,
            )
        if not response.ok:
            raise ReportApiError(
                f"{description} failed: {response.status_code} {response.reason}. {response.text[:500]}",
                transient=False,
                status_code=response.status_code,
            )
        return response

    def _parse_status(self, response: requests.Response, description: str) -> ExportStatus:
        try:
            return ExportStatus.model_validate(response.json())
        except ValueError as exc:
            raise ReportApiError(f"{description} returned an unexpected body: {exc}", transient=False) from exc


def wait_for_export(
    client: ReportApiClient,
    profile_id: str,
    export_id: str,
    *,
    poll_interval_seconds: float,
    max_attempts: int,
    sleep: Callable[[float], None] = time.sleep,
) -> ExportStatus:
    for attempt in range(1, max(1, max_attempts) + 1):
        export = client.get_export_status(profile_id, export_id)
        if export.status is ExportState.COMPLETED:
            return export
        if export.status is ExportState.FAILED:
            reason = export.error.message if export.error else "no reason given"
            raise ExportFailedError(f"export {export_id} failed: {reason}")

        logger.debug("export still processing", extra={"export_id": export_id, "attempt": attempt})
        if attempt < max_attempts:
            sleep(poll_interval_seconds)

    raise ExportTimeoutError(f"export {export_id} still processing after {max_attempts} status checks")
