class ReportSyncError(RuntimeError):
    pass


class ConfigurationError(ReportSyncError):
    """Required account or identifier is missing. Retrying in-process will not help."""


class ReportApiError(ReportSyncError):
    def __init__(self, message: str, *, transient: bool = True, status_code: int | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class ExportFailedError(ReportSyncError):
    pass


class ExportTimeoutError(ReportSyncError):
    pass


class PayloadValidationError(ReportSyncError):
    """The downloaded export as a whole is unusable."""


class RowTransformError(ValueError):
    """A single report row could not be mapped to a performance record."""


def is_transient(exc: Exception) -> bool:
    return isinstance(exc, ReportApiError) and exc.transient
