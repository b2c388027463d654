import logging
import time
from collections.abc import Callable
from typing import TypeVar


logger = logging.getLogger(__name__)
T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    def __init__(self, message: str, *, attempts: int, last_error: Exception) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def run_with_retries(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    last_error: Exception | None = None
    attempt = 0

    for attempt in range(1, max_retries + 2):
        try:
            return fn()
        except Exception as exc:
            last_error = exc
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)

            retry_allowed = True if should_retry is None else should_retry(exc)
            if attempt > max_retries or not retry_allowed:
                break
            logger.warning("attempt failed, retrying", extra={"attempt": attempt, "error": str(exc)})
            sleep(backoff_seconds * attempt)

    raise RetryExhaustedError(str(last_error), attempts=attempt, last_error=last_error) from last_error


def call_with_retries(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    should_retry: Callable[[Exception], bool],
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Like run_with_retries, but re-raises the original exception once retries stop."""
    try:
        return run_with_retries(
            fn,
            max_retries=max_retries,
            backoff_seconds=backoff_seconds,
            should_retry=should_retry,
            sleep=sleep,
        )
    except RetryExhaustedError as exc:
        raise exc.last_error from None
