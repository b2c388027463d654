from collections import defaultdict, deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
import threading
import time
from uuid import uuid4

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session, sessionmaker

from reportsync.config import Settings
from reportsync.errors import ConfigurationError
from reportsync.jobs import UPDATE_REPORT_DATASETS, register_jobs
from reportsync.notifier import Notifier, log_event
from reportsync.report_client import HttpReportClient, ReportApiClient
from reportsync.retry import RetryExhaustedError, run_with_retries


logger = logging.getLogger(__name__)

JobHandler = Callable[[list[dict[str, object]]], None]


@dataclass(frozen=True)
class _Worker:
    handler: JobHandler
    batch_size: int


class JobQueue:
    """Named job queues drained by a thread pool, with cron triggers from APScheduler.

    Handlers receive a list of payloads (at most ``batch_size``). A handler that
    raises is retried with backoff; once retries run out the batch is logged and dropped.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        scheduler: BaseScheduler | None = None,
        max_workers: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self.sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.worker_concurrency,
            thread_name_prefix="reportsync-job",
        )
        self._workers: dict[str, _Worker] = {}
        self._queues: dict[str, deque[tuple[str, dict[str, object]]]] = defaultdict(deque)
        self._outstanding = 0
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)

    def work(self, job_name: str, handler: JobHandler, *, batch_size: int = 1) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._workers[job_name] = _Worker(handler=handler, batch_size=batch_size)

    def enqueue(self, job_name: str, payload: dict[str, object] | None = None) -> str:
        if job_name not in self._workers:
            raise ValueError(f"no worker registered for job {job_name!r}")

        job_id = uuid4().hex
        with self._lock:
            self._queues[job_name].append((job_id, dict(payload or {})))
            self._outstanding += 1
        self._executor.submit(self._drain, job_name)
        logger.debug("job enqueued", extra={"job_name": job_name, "job_id": job_id})
        return job_id

    def schedule(self, job_name: str, cron: str, payload: dict[str, object] | None = None) -> None:
        self.scheduler.add_job(
            self.enqueue,
            CronTrigger.from_crontab(cron, timezone="UTC"),
            args=[job_name, payload or {}],
            id=job_name,
            replace_existing=True,
        )

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._outstanding == 0, timeout=timeout)

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self, *, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self._executor.shutdown(wait=wait)

    def _drain(self, job_name: str) -> None:
        worker = self._workers[job_name]
        with self._lock:
            queue = self._queues[job_name]
            batch = [queue.popleft() for _ in range(min(worker.batch_size, len(queue)))]
        if not batch:
            return

        job_ids = [job_id for job_id, _ in batch]
        payloads = [payload for _, payload in batch]
        try:
            run_with_retries(
                lambda: worker.handler(payloads),
                max_retries=self.settings.max_step_retries,
                backoff_seconds=self.settings.retry_backoff_seconds,
                should_retry=lambda exc: not isinstance(exc, ConfigurationError),
                sleep=self.sleep,
            )
        except RetryExhaustedError as exc:
            logger.error(
                "job failed",
                exc_info=exc.last_error,
                extra={"job_name": job_name, "job_ids": job_ids, "attempts": exc.attempts},
            )
        finally:
            with self._idle:
                self._outstanding -= len(batch)
                self._idle.notify_all()


def start_scheduler(
    settings: Settings,
    session_factory: sessionmaker[Session],
    *,
    run_now: bool = False,
    client: ReportApiClient | None = None,
    notifier: Notifier | None = None,
) -> None:
    notifier = notifier or Notifier()
    notifier.subscribe(log_event)
    queue = JobQueue(settings, scheduler=BlockingScheduler(timezone="UTC"))
    register_jobs(queue, settings, session_factory, client or HttpReportClient.from_settings(settings), notifier)

    cron = f"*/{settings.schedule_interval_minutes} * * * *"
    queue.schedule(UPDATE_REPORT_DATASETS, cron)
    logger.info(
        "scheduler started",
        extra={"cron": cron, "worker_concurrency": settings.worker_concurrency},
    )

    if run_now:
        queue.enqueue(UPDATE_REPORT_DATASETS)

    try:
        queue.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("scheduler stopping")
    finally:
        queue.shutdown(wait=False)
