"""Job worker: claim, execute, then complete, retry or fail.

One ``JobWorker`` runs per worker process.  Between jobs it sweeps for
stalled jobs (at most once per ``stalled_check_interval``) and checks its
control connection for a ``shutdown`` message from the supervisor.  A
shutdown lets the current job finish before ``run`` returns.

Retry policy:

- An exception whose ``retryable`` attribute is false (business errors
  such as ``InsufficientStock`` or ``InvalidTransition``) fails the job on
  the spot.  Re-running it cannot succeed.
- Anything else (``LockUnavailable``, database or Redis errors) is
  retried with exponential backoff until ``max_attempts`` is spent.
"""

from __future__ import annotations

import threading
import time
from multiprocessing.connection import Connection
from typing import Callable, Optional

import structlog

from modules.jobs.constants import JobState
from modules.jobs.dtos import Job, JobOutcome
from modules.jobs.handlers import JobHandler
from modules.jobs.queue import RedisJobQueue

logger = structlog.get_logger(__name__)

SHUTDOWN_MESSAGE = "shutdown"


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", True))


class JobWorker:
    def __init__(
        self,
        queue: RedisJobQueue,
        handler: JobHandler,
        worker_id: str,
        poll_interval: float = 1.0,
        stalled_check_interval: float = 30.0,
        control: Optional[Connection] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._queue = queue
        self._handler = handler
        self.worker_id = worker_id
        self._poll_interval = poll_interval
        self._stalled_check_interval = stalled_check_interval
        self._control = control
        self._clock = clock
        self._stop = threading.Event()
        self._last_stalled_check: Optional[float] = None
        self.processed = 0

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:
        """Process jobs until stopped; the in-flight job always finishes."""
        log = logger.bind(worker_id=self.worker_id)
        log.info("worker.started")
        while not self.stopping:
            self._check_control(timeout=0)
            if self.stopping:
                break
            self.sweep_stalled()
            if self.process_next() is None:
                self._idle()
        log.info("worker.stopped", processed=self.processed)

    def sweep_stalled(self, force: bool = False) -> None:
        now = self._clock()
        if (
            not force
            and self._last_stalled_check is not None
            and now - self._last_stalled_check < self._stalled_check_interval
        ):
            return
        self._last_stalled_check = now
        self._queue.requeue_stalled()

    def process_next(self) -> Optional[JobOutcome]:
        """Claim and run one job; ``None`` if nothing was waiting."""
        job = self._queue.claim(self.worker_id)
        if job is None:
            return None
        structlog.contextvars.bind_contextvars(
            job_id=job.id, job_type=str(job.type), attempt=job.attempts
        )
        try:
            return self._execute(job)
        finally:
            structlog.contextvars.unbind_contextvars("job_id", "job_type", "attempt")
            self.processed += 1

    def _execute(self, job: Job) -> JobOutcome:
        heartbeat = _LeaseHeartbeat(self._queue, job, self.worker_id)
        heartbeat.start()
        try:
            result = self._handler(job)
        except Exception as exc:
            return self._handle_failure(job, exc)
        finally:
            heartbeat.stop()
        self._queue.complete(job, result)
        logger.info("job.completed", result=result)
        return JobOutcome(
            job_id=job.id,
            job_type=str(job.type),
            state=JobState.COMPLETED,
            attempts=job.attempts,
            result=result,
        )

    def _handle_failure(self, job: Job, exc: Exception) -> JobOutcome:
        error = f"{type(exc).__name__}: {exc}"
        if is_retryable(exc) and job.has_attempts_left:
            delay = job.next_backoff()
            self._queue.retry(job, error, delay)
            logger.warning("job.retry_scheduled", error=error, delay=delay)
            state = JobState.DELAYED
        else:
            self._queue.fail(job, error)
            logger.error(
                "job.failed",
                error=error,
                payload=job.payload.to_wire(),
                retryable=is_retryable(exc),
                exc_info=exc,
            )
            state = JobState.FAILED
        return JobOutcome(
            job_id=job.id,
            job_type=str(job.type),
            state=state,
            attempts=job.attempts,
            error=error,
        )

    def _idle(self) -> None:
        if self._control is not None:
            self._check_control(timeout=self._poll_interval)
        else:
            self._stop.wait(self._poll_interval)

    def _check_control(self, timeout: float) -> None:
        if self._control is None:
            return
        try:
            if not self._control.poll(timeout):
                return
            message = self._control.recv()
        except (EOFError, OSError):
            # Supervisor is gone: nobody is left to ask us to stop.
            logger.warning("worker.control_closed", worker_id=self.worker_id)
            self.stop()
            return
        if message == SHUTDOWN_MESSAGE:
            logger.info("worker.shutdown_requested", worker_id=self.worker_id)
            self.stop()


class _LeaseHeartbeat(threading.Thread):
    """Renews a job's lease at a third of its TTL while the job runs."""

    def __init__(self, queue: RedisJobQueue, job: Job, worker_id: str) -> None:
        super().__init__(name=f"lease-{job.id}", daemon=True)
        self._queue = queue
        self._job = job
        self._worker_id = worker_id
        self._interval = max(queue.lease_seconds / 3.0, 0.1)
        self._done = threading.Event()

    def run(self) -> None:
        while not self._done.wait(self._interval):
            try:
                renewed = self._queue.heartbeat(self._job, self._worker_id)
            except Exception:
                logger.warning("job.heartbeat_error", job_id=self._job.id, exc_info=True)
                continue
            if not renewed:
                logger.warning("job.heartbeat_lapsed", job_id=self._job.id)
                return

    def stop(self) -> None:
        self._done.set()
        self.join(timeout=self._interval)
