"""Unit tests for JobWorker retry, failure and shutdown behaviour.

Handlers here are plain callables; the real fulfillment handlers are
covered in ``tests/integration/test_order_jobs.py``.
"""

from __future__ import annotations

import threading
from multiprocessing import Pipe
from uuid import uuid4

import pytest
import structlog

from modules.jobs.constants import JobState, JobType
from modules.jobs.dtos import JobPayload
from modules.jobs.queue import RedisJobQueue
from modules.jobs.worker import SHUTDOWN_MESSAGE, JobWorker, is_retryable
from modules.locks.exceptions import LockUnavailable
from modules.products.exceptions import InsufficientStock

pytestmark = pytest.mark.unit


@pytest.fixture()
def queue(redis_client, clock):
    return RedisJobQueue(redis_client, name="worker-queue", clock=clock)


def _payload():
    return JobPayload(
        type=JobType.UPDATE_ORDER_STATUS, order_id=uuid4(), new_status="confirmed"
    )


class FlakyHandler:
    """Raises ``errors`` in order, then succeeds."""

    def __init__(self, *errors: Exception) -> None:
        self._errors = list(errors)
        self.calls = 0

    def __call__(self, job):
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return {"handled": job.id}


def _worker(queue, handler, **kwargs):
    return JobWorker(queue, handler, worker_id="w-test", poll_interval=0.01, **kwargs)


class TestRetryPolicy:
    def test_fails_twice_then_completes(self, queue, clock):
        handler = FlakyHandler(RuntimeError("db down"), RuntimeError("db down"))
        worker = _worker(queue, handler)
        job = queue.enqueue(_payload())

        first = worker.process_next()
        assert first.state == JobState.DELAYED
        assert worker.process_next() is None  # still backing off

        clock.advance(2)
        second = worker.process_next()
        assert second.state == JobState.DELAYED

        clock.advance(4)
        third = worker.process_next()
        assert third.state == JobState.COMPLETED
        assert third.attempts == 3
        assert third.result == {"handled": job.id}

        clock.advance(60)
        assert worker.process_next() is None
        assert handler.calls == 3
        assert queue.get_job(job.id) is None

    def test_three_failures_mark_job_failed(self, queue, clock):
        handler = FlakyHandler(*[RuntimeError("redis timeout")] * 3)
        worker = _worker(queue, handler)
        job = queue.enqueue(_payload())

        outcomes = []
        for delay in (0, 2, 4):
            clock.advance(delay)
            outcomes.append(worker.process_next().state)

        assert outcomes == [JobState.DELAYED, JobState.DELAYED, JobState.FAILED]
        clock.advance(3600)
        assert worker.process_next() is None
        assert handler.calls == 3
        assert queue.failed_job_ids() == [job.id]
        assert queue.get_job(job.id).last_error == "RuntimeError: redis timeout"

    def test_business_error_fails_without_retry(self, queue, clock):
        handler = FlakyHandler(InsufficientStock("requested 3, available 1"))
        worker = _worker(queue, handler)
        job = queue.enqueue(_payload())

        outcome = worker.process_next()

        assert outcome.state == JobState.FAILED
        assert outcome.attempts == 1
        clock.advance(3600)
        assert worker.process_next() is None
        assert queue.get_job(job.id).state == JobState.FAILED

    def test_lock_contention_is_retried(self, queue):
        worker = _worker(queue, FlakyHandler(LockUnavailable("lock:order:1")))
        queue.enqueue(_payload())
        assert worker.process_next().state == JobState.DELAYED

    def test_retryable_classification(self):
        assert is_retryable(LockUnavailable("k"))
        assert is_retryable(ConnectionError())
        assert not is_retryable(InsufficientStock())

    def test_job_context_is_unbound_after_processing(self, queue):
        worker = _worker(queue, FlakyHandler())
        queue.enqueue(_payload())
        worker.process_next()
        assert "job_id" not in structlog.contextvars.get_contextvars()


class TestStalledSweep:
    def test_sweep_recovers_jobs_of_dead_workers(self, queue, redis_client):
        job = queue.enqueue(_payload())
        queue.claim("dead-worker")
        redis_client.delete(f"worker-queue:lease:{job.id}")

        handler = FlakyHandler()
        worker = _worker(queue, handler)
        worker.sweep_stalled(force=True)

        assert worker.process_next().state == JobState.COMPLETED
        assert handler.calls == 1

    def test_sweep_is_rate_limited(self, queue, clock):
        calls = []
        queue.requeue_stalled = lambda: calls.append(1) or {}
        worker = _worker(queue, FlakyHandler(), stalled_check_interval=30, clock=clock)
        worker.sweep_stalled()
        worker.sweep_stalled()
        clock.advance(31)
        worker.sweep_stalled()
        assert len(calls) == 2


class TestRunLoop:
    def test_shutdown_message_stops_idle_worker(self, queue):
        receiver, sender = Pipe(duplex=False)
        worker = _worker(queue, FlakyHandler(), control=receiver)
        sender.send(SHUTDOWN_MESSAGE)
        worker.run()
        assert worker.stopping

    def test_closed_control_channel_stops_worker(self, queue):
        receiver, sender = Pipe(duplex=False)
        sender.close()
        worker = _worker(queue, FlakyHandler(), control=receiver)
        worker.run()
        assert worker.stopping

    def test_processes_jobs_until_stopped(self, queue):
        receiver, sender = Pipe(duplex=False)
        done = threading.Event()
        seen = []

        def handler(job):
            seen.append(job.id)
            if len(seen) == 2:
                done.set()
            return {}

        worker = _worker(queue, handler, control=receiver)
        queue.enqueue(_payload())
        queue.enqueue(_payload())
        thread = threading.Thread(target=worker.run)
        thread.start()
        assert done.wait(5)
        sender.send(SHUTDOWN_MESSAGE)
        thread.join(5)

        assert not thread.is_alive()
        assert worker.processed == 2
