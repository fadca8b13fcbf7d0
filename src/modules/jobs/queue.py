"""Durable fulfillment job queue on Redis.

Layout for a queue named ``q``::

    q:id                 INCR counter for job ids
    q:job:<id>           hash: payload, attempts, state, errors, timestamps
    q:waiting            list, LPUSH to enqueue, claimed from the right (FIFO)
    q:active             list of claimed jobs
    q:lease:<id>         worker heartbeat, expires after ``lease_seconds``
    q:delayed            zset of retries scored by due time
    q:failed             list of exhausted jobs, kept for inspection
    q:stats:enqueued     running total of enqueued jobs

A claim moves the job from ``waiting`` to ``active`` and writes its lease
in one ``WATCH``/``MULTI`` transaction, so a job is never active without a
lease unless its worker stopped renewing it.  ``requeue_stalled`` moves
those jobs back to ``waiting``.  A job that stalls more than
``max_stalled_count`` times is failed instead.

Completed jobs are removed unless ``completed_retention`` is positive.
"""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, List, Optional

import structlog
from redis import Redis
from redis.exceptions import WatchError

from modules.jobs.constants import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_STALLED_COUNT,
    JobState,
)
from modules.jobs.dtos import Job, JobPayload
from modules.jobs.exceptions import JobNotFound

logger = structlog.get_logger(__name__)

STALLED_ERROR = "job stalled more than allowable limit"


class RedisJobQueue:
    """Producer and consumer side of one named queue."""

    def __init__(
        self,
        client: Redis,
        name: str = "order-processing",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        max_stalled_count: int = DEFAULT_MAX_STALLED_COUNT,
        completed_retention: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self.name = name
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.lease_seconds = lease_seconds
        self.max_stalled_count = max_stalled_count
        self.completed_retention = completed_retention
        self._clock = clock

        self._id_key = f"{name}:id"
        self._waiting = f"{name}:waiting"
        self._active = f"{name}:active"
        self._delayed = f"{name}:delayed"
        self._failed = f"{name}:failed"
        self._enqueued_total = f"{name}:stats:enqueued"

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _job_key(self, job_id: str) -> str:
        return f"{self.name}:job:{job_id}"

    def _lease_key(self, job_id: str) -> str:
        return f"{self.name}:lease:{job_id}"

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        payload: JobPayload,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
    ) -> Job:
        """Persist a job and make it claimable."""
        job_id = str(self._client.incr(self._id_key))
        job = Job(
            id=job_id,
            payload=payload,
            max_attempts=max_attempts or self.max_attempts,
            backoff_base=backoff_base if backoff_base is not None else self.backoff_base,
            created_at=self._clock(),
        )
        with self._client.pipeline() as pipe:
            pipe.hset(
                self._job_key(job_id),
                mapping={
                    "id": job_id,
                    "type": str(payload.type),
                    "payload": json.dumps(payload.to_wire()),
                    "attempts": 0,
                    "max_attempts": job.max_attempts,
                    "backoff_base": job.backoff_base,
                    "state": JobState.WAITING,
                    "stalled_count": 0,
                    "last_error": "",
                    "created_at": job.created_at,
                    "claimed_at": "",
                },
            )
            pipe.lpush(self._waiting, job_id)
            pipe.incr(self._enqueued_total)
            pipe.execute()
        logger.info("job.enqueued", job_id=job_id, job_type=str(payload.type))
        return job

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def claim(self, worker_id: str) -> Optional[Job]:
        """Take the oldest waiting job, or ``None`` when the queue is idle."""
        self.promote_delayed()
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self._waiting)
                    raw_id = pipe.lindex(self._waiting, -1)
                    if raw_id is None:
                        pipe.unwatch()
                        return None
                    job_id = _as_text(raw_id)
                    pipe.multi()
                    pipe.lmove(self._waiting, self._active, "RIGHT", "LEFT")
                    pipe.hincrby(self._job_key(job_id), "attempts", 1)
                    pipe.hset(
                        self._job_key(job_id),
                        mapping={
                            "state": JobState.ACTIVE,
                            "claimed_at": self._clock(),
                            "worker_id": worker_id,
                        },
                    )
                    pipe.set(self._lease_key(job_id), worker_id, ex=self.lease_seconds)
                    pipe.execute()
                    break
                except WatchError:
                    continue
        job = self.get_job(job_id)
        if job is None:
            # Record vanished after the claim: drop the orphaned id.
            self._client.lrem(self._active, 1, job_id)
            self._client.delete(self._lease_key(job_id))
            logger.warning("job.orphan_dropped", job_id=job_id)
            return None
        return job

    def heartbeat(self, job: Job, worker_id: str) -> bool:
        """Renew the job's lease; ``False`` if it has already lapsed."""
        return bool(
            self._client.set(
                self._lease_key(job.id), worker_id, ex=self.lease_seconds, xx=True
            )
        )

    def complete(self, job: Job, result: Optional[Dict[str, Any]] = None) -> bool:
        if not self._leave_active(job):
            return False
        with self._client.pipeline() as pipe:
            if self.completed_retention > 0:
                pipe.hset(
                    self._job_key(job.id),
                    mapping={
                        "state": JobState.COMPLETED,
                        "finished_at": self._clock(),
                        "result": json.dumps(result or {}, default=str),
                    },
                )
                pipe.expire(self._job_key(job.id), self.completed_retention)
            else:
                pipe.delete(self._job_key(job.id))
            pipe.execute()
        return True

    def retry(self, job: Job, error: str, delay: float) -> bool:
        """Park the job in ``delayed`` until ``delay`` seconds from now."""
        if not self._leave_active(job):
            return False
        with self._client.pipeline() as pipe:
            pipe.hset(
                self._job_key(job.id),
                mapping={
                    "state": JobState.DELAYED,
                    "last_error": error,
                    "claimed_at": "",
                },
            )
            pipe.zadd(self._delayed, {job.id: self._clock() + delay})
            pipe.execute()
        return True

    def fail(self, job: Job, error: str) -> bool:
        if not self._leave_active(job):
            return False
        self._mark_failed(job.id, error)
        return True

    def _leave_active(self, job: Job) -> bool:
        """Remove ``job`` from ``active``; ``False`` if a stall sweep took it."""
        with self._client.pipeline() as pipe:
            pipe.lrem(self._active, 1, job.id)
            pipe.delete(self._lease_key(job.id))
            removed, _ = pipe.execute()
        if not removed:
            logger.warning("job.lease_lost", job_id=job.id, job_type=str(job.type))
            return False
        return True

    def _mark_failed(self, job_id: str, error: str) -> None:
        with self._client.pipeline() as pipe:
            pipe.hset(
                self._job_key(job_id),
                mapping={
                    "state": JobState.FAILED,
                    "last_error": error,
                    "finished_at": self._clock(),
                },
            )
            pipe.lpush(self._failed, job_id)
            pipe.execute()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def promote_delayed(self) -> List[str]:
        """Move every delayed job whose due time has passed to ``waiting``."""
        due = self._client.zrangebyscore(self._delayed, "-inf", self._clock())
        promoted: List[str] = []
        for raw_id in due:
            job_id = _as_text(raw_id)
            # Only the process whose ZREM succeeds pushes the job.
            if self._client.zrem(self._delayed, job_id) != 1:
                continue
            with self._client.pipeline() as pipe:
                pipe.hset(self._job_key(job_id), "state", JobState.WAITING)
                pipe.lpush(self._waiting, job_id)
                pipe.execute()
            promoted.append(job_id)
        if promoted:
            logger.debug("job.delayed_promoted", job_ids=promoted)
        return promoted

    def requeue_stalled(self) -> Dict[str, List[str]]:
        """Recover active jobs whose worker stopped renewing the lease.

        A stalled job goes back to ``waiting`` without spending an attempt,
        unless it has now stalled more than ``max_stalled_count`` times, in
        which case it is failed.
        """
        recovered: Dict[str, List[str]] = {"requeued": [], "failed": []}
        for raw_id in self._client.lrange(self._active, 0, -1):
            job_id = _as_text(raw_id)
            outcome = self._recover_if_stalled(job_id)
            if outcome:
                recovered[outcome].append(job_id)
        return recovered

    def _recover_if_stalled(self, job_id: str) -> Optional[str]:
        job_key = self._job_key(job_id)
        lease_key = self._lease_key(job_id)
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(self._active, lease_key, job_key)
                if pipe.exists(lease_key):
                    pipe.unwatch()
                    return None
                stalled_count = int(_as_text(pipe.hget(job_key, "stalled_count")) or 0) + 1
                job_type = _as_text(pipe.hget(job_key, "type")) or ""
                pipe.multi()
                pipe.lrem(self._active, 1, job_id)
                pipe.hset(job_key, "stalled_count", stalled_count)
                if stalled_count > self.max_stalled_count:
                    pipe.hset(
                        job_key,
                        mapping={
                            "state": JobState.FAILED,
                            "last_error": STALLED_ERROR,
                            "finished_at": self._clock(),
                        },
                    )
                    pipe.lpush(self._failed, job_id)
                    outcome = "failed"
                else:
                    pipe.hincrby(job_key, "attempts", -1)
                    pipe.hset(
                        job_key,
                        mapping={"state": JobState.WAITING, "claimed_at": ""},
                    )
                    pipe.lpush(self._waiting, job_id)
                    outcome = "requeued"
                removed = pipe.execute()[0]
            except WatchError:
                return None
        if not removed:
            return None
        log = logger.bind(job_id=job_id, job_type=job_type, stalled_count=stalled_count)
        if outcome == "failed":
            log.error("job.stalled_failed")
        else:
            log.warning("job.stalled_requeued")
        return outcome

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Job]:
        raw = self._client.hgetall(self._job_key(job_id))
        if not raw:
            return None
        data = {_as_text(k): _as_text(v) for k, v in raw.items()}
        return Job(
            id=data["id"],
            payload=JobPayload.model_validate(json.loads(data["payload"])),
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("max_attempts") or self.max_attempts),
            backoff_base=float(data.get("backoff_base") or self.backoff_base),
            state=data.get("state") or JobState.WAITING,
            stalled_count=int(data.get("stalled_count") or 0),
            last_error=data.get("last_error") or "",
            created_at=float(data.get("created_at") or 0.0),
        )

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def counts(self) -> Dict[str, int]:
        with self._client.pipeline(transaction=False) as pipe:
            pipe.llen(self._waiting)
            pipe.llen(self._active)
            pipe.zcard(self._delayed)
            pipe.llen(self._failed)
            waiting, active, delayed, failed = pipe.execute()
        return {
            JobState.WAITING: waiting,
            JobState.ACTIVE: active,
            JobState.DELAYED: delayed,
            JobState.FAILED: failed,
        }

    def failed_job_ids(self) -> List[str]:
        return [_as_text(v) for v in self._client.lrange(self._failed, 0, -1)]

    def enqueued_total(self) -> int:
        return int(_as_text(self._client.get(self._enqueued_total)) or 0)


def _as_text(value: Optional[bytes | str]) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode()
    return value
