"""Worker pool supervisor.

The supervisor (master) process starts ``size`` worker processes, each
running ``target(control, worker_id)`` where ``control`` is the receiving
end of a one-way pipe.  It then watches the process sentinels:

- A worker that exits while it is still wanted is replaced right away,
  subject to the restart rate limiter.  Refused restarts are retried on
  later monitor cycles once the limiter closes again.
- On SIGTERM/SIGINT (or ``request_stop``) the supervisor sends
  ``"shutdown"`` to every worker, waits up to ``shutdown_timeout``
  seconds for them to drain and exit, and force-terminates the rest.
- ``resize`` grows the pool by starting workers, or shrinks it by sending
  ``"shutdown"`` to the newest ones.
"""

from __future__ import annotations

import itertools
import multiprocessing
import signal
import threading
import time
from dataclasses import dataclass, field
from multiprocessing.connection import Connection, wait
from multiprocessing.process import BaseProcess
from typing import Callable, Dict, List, Optional

import structlog

from modules.jobs.worker import SHUTDOWN_MESSAGE
from modules.workers.limiter import RestartRateLimiter

logger = structlog.get_logger(__name__)

WorkerTarget = Callable[[Connection, str], None]

KILL_GRACE_SECONDS = 1.0


@dataclass
class WorkerHandle:
    worker_id: str
    process: BaseProcess
    control: Connection
    started_at: float = field(default_factory=time.monotonic)
    retire_deadline: Optional[float] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def retiring(self) -> bool:
        return self.retire_deadline is not None


@dataclass(frozen=True)
class ShutdownReport:
    stopped: int
    forced: int


class Supervisor:
    def __init__(
        self,
        target: WorkerTarget,
        size: int,
        min_size: int = 1,
        max_size: Optional[int] = None,
        shutdown_timeout: float = 10.0,
        start_method: str = "fork",
        restart_limiter: Optional[RestartRateLimiter] = None,
        monitor_interval: float = 1.0,
        on_tick: Optional[Callable[[], None]] = None,
    ) -> None:
        self._target = target
        self.min_size = max(min_size, 1)
        self.max_size = max(max_size or size, self.min_size)
        self.target_size = self._clamp(size)
        self.shutdown_timeout = shutdown_timeout
        self._ctx = multiprocessing.get_context(start_method)
        self._limiter = restart_limiter or RestartRateLimiter()
        self._monitor_interval = monitor_interval
        self.on_tick = on_tick
        self._workers: Dict[str, WorkerHandle] = {}
        self._ids = itertools.count(1)
        self._stop_requested = threading.Event()
        self._started = False
        self.restarts = 0
        self.forced_terminations = 0

    # ------------------------------------------------------------------
    # Pool state
    # ------------------------------------------------------------------

    @property
    def workers(self) -> List[WorkerHandle]:
        return list(self._workers.values())

    @property
    def size(self) -> int:
        """Live workers that are not being retired."""
        return sum(
            1
            for handle in self._workers.values()
            if not handle.retiring and handle.process.is_alive()
        )

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def _clamp(self, size: int) -> int:
        return min(max(size, self.min_size), self.max_size)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for _ in range(self.target_size):
            self._spawn()
        logger.info("supervisor.started", workers=self.target_size)

    def run(self) -> ShutdownReport:
        """Start the pool and supervise it until a stop is requested."""
        self.install_signal_handlers()
        self.start()
        try:
            while not self.stop_requested:
                self.monitor_once(self._monitor_interval)
        finally:
            report = self.shutdown()
        return report

    def install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

    def _handle_signal(self, signum, frame) -> None:
        logger.info("supervisor.signal_received", signal=signal.Signals(signum).name)
        self.request_stop()

    def request_stop(self) -> None:
        self._stop_requested.set()

    def monitor_once(self, timeout: Optional[float] = None) -> None:
        """Wait for a worker exit (or ``timeout``), then repair the pool."""
        sentinels = [h.process.sentinel for h in self._workers.values()]
        if sentinels:
            wait(sentinels, timeout=timeout)
        elif timeout:
            self._stop_requested.wait(timeout)
        self.reap()
        if self.stop_requested:
            return
        self._enforce_retire_deadlines()
        self.replenish()
        if self.on_tick is not None:
            self.on_tick()

    def reap(self) -> List[WorkerHandle]:
        """Forget exited workers and return them."""
        exited = []
        for handle in list(self._workers.values()):
            if handle.process.is_alive():
                continue
            handle.process.join(0)
            self._forget(handle)
            exited.append(handle)
            if handle.retiring or self.stop_requested:
                logger.info(
                    "supervisor.worker_retired",
                    worker_id=handle.worker_id,
                    exitcode=handle.process.exitcode,
                )
            else:
                logger.warning(
                    "supervisor.worker_exited",
                    worker_id=handle.worker_id,
                    pid=handle.pid,
                    exitcode=handle.process.exitcode,
                )
        return exited

    def replenish(self) -> int:
        """Start workers until the pool is back at ``target_size``."""
        spawned = 0
        while self.size < self.target_size:
            if not self._limiter.allow():
                logger.error(
                    "supervisor.restart_suppressed",
                    size=self.size,
                    target_size=self.target_size,
                )
                break
            handle = self._spawn()
            self.restarts += 1
            spawned += 1
            logger.info(
                "supervisor.worker_restarted",
                worker_id=handle.worker_id,
                pid=handle.pid,
            )
        return spawned

    def resize(self, size: int) -> int:
        """Set the pool's target size (clamped to ``[min_size, max_size]``)."""
        new_size = self._clamp(size)
        if new_size == self.target_size:
            return new_size
        old_size = self.target_size
        self.target_size = new_size
        if new_size > old_size:
            for _ in range(new_size - self.size):
                self._spawn()
        else:
            active = [h for h in self._workers.values() if not h.retiring]
            for handle in sorted(active, key=lambda h: h.started_at)[new_size:]:
                self._retire(handle)
        logger.info("supervisor.resized", old_size=old_size, new_size=new_size)
        return new_size

    def shutdown(self, timeout: Optional[float] = None) -> ShutdownReport:
        """Drain every worker, force-terminating those that overrun ``timeout``."""
        timeout = self.shutdown_timeout if timeout is None else timeout
        self.request_stop()
        handles = list(self._workers.values())
        logger.info("supervisor.shutting_down", workers=len(handles), timeout=timeout)
        for handle in handles:
            self._send_shutdown(handle)

        deadline = time.monotonic() + timeout
        for handle in handles:
            handle.process.join(max(deadline - time.monotonic(), 0))

        forced = 0
        for handle in handles:
            if handle.process.is_alive():
                self._force_terminate(handle)
                forced += 1
            self._forget(handle)
        self.forced_terminations += forced
        report = ShutdownReport(stopped=len(handles) - forced, forced=forced)
        logger.info("supervisor.stopped", stopped=report.stopped, forced=report.forced)
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _spawn(self) -> WorkerHandle:
        worker_id = f"worker-{next(self._ids)}"
        receiver, sender = self._ctx.Pipe(duplex=False)
        process = self._ctx.Process(
            target=self._target,
            args=(receiver, worker_id),
            name=worker_id,
        )
        process.start()
        receiver.close()
        handle = WorkerHandle(worker_id=worker_id, process=process, control=sender)
        self._workers[worker_id] = handle
        logger.info("supervisor.worker_started", worker_id=worker_id, pid=process.pid)
        return handle

    def _retire(self, handle: WorkerHandle) -> None:
        handle.retire_deadline = time.monotonic() + self.shutdown_timeout
        self._send_shutdown(handle)

    def _enforce_retire_deadlines(self) -> None:
        now = time.monotonic()
        for handle in list(self._workers.values()):
            if handle.retiring and now >= handle.retire_deadline:
                self._force_terminate(handle)
                self.forced_terminations += 1
                self._forget(handle)

    def _send_shutdown(self, handle: WorkerHandle) -> None:
        try:
            handle.control.send(SHUTDOWN_MESSAGE)
        except (BrokenPipeError, OSError):
            # Already gone; the join below or the next reap collects it.
            logger.debug("supervisor.shutdown_not_delivered", worker_id=handle.worker_id)

    def _force_terminate(self, handle: WorkerHandle) -> None:
        logger.error(
            "supervisor.worker_force_terminated",
            worker_id=handle.worker_id,
            pid=handle.pid,
        )
        handle.process.terminate()
        handle.process.join(KILL_GRACE_SECONDS)
        if handle.process.is_alive():
            handle.process.kill()
            handle.process.join(KILL_GRACE_SECONDS)

    def _forget(self, handle: WorkerHandle) -> None:
        self._workers.pop(handle.worker_id, None)
        handle.control.close()
