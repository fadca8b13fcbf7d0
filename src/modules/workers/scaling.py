"""Autoscaling controller for the worker pool.

Every ``check_interval`` seconds it samples host CPU% and memory% (psutil)
and the request rate, measured as jobs enqueued per second since the
previous sample.  Then:

- scale up by ``up_step`` when ANY metric exceeds its threshold;
- scale down by ``down_step`` when ALL metrics are below half of theirs.

The pool resize is clamped by the supervisor.  A reentrancy flag skips an
evaluation that starts while another is still running.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import psutil
import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ScalingThresholds:
    cpu_percent: float = 80.0
    memory_percent: float = 80.0
    request_rate: float = 1000.0
    up_step: int = 3
    down_step: int = 1


@dataclass(frozen=True)
class ScalingSample:
    cpu_percent: float
    memory_percent: float
    request_rate: float


class ScalingController:
    def __init__(
        self,
        current_size: Callable[[], int],
        resize: Callable[[int], int],
        request_counter: Callable[[], int],
        thresholds: Optional[ScalingThresholds] = None,
        check_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._current_size = current_size
        self._resize = resize
        self._request_counter = request_counter
        self.thresholds = thresholds or ScalingThresholds()
        self.check_interval = check_interval
        self._clock = clock
        self._guard = threading.Lock()
        self.is_scaling = False
        self._last_check: Optional[float] = None
        self._last_count: Optional[int] = None
        self._last_count_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def cpu_usage(self) -> float:
        return float(psutil.cpu_percent(interval=None))

    def memory_usage(self) -> float:
        return float(psutil.virtual_memory().percent)

    def request_rate(self) -> float:
        now = self._clock()
        count = self._request_counter()
        previous, previous_at = self._last_count, self._last_count_at
        self._last_count, self._last_count_at = count, now
        if previous is None or previous_at is None or now <= previous_at:
            return 0.0
        return max(count - previous, 0) / (now - previous_at)

    def sample(self) -> ScalingSample:
        return ScalingSample(
            cpu_percent=self.cpu_usage(),
            memory_percent=self.memory_usage(),
            request_rate=self.request_rate(),
        )

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def should_scale_up(self, sample: ScalingSample) -> bool:
        t = self.thresholds
        return (
            sample.cpu_percent > t.cpu_percent
            or sample.memory_percent > t.memory_percent
            or sample.request_rate > t.request_rate
        )

    def should_scale_down(self, sample: ScalingSample) -> bool:
        t = self.thresholds
        return (
            sample.cpu_percent < t.cpu_percent / 2
            and sample.memory_percent < t.memory_percent / 2
            and sample.request_rate < t.request_rate / 2
        )

    def tick(self) -> Optional[int]:
        """Evaluate if ``check_interval`` has passed since the last check."""
        now = self._clock()
        if self._last_check is not None and now - self._last_check < self.check_interval:
            return None
        self._last_check = now
        return self.check_and_scale()

    def check_and_scale(self) -> Optional[int]:
        """Run one evaluation; returns the new pool size when it changed."""
        if not self._guard.acquire(blocking=False):
            logger.info("scaling.skipped_in_progress")
            return None
        self.is_scaling = True
        try:
            sample = self.sample()
            current = self._current_size()
            logger.info(
                "scaling.metrics",
                cpu_percent=sample.cpu_percent,
                memory_percent=sample.memory_percent,
                request_rate=sample.request_rate,
                pool_size=current,
            )
            if self.should_scale_up(sample):
                target = current + self.thresholds.up_step
            elif self.should_scale_down(sample):
                target = current - self.thresholds.down_step
            else:
                return None
            new_size = self._resize(target)
            if new_size == current:
                return None
            logger.info("scaling.resized", old_size=current, new_size=new_size)
            return new_size
        except Exception:
            logger.exception("scaling.check_failed")
            return None
        finally:
            self.is_scaling = False
            self._guard.release()
