"""Restart rate limiter for the worker pool.

A circuit breaker over worker restarts: while CLOSED, up to
``max_restarts`` restarts are allowed per sliding ``window``.  One more
trips it OPEN, and every restart is refused until ``cooldown`` seconds
have passed, after which the history is cleared and it closes again.
This keeps a crash-looping worker from exhausting the host.
"""

from __future__ import annotations

import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Optional

import structlog

logger = structlog.get_logger(__name__)


class BreakerState(Enum):
    CLOSED = "closed"  # restarts allowed
    OPEN = "open"  # restarts refused until the cooldown ends


class RestartRateLimiter:
    def __init__(
        self,
        max_restarts: int = 5,
        window: float = 60.0,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_restarts = max_restarts
        self.window = window
        self.cooldown = cooldown
        self._clock = clock
        self._history: Deque[float] = deque()
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> BreakerState:
        if self._opened_at is None:
            return BreakerState.CLOSED
        if self._clock() - self._opened_at >= self.cooldown:
            return BreakerState.CLOSED
        return BreakerState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state == BreakerState.OPEN

    def allow(self) -> bool:
        """Record a restart if one is allowed right now."""
        now = self._clock()
        if self._opened_at is not None:
            if now - self._opened_at < self.cooldown:
                return False
            self.reset()
        while self._history and now - self._history[0] > self.window:
            self._history.popleft()
        if len(self._history) >= self.max_restarts:
            self._opened_at = now
            logger.error(
                "supervisor.restart_circuit_open",
                restarts=len(self._history),
                window=self.window,
                cooldown=self.cooldown,
            )
            return False
        self._history.append(now)
        return True

    def reset(self) -> None:
        self._history.clear()
        self._opened_at = None
        logger.info("supervisor.restart_circuit_closed")
