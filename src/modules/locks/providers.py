"""Distributed lock provider backed by Redis.

A lock is a single Redis key (``lock:<resource_type>:<resource_id>``)
holding an owner token, created with ``SET NX EX`` so acquisition is one
atomic conditional set and a crashed holder's lock expires on its own.

Release is a check-and-delete: the key is removed only while it still
holds the caller's token, so a holder whose lock already expired (and was
re-acquired by another process) cannot release the new owner's lock.
The check-and-delete runs inside a ``WATCH``/``MULTI`` transaction.

Lock waiters are not queued: contention fails fast with ``None`` from
``acquire`` or ``LockUnavailable`` from ``lock``/``with_lock``, unless the
caller explicitly asks to poll for a bounded ``blocking_timeout``.
"""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

import structlog
from redis import Redis
from redis.exceptions import WatchError

from modules.locks.exceptions import LockUnavailable

logger = structlog.get_logger(__name__)

R = TypeVar("R")

DEFAULT_TTL_SECONDS = 30
DEFAULT_RETRY_INTERVAL = 0.05


class ILockProvider(ABC):
    """Contract for the mutual-exclusion primitive used by the ledgers."""

    @abstractmethod
    def key(self, resource_type: str, resource_id: object) -> str:
        """Build the namespaced lock key for a resource."""

    @abstractmethod
    def acquire(self, key: str, ttl: Optional[int] = None) -> Optional[str]:
        """Try once to take the lock; return the owner token or ``None``."""

    @abstractmethod
    def release(self, key: str, token: str) -> bool:
        """Delete the lock only if ``token`` still owns it."""

    @contextmanager
    def lock(
        self,
        key: str,
        ttl: Optional[int] = None,
        blocking_timeout: float = 0.0,
    ) -> Iterator[str]:
        """Hold ``key`` for the duration of the ``with`` block.

        Raises:
            LockUnavailable: the lock could not be taken (after polling for
                ``blocking_timeout`` seconds when one is given).
        """
        token = self._acquire_polling(key, ttl, blocking_timeout)
        if token is None:
            logger.info("lock.unavailable", key=key)
            raise LockUnavailable(key)
        try:
            yield token
        finally:
            self.release(key, token)

    def with_lock(
        self, key: str, operation: Callable[[], R], ttl: Optional[int] = None
    ) -> R:
        """Run ``operation`` under ``key``; the lock is released on every exit path."""
        with self.lock(key, ttl):
            return operation()

    def _acquire_polling(
        self, key: str, ttl: Optional[int], blocking_timeout: float
    ) -> Optional[str]:
        deadline = time.monotonic() + blocking_timeout
        while True:
            token = self.acquire(key, ttl)
            if token is not None or time.monotonic() >= deadline:
                return token
            time.sleep(DEFAULT_RETRY_INTERVAL)


class RedisLockProvider(ILockProvider):
    """Lock provider over a ``redis.Redis`` client (real or fakeredis)."""

    def __init__(
        self,
        client: Redis,
        prefix: str = "lock",
        default_ttl: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._default_ttl = default_ttl

    def key(self, resource_type: str, resource_id: object) -> str:
        return f"{self._prefix}:{resource_type}:{resource_id}"

    def acquire(self, key: str, ttl: Optional[int] = None) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = self._client.set(key, token, nx=True, ex=ttl or self._default_ttl)
        if not acquired:
            return None
        logger.debug("lock.acquired", key=key, ttl=ttl or self._default_ttl)
        return token

    def release(self, key: str, token: str) -> bool:
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(key)
                current = pipe.get(key)
                if _as_text(current) != token:
                    pipe.unwatch()
                    logger.warning("lock.release_skipped", key=key)
                    return False
                pipe.multi()
                pipe.delete(key)
                pipe.execute()
            except WatchError:
                logger.warning("lock.release_raced", key=key)
                return False
        logger.debug("lock.released", key=key)
        return True

    def is_locked(self, key: str) -> bool:
        return bool(self._client.exists(key))


def _as_text(value: Optional[bytes | str]) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode()
    return value
