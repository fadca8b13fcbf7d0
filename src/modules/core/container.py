"""Composition root: wires repositories, ledgers, locks and the job queue.

Each worker process builds its own container after the fork, so it gets
its own Redis connection pool and database connection.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog
from django.conf import settings
from django.db import connections
from redis import Redis

from modules.jobs.handlers import JobHandlerRegistry
from modules.jobs.queue import RedisJobQueue
from modules.locks.providers import RedisLockProvider
from modules.loyalty.ledger import LoyaltyLedger
from modules.notifications.services import CeleryNotifier, INotifier
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.services import OrderFulfillmentService
from modules.products.ledger import StockLedger
from modules.products.repositories.django_repository import ProductDjangoRepository

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    redis: Redis
    locks: RedisLockProvider
    stock: StockLedger
    loyalty: LoyaltyLedger
    notifier: INotifier
    orders: OrderFulfillmentService
    queue: RedisJobQueue
    handlers: JobHandlerRegistry

    def close(self) -> None:
        """Release the process's database and Redis connections."""
        connections.close_all()
        self.redis.connection_pool.disconnect()


def default_redis() -> Redis:
    from django_redis import get_redis_connection

    return get_redis_connection("default")


def build_queue(redis_client: Redis) -> RedisJobQueue:
    return RedisJobQueue(
        redis_client,
        name=settings.JOB_QUEUE_NAME,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
        backoff_base=settings.JOB_BACKOFF_BASE_SECONDS,
        lease_seconds=settings.JOB_LEASE_SECONDS,
        max_stalled_count=settings.JOB_MAX_STALLED_COUNT,
        completed_retention=settings.JOB_COMPLETED_RETENTION_SECONDS,
    )


def build_container(
    redis_client: Optional[Redis] = None,
    notifier: Optional[INotifier] = None,
) -> ServiceContainer:
    redis_client = redis_client if redis_client is not None else default_redis()
    locks = RedisLockProvider(
        redis_client,
        prefix=settings.LOCK_KEY_PREFIX,
        default_ttl=settings.LOCK_TTL_SECONDS,
    )
    stock = StockLedger(ProductDjangoRepository(), locks)
    loyalty = LoyaltyLedger()
    notifier = notifier or CeleryNotifier()
    orders = OrderFulfillmentService(
        order_repository=OrderDjangoRepository(),
        stock_ledger=stock,
        loyalty_ledger=loyalty,
        lock_provider=locks,
        notifier=notifier,
        points_rate=settings.LOYALTY_POINTS_RATE,
        estimated_delivery=timedelta(hours=settings.ESTIMATED_DELIVERY_HOURS),
    )
    queue = build_queue(redis_client)
    logger.debug("container.built", queue=queue.name)
    return ServiceContainer(
        redis=redis_client,
        locks=locks,
        stock=stock,
        loyalty=loyalty,
        notifier=notifier,
        orders=orders,
        queue=queue,
        handlers=JobHandlerRegistry(orders),
    )
