"""Helpers that enqueue the three fulfillment job types."""

from __future__ import annotations

from typing import Any, Mapping, Union
from uuid import UUID

from modules.jobs.constants import JobType
from modules.jobs.dtos import Job, JobPayload
from modules.jobs.queue import RedisJobQueue
from modules.orders.dtos import CreateOrderDTO, PaymentResultDTO


def enqueue_create_order(
    queue: RedisJobQueue, order_data: Union[CreateOrderDTO, Mapping[str, Any]]
) -> Job:
    if isinstance(order_data, CreateOrderDTO):
        order_data = order_data.model_dump(mode="json", exclude={"idempotency_key"})
    return queue.enqueue(
        JobPayload(type=JobType.CREATE_ORDER, order_data=dict(order_data))
    )


def enqueue_update_status(
    queue: RedisJobQueue, order_id: Union[UUID, str], new_status: str
) -> Job:
    return queue.enqueue(
        JobPayload(
            type=JobType.UPDATE_ORDER_STATUS,
            order_id=order_id,
            new_status=str(new_status),
        )
    )


def enqueue_process_payment(
    queue: RedisJobQueue,
    order_id: Union[UUID, str],
    payment_data: Union[PaymentResultDTO, Mapping[str, Any]],
) -> Job:
    if isinstance(payment_data, PaymentResultDTO):
        payment_data = payment_data.model_dump(mode="json")
    return queue.enqueue(
        JobPayload(
            type=JobType.PROCESS_PAYMENT,
            order_id=order_id,
            payment_data=dict(payment_data),
        )
    )
