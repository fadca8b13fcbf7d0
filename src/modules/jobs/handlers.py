"""Job type -> fulfillment service call.

Handlers run with the system requester: authorization happened when the
job was enqueued.  A malformed payload surfaces as ``InvalidRequest`` so
the worker fails it without retrying.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Dict

from pydantic import ValidationError

from modules.jobs.constants import JobType
from modules.jobs.exceptions import UnknownJobType
from modules.orders.dtos import CreateOrderDTO, PaymentResultDTO, Requester
from modules.orders.exceptions import InvalidRequest

if TYPE_CHECKING:
    from modules.jobs.dtos import Job
    from modules.orders.services import OrderFulfillmentService

JobHandler = Callable[["Job"], Dict[str, Any]]


def idempotency_key_for(job: Job) -> str:
    """Order idempotency key derived from the job id (stable across retries)."""
    return f"job:{job.id}"


class JobHandlerRegistry:
    def __init__(self, service: OrderFulfillmentService) -> None:
        self._service = service
        self._handlers: Dict[str, JobHandler] = {
            JobType.CREATE_ORDER: self.create_order,
            JobType.UPDATE_ORDER_STATUS: self.update_status,
            JobType.PROCESS_PAYMENT: self.process_payment,
        }

    def __call__(self, job: Job) -> Dict[str, Any]:
        handler = self._handlers.get(str(job.type))
        if handler is None:
            raise UnknownJobType(f"No handler for job type {job.type!r}.")
        return handler(job)

    def create_order(self, job: Job) -> Dict[str, Any]:
        data = dict(job.payload.order_data or {})
        data["idempotency_key"] = idempotency_key_for(job)
        try:
            dto = CreateOrderDTO.model_validate(data)
        except ValidationError as exc:
            raise InvalidRequest(f"Invalid order data: {exc}") from exc
        order = self._service.create_order(dto)
        return _summary(order)

    def update_status(self, job: Job) -> Dict[str, Any]:
        order = self._service.update_status(
            job.payload.order_id,
            job.payload.new_status,
            Requester.system(),
        )
        return _summary(order)

    def process_payment(self, job: Job) -> Dict[str, Any]:
        try:
            result = PaymentResultDTO.model_validate(job.payload.payment_data)
        except ValidationError as exc:
            raise InvalidRequest(f"Invalid payment data: {exc}") from exc
        order = self._service.process_payment(
            job.payload.order_id, result, Requester.system()
        )
        return _summary(order)


def _summary(order) -> Dict[str, Any]:
    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
    }
