"""Job DTOs.

- ``JobPayload``: the wire schema of a queued job::

      {type: "create-order"|"update-order-status"|"process-payment",
       orderId?, orderData?, newStatus?, paymentData?}

  Accepts both the camelCase wire names and snake_case attribute names.
- ``Job``: a job as stored by the queue, with its retry bookkeeping.
- ``JobOutcome``: what one processing attempt resulted in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from modules.jobs.constants import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    JobState,
    JobType,
)


class JobPayload(BaseModel):
    """Immutable payload of a fulfillment job."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: JobType
    order_id: Optional[UUID] = Field(default=None, alias="orderId")
    order_data: Optional[Dict[str, Any]] = Field(default=None, alias="orderData")
    new_status: Optional[str] = Field(default=None, alias="newStatus")
    payment_data: Optional[Dict[str, Any]] = Field(default=None, alias="paymentData")

    @model_validator(mode="after")
    def required_fields_for_type(self):
        if self.type == JobType.CREATE_ORDER and not self.order_data:
            raise ValueError("create-order jobs require orderData.")
        if self.type == JobType.UPDATE_ORDER_STATUS and not (
            self.order_id and self.new_status
        ):
            raise ValueError("update-order-status jobs require orderId and newStatus.")
        if self.type == JobType.PROCESS_PAYMENT and not (
            self.order_id and self.payment_data is not None
        ):
            raise ValueError("process-payment jobs require orderId and paymentData.")
        return self

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def backoff_delay(attempt: int, base: float = DEFAULT_BACKOFF_BASE_SECONDS) -> float:
    """Exponential backoff: ``base``, ``2 * base``, ``4 * base`` ... for attempts 1, 2, 3."""
    return base * (2 ** max(attempt - 1, 0))


@dataclass
class Job:
    """A queued unit of work and its retry bookkeeping."""

    id: str
    payload: JobPayload
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS
    state: str = JobState.WAITING
    stalled_count: int = 0
    last_error: str = ""
    created_at: float = 0.0

    @property
    def type(self) -> str:
        return self.payload.type

    @property
    def has_attempts_left(self) -> bool:
        return self.attempts < self.max_attempts

    def next_backoff(self) -> float:
        return backoff_delay(self.attempts, self.backoff_base)


@dataclass(frozen=True)
class JobOutcome:
    job_id: str
    job_type: str
    state: str
    attempts: int
    error: str = ""
    result: Optional[Dict[str, Any]] = None
