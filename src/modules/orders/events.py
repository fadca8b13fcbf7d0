"""Domain events for the Orders bounded context.

Published to the notification collaborator after the corresponding
fulfillment operation has been persisted.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from shared.domain.events import DomainEvent


@dataclass(frozen=True, kw_only=True)
class OrderCreated(DomainEvent):
    """Raised when an order is created."""

    user_id: UUID
    total_amount: Decimal
    loyalty_points_earned: int


@dataclass(frozen=True, kw_only=True)
class OrderCancelled(DomainEvent):
    """Raised when an order is cancelled."""

    user_id: UUID
    points_reversed: int


@dataclass(frozen=True, kw_only=True)
class OrderStatusChanged(DomainEvent):
    """Raised when an order status changes."""

    user_id: UUID
    old_status: str
    new_status: str


@dataclass(frozen=True, kw_only=True)
class PaymentProcessed(DomainEvent):
    """Raised after a payment outcome has been applied to an order."""

    user_id: UUID
    payment_status: str
    transaction_id: str = ""
