"""Order DTOs for the Service Layer.

Framework-agnostic data transfer objects using Pydantic v2.
These are the contracts between callers (the job queue, the request
path) and the fulfillment service.  DTOs are immutable (``frozen=True``).

- ``CreateOrderItemDTO``: product reference + quantity.  Prices are never
  accepted from callers; any extra field is ignored.
- ``DeliveryInfoDTO``: delivery type, address and instructions.
- ``CreateOrderDTO``: input for order creation (nested items).
- ``Requester``: who is asking (user id + role).
- ``RateOrderDTO`` / ``PaymentResultDTO``: rating and payment outcome input.
- ``OrderOutputDTO``: JSON-friendly snapshot of an order.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from modules.orders.constants import (
    MAX_RATING,
    MIN_RATING,
    DeliveryType,
    PaymentMethod,
    Role,
)

if TYPE_CHECKING:
    from modules.orders.models import Order


# ---------------------------------------------------------------------------
# Input DTOs
# ---------------------------------------------------------------------------


class CreateOrderItemDTO(BaseModel):
    """Immutable DTO for a single order item in a creation request.

    ``unit_price`` is resolved by the Service Layer from the catalog.
    """

    model_config = ConfigDict(frozen=True)

    product_id: UUID
    quantity: int
    notes: str = ""

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Quantity must be at least 1.")
        return v


class DeliveryInfoDTO(BaseModel):
    """Where and how the order is handed over.

    A street, city and zip code are required for home delivery; pickup
    orders need none of them.
    """

    model_config = ConfigDict(frozen=True)

    delivery_type: DeliveryType = DeliveryType.DELIVERY
    street: str = ""
    city: str = ""
    zip_code: str = ""
    instructions: str = ""

    @model_validator(mode="after")
    def address_required_for_delivery(self):
        if self.delivery_type == DeliveryType.DELIVERY and not (
            self.street and self.city and self.zip_code
        ):
            raise ValueError("Delivery orders require street, city and zip code.")
        return self


class CreateOrderDTO(BaseModel):
    """Immutable DTO for order creation requests.

    Validates:
    - ``items`` must contain at least one item.
    - Each item quantity must be positive.
    """

    model_config = ConfigDict(frozen=True)

    user_id: UUID
    items: List[CreateOrderItemDTO]
    delivery: DeliveryInfoDTO
    payment_method: PaymentMethod
    notes: Optional[str] = ""
    idempotency_key: Optional[str] = None

    @field_validator("items")
    @classmethod
    def items_must_not_be_empty(
        cls, v: List[CreateOrderItemDTO]
    ) -> List[CreateOrderItemDTO]:
        if not v:
            raise ValueError("Order must have at least one item.")
        return v

    def quantities_by_product(self) -> Dict[str, int]:
        """Total requested quantity per distinct product."""
        totals: Counter[str] = Counter()
        for item in self.items:
            totals[str(item.product_id)] += item.quantity
        return dict(totals)


class Requester(BaseModel):
    """The authenticated caller of a fulfillment operation."""

    model_config = ConfigDict(frozen=True)

    user_id: Optional[UUID] = None
    role: Role = Role.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def owns(self, order: Order) -> bool:
        return self.user_id is not None and str(self.user_id) == str(order.user_id)

    @classmethod
    def system(cls) -> Requester:
        """Requester used by queued jobs (authorized when enqueued)."""
        return cls(user_id=None, role=Role.ADMIN)


class RateOrderDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    rating: int
    review: str = ""

    @field_validator("rating")
    @classmethod
    def rating_in_range(cls, v: int) -> int:
        if not MIN_RATING <= v <= MAX_RATING:
            raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}.")
        return v


class PaymentResultDTO(BaseModel):
    """Outcome reported by the payment gateway for one order."""

    model_config = ConfigDict(frozen=True)

    success: bool
    transaction_id: Optional[str] = None
    message: str = ""


# ---------------------------------------------------------------------------
# Output DTOs
# ---------------------------------------------------------------------------


class OrderItemOutputDTO(BaseModel):
    """Immutable DTO for an order line."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    product_id: UUID
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


class OrderOutputDTO(BaseModel):
    """Immutable snapshot of an order (job results, notifications)."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    order_number: str
    user_id: UUID
    status: str
    payment_status: str
    total_amount: Decimal
    loyalty_points_earned: Optional[int]
    created_at: datetime
    items: List[OrderItemOutputDTO]

    @classmethod
    def from_entity(cls, order: Order) -> OrderOutputDTO:
        items = [
            OrderItemOutputDTO(
                id=item.id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                subtotal=item.subtotal,
            )
            for item in order.items.all()
        ]
        return cls(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            status=order.status,
            payment_status=order.payment_status,
            total_amount=order.total_amount,
            loyalty_points_earned=order.loyalty_points_earned,
            created_at=order.created_at,
            items=items,
        )
