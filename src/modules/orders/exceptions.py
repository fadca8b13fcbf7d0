"""Order domain exceptions.

Raised by the state machine and the fulfillment service when business
rules are violated.  Synchronous callers receive them immediately; the
job layer fails the job on them without retrying (see
``FulfillmentError.retryable``).

Stock errors live with the stock ledger and are re-exported here so
callers can import the whole taxonomy from one place.
"""

from __future__ import annotations

from modules.core.exceptions import FulfillmentError
from modules.locks.exceptions import LockUnavailable
from modules.products.exceptions import (
    InsufficientStock,
    ProductNotFound,
    ProductUnavailable,
)

__all__ = [
    "AlreadyRated",
    "FulfillmentError",
    "InsufficientStock",
    "InvalidRequest",
    "InvalidTransition",
    "LockUnavailable",
    "NotAuthorized",
    "OrderNotFound",
    "PaymentAlreadyProcessed",
    "ProductNotFound",
    "ProductUnavailable",
]


class InvalidRequest(FulfillmentError):
    """Malformed input (empty items, bad quantities, missing delivery data)."""


class InvalidTransition(FulfillmentError):
    """The requested status change is not an edge of the state machine."""

    def __init__(self, current: str, requested: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Cannot transition from {current} to {requested}."
        )
        self.current = current
        self.requested = requested


class AlreadyRated(FulfillmentError):
    """The order already carries a rating."""


class NotAuthorized(FulfillmentError):
    """The requester may not perform this operation on the order."""


class OrderNotFound(FulfillmentError):
    """The requested order does not exist."""


class PaymentAlreadyProcessed(FulfillmentError):
    """Payment was already settled (paid or failed) for this order."""
