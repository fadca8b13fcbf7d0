"""Product and stock ledger exceptions.

Business-rule violations: surfaced to the caller as client errors and
never retried by the job layer.  Any partial reservation made before one
of these is raised is rolled back by the stock ledger.
"""

from __future__ import annotations

from modules.core.exceptions import FulfillmentError


class ProductNotFound(FulfillmentError):
    """A product referenced by an order item does not exist."""


class ProductUnavailable(FulfillmentError):
    """The product is flagged unavailable and cannot be sold."""


class InsufficientStock(FulfillmentError):
    """Not enough stock to fulfil the requested quantity."""
