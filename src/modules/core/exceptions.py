"""Base exception for the fulfillment domain.

Every business-rule violation raised by a service or ledger derives from
``FulfillmentError``.  ``retryable`` tells the job layer whether running
the same operation again could succeed: business-rule violations cannot,
transient contention can.
"""

from __future__ import annotations


class FulfillmentError(Exception):
    """Base class for client-facing fulfillment errors."""

    retryable: bool = False
