"""Job queue exceptions."""

from __future__ import annotations

from modules.core.exceptions import FulfillmentError


class UnknownJobType(FulfillmentError):
    """No handler is registered for the job's type."""


class JobNotFound(Exception):
    """The job record no longer exists in the queue store."""
