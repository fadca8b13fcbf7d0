"""Lock provider exceptions."""

from __future__ import annotations

from modules.core.exceptions import FulfillmentError


class LockUnavailable(FulfillmentError):
    """The lock is held by someone else.

    Transient contention: the job layer retries it with backoff instead of
    surfacing it as a hard failure.
    """

    retryable = True

    def __init__(self, key: str) -> None:
        super().__init__(f"Lock {key} is held by another owner.")
        self.key = key
