"""Order state machine: pure decision logic, no I/O.

Allowed edges::

    pending   -> confirmed | cancelled
    confirmed -> delivered | cancelled
    delivered -> (terminal)
    cancelled -> (terminal)

A rating may be attached only to a delivered order that has none yet.
"""

from __future__ import annotations

from typing import Any, Optional

from modules.orders.constants import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    OrderStatus,
)
from modules.orders.exceptions import AlreadyRated, InvalidTransition


def can_transition(current: str, requested: str) -> bool:
    """Check whether ``current -> requested`` is an allowed edge."""
    return requested in VALID_TRANSITIONS.get(current, set())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def transition(current: str, requested: str) -> OrderStatus:
    """Return the new status, or raise ``InvalidTransition``."""
    if requested not in OrderStatus.values:
        raise InvalidTransition(
            current, requested, f"Unknown order status {requested!r}."
        )
    if not can_transition(current, requested):
        raise InvalidTransition(current, requested)
    return OrderStatus(requested)


def ensure_can_rate(status: str, existing_rating: Optional[Any]) -> None:
    """Raise unless a rating may be attached to an order in ``status``.

    Raises:
        InvalidTransition: the order is not delivered.
        AlreadyRated: a rating already exists.
    """
    if status != OrderStatus.DELIVERED:
        raise InvalidTransition(
            status,
            OrderStatus.DELIVERED,
            "Only delivered orders can be rated.",
        )
    if existing_rating is not None:
        raise AlreadyRated("Order has already been rated.")
