"""Unit tests for the order state machine.

Covers:
- Every allowed edge and every rejected one.
- Terminal states have no outgoing edges.
- Unknown target statuses are rejected.
- Rating preconditions.
"""

from __future__ import annotations

import pytest

from modules.orders import state_machine
from modules.orders.constants import TERMINAL_STATES, VALID_TRANSITIONS, OrderStatus
from modules.orders.exceptions import AlreadyRated, InvalidTransition

pytestmark = pytest.mark.unit

ALLOWED = [
    (OrderStatus.PENDING, OrderStatus.CONFIRMED),
    (OrderStatus.PENDING, OrderStatus.CANCELLED),
    (OrderStatus.CONFIRMED, OrderStatus.DELIVERED),
    (OrderStatus.CONFIRMED, OrderStatus.CANCELLED),
]

REJECTED = [
    (current, requested)
    for current in OrderStatus.values
    for requested in OrderStatus.values
    if (current, requested) not in ALLOWED
]


class TestTransitions:
    @pytest.mark.parametrize("current,requested", ALLOWED)
    def test_allowed_edges(self, current, requested):
        assert state_machine.can_transition(current, requested)
        assert state_machine.transition(current, requested) == requested

    @pytest.mark.parametrize("current,requested", REJECTED)
    def test_rejected_edges(self, current, requested):
        assert not state_machine.can_transition(current, requested)
        with pytest.raises(InvalidTransition) as exc_info:
            state_machine.transition(current, requested)
        assert exc_info.value.current == current
        assert exc_info.value.requested == requested

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATES))
    def test_terminal_states_have_no_edges(self, status):
        assert state_machine.is_terminal(status)
        assert VALID_TRANSITIONS[status] == set()

    def test_delivered_cannot_go_back_to_confirmed(self):
        with pytest.raises(InvalidTransition):
            state_machine.transition(OrderStatus.DELIVERED, OrderStatus.CONFIRMED)

    def test_unknown_status_rejected(self):
        with pytest.raises(InvalidTransition, match="Unknown order status"):
            state_machine.transition(OrderStatus.PENDING, "shipped")

    def test_transition_returns_enum_member(self):
        result = state_machine.transition("pending", "confirmed")
        assert result is OrderStatus.CONFIRMED


class TestRating:
    def test_delivered_unrated_order_can_be_rated(self):
        state_machine.ensure_can_rate(OrderStatus.DELIVERED, None)

    @pytest.mark.parametrize(
        "status",
        [OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
    )
    def test_only_delivered_orders_can_be_rated(self, status):
        with pytest.raises(InvalidTransition):
            state_machine.ensure_can_rate(status, None)

    def test_second_rating_rejected(self):
        with pytest.raises(AlreadyRated):
            state_machine.ensure_can_rate(OrderStatus.DELIVERED, 4)
