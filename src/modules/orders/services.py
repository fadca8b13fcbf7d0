"""Order fulfillment service layer (Use Cases).

Orchestrates the state machine, the stock and loyalty ledgers and the
lock provider so that create / cancel / status-update / rate / payment
operations are atomic from the caller's perspective.

Business rules enforced:
- Totals are computed from the catalog's current prices, never from
  caller input.
- Multi-item stock reservation is all-or-nothing (compensating release).
- Loyalty award = floor(rate x total), recorded once on the order so the
  reversal on cancellation is exact and idempotent.
- Every mutation of an existing order runs under ``lock:order:<id>`` so
  a status update cannot race a cancellation.
- Status transitions are validated by the state machine; every change is
  recorded in the status history.
- Notifications are published after the change is persisted and never
  roll it back.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, List, Optional, TypeVar

import structlog
from django.db import IntegrityError, transaction
from django.utils import timezone

from modules.loyalty.ledger import DEFAULT_POINTS_RATE, points_for_total
from modules.orders import state_machine
from modules.orders.constants import (
    CANCELLABLE_STATES,
    OrderStatus,
    PaymentStatus,
)
from modules.orders.events import (
    OrderCancelled,
    OrderCreated,
    OrderStatusChanged,
    PaymentProcessed,
)
from modules.orders.exceptions import (
    InvalidRequest,
    InvalidTransition,
    NotAuthorized,
    OrderNotFound,
    PaymentAlreadyProcessed,
)

if TYPE_CHECKING:
    from modules.locks.providers import ILockProvider
    from modules.loyalty.ledger import LoyaltyLedger
    from modules.notifications.services import INotifier
    from modules.orders.dtos import (
        CreateOrderDTO,
        PaymentResultDTO,
        RateOrderDTO,
        Requester,
    )
    from modules.orders.models import Order
    from modules.orders.repositories.interfaces import IOrderRepository
    from modules.products.ledger import StockLedger
    from shared.domain.events import DomainEvent

logger = structlog.get_logger(__name__)

R = TypeVar("R")

DEFAULT_ESTIMATED_DELIVERY = timedelta(hours=2)


class OrderFulfillmentService:
    """Application service for order fulfillment use-cases.

    Receives its collaborators via constructor injection.
    """

    def __init__(
        self,
        order_repository: IOrderRepository,
        stock_ledger: StockLedger,
        loyalty_ledger: LoyaltyLedger,
        lock_provider: ILockProvider,
        notifier: INotifier,
        points_rate: Decimal = DEFAULT_POINTS_RATE,
        estimated_delivery: timedelta = DEFAULT_ESTIMATED_DELIVERY,
        lock_ttl: Optional[int] = None,
    ) -> None:
        self._order_repo = order_repository
        self._stock = stock_ledger
        self._loyalty = loyalty_ledger
        self._locks = lock_provider
        self._notifier = notifier
        self._points_rate = points_rate
        self._estimated_delivery = estimated_delivery
        self._lock_ttl = lock_ttl

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_order(self, dto: CreateOrderDTO) -> Order:
        """Reserve stock, persist a pending order and award loyalty points.

        Steps:
        1. Idempotency check (a re-executed job returns its order).
        2. Reserve every distinct product under its own lock; any failure
           releases what was already reserved.
        3. Persist order + items with the catalog price snapshots.  If this
           fails the reservations are released.
        4. Award ``floor(rate x total)`` points and record them on the order.

        Raises:
            InvalidRequest: no items.
            ProductNotFound / ProductUnavailable / InsufficientStock.
            LockUnavailable: a product lock is held by another worker.
        """
        log = logger.bind(user_id=str(dto.user_id))
        log.info("order.creation_started", item_count=len(dto.items))

        if dto.idempotency_key:
            existing = self._order_repo.get_by_idempotency_key(dto.idempotency_key)
            if existing:
                log.info(
                    "order.idempotency_hit",
                    order_id=str(existing.id),
                    key=dto.idempotency_key,
                )
                self._award_loyalty(existing)
                return existing

        if not dto.items:
            raise InvalidRequest("Order must have at least one item.")

        reservations = self._stock.reserve_all(dto.quantities_by_product())
        prices = {r.product_id: r.unit_price for r in reservations}

        try:
            order = self._order_repo.create(
                {
                    "user_id": dto.user_id,
                    "payment_method": dto.payment_method,
                    "delivery_type": dto.delivery.delivery_type,
                    "delivery_street": dto.delivery.street,
                    "delivery_city": dto.delivery.city,
                    "delivery_zip_code": dto.delivery.zip_code,
                    "delivery_instructions": dto.delivery.instructions,
                    "estimated_delivery_time": timezone.now()
                    + self._estimated_delivery,
                    "notes": dto.notes or "",
                    "idempotency_key": dto.idempotency_key,
                    "items": [
                        {
                            "product_id": item.product_id,
                            "quantity": item.quantity,
                            "unit_price": prices[str(item.product_id)],
                            "notes": item.notes,
                        }
                        for item in dto.items
                    ],
                }
            )
        except IntegrityError:
            self._stock.release_all(reservations)
            if dto.idempotency_key:
                existing = self._order_repo.get_by_idempotency_key(
                    dto.idempotency_key
                )
                if existing:
                    log.info("order.idempotency_race", order_id=str(existing.id))
                    return existing
            raise
        except Exception:
            log.warning("order.persist_failed_stock_released")
            self._stock.release_all(reservations)
            raise

        self._order_repo.add_history(
            order_id=order.id,
            status=OrderStatus.PENDING,
            notes="Order created",
        )

        points = self._award_loyalty(order)

        log.info(
            "order.created",
            order_id=str(order.id),
            total_amount=str(order.total_amount),
            loyalty_points=points,
        )
        self._publish(
            OrderCreated(
                aggregate_id=order.id,
                user_id=order.user_id,
                total_amount=order.total_amount,
                loyalty_points_earned=points,
            )
        )
        return self._reload(order)

    def cancel_order(
        self, order_id, requester: Requester, notes: str = ""
    ) -> Order:
        """Cancel an order, release its stock and reverse its loyalty award.

        Runs entirely under the order's lock.

        Raises:
            OrderNotFound: order does not exist.
            NotAuthorized: requester is neither the owner nor an admin.
            InvalidTransition: order is not pending or confirmed.
            LockUnavailable: the order is being mutated by another worker.
        """
        return self._with_order_lock(
            order_id, lambda: self._cancel_locked(order_id, requester, notes)
        )

    def update_status(
        self,
        order_id,
        new_status: str,
        requester: Requester,
        notes: str = "",
    ) -> Order:
        """Admin-only status transition through the state machine.

        A transition to ``cancelled`` runs the full cancellation (stock
        release + loyalty reversal).  A transition to ``delivered`` stamps
        ``actual_delivery_time`` if absent.

        Raises:
            NotAuthorized: requester is not an admin.
            OrderNotFound: order does not exist.
            InvalidTransition: edge not allowed.
        """
        if not requester.is_admin:
            raise NotAuthorized("Only administrators can update order status.")
        if new_status == OrderStatus.CANCELLED:
            return self.cancel_order(order_id, requester, notes)
        return self._with_order_lock(
            order_id,
            lambda: self._update_status_locked(order_id, new_status, requester, notes),
        )

    def rate_order(self, order_id, dto: RateOrderDTO, requester: Requester) -> Order:
        """Attach a rating and review to a delivered order (owner only).

        Raises:
            OrderNotFound / NotAuthorized.
            InvalidTransition: the order is not delivered.
            AlreadyRated: the order already has a rating.
        """

        def _rate() -> Order:
            order = self._get_or_raise(order_id)
            if not requester.owns(order):
                raise NotAuthorized("Only the order owner can rate it.")
            state_machine.ensure_can_rate(order.status, order.rating)
            order.rating = dto.rating
            order.review = dto.review
            order.rated_at = timezone.now()
            self._order_repo.update_fields(order, ["rating", "review", "rated_at"])
            logger.info("order.rated", order_id=str(order.id), rating=dto.rating)
            return order

        return self._with_order_lock(order_id, _rate)

    def process_payment(
        self, order_id, result: PaymentResultDTO, requester: Requester
    ) -> Order:
        """Apply a payment gateway outcome to a pending-payment order.

        Success marks the order paid and confirms a pending order; failure
        marks the payment failed.

        Raises:
            OrderNotFound / NotAuthorized.
            PaymentAlreadyProcessed: payment status is no longer pending.
            InvalidTransition: the order was cancelled.
        """

        def _process() -> Order:
            order = self._get_or_raise(order_id)
            self._authorize_owner_or_admin(order, requester)
            log = logger.bind(order_id=str(order.id), success=result.success)
            if order.payment_status != PaymentStatus.PENDING:
                raise PaymentAlreadyProcessed(
                    f"Payment for order {order.id} is already {order.payment_status}."
                )
            if order.status == OrderStatus.CANCELLED:
                raise InvalidTransition(
                    order.status,
                    OrderStatus.CONFIRMED,
                    "Cannot process payment for a cancelled order.",
                )

            if result.success:
                order.payment_status = PaymentStatus.PAID
                order.payment_transaction_id = result.transaction_id or ""
            else:
                order.payment_status = PaymentStatus.FAILED
            self._order_repo.update_fields(
                order, ["payment_status", "payment_transaction_id"]
            )
            log.info("order.payment_processed", payment_status=order.payment_status)

            if result.success and order.status == OrderStatus.PENDING:
                self._apply_transition(
                    order, OrderStatus.CONFIRMED, requester, "Payment received"
                )

            self._publish(
                PaymentProcessed(
                    aggregate_id=order.id,
                    user_id=order.user_id,
                    payment_status=order.payment_status,
                    transaction_id=order.payment_transaction_id,
                )
            )
            return order

        return self._reload(self._with_order_lock(order_id, _process))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, order_id, requester: Requester) -> Order:
        """Retrieve a single order visible to ``requester``.

        Raises:
            OrderNotFound: if the order does not exist.
            NotAuthorized: requester is neither the owner nor an admin.
        """
        order = self._get_or_raise(order_id)
        self._authorize_owner_or_admin(order, requester)
        return order

    def list_orders(self, user_id, status: Optional[str] = None) -> List[Order]:
        """Return a user's orders, newest first, optionally by status."""
        filters = {"user_id": user_id}
        if status:
            filters["status"] = status
        return self._order_repo.list(filters)

    # ------------------------------------------------------------------
    # Locked bodies
    # ------------------------------------------------------------------

    def _cancel_locked(self, order_id, requester: Requester, notes: str) -> Order:
        order = self._get_or_raise(order_id)
        log = logger.bind(order_id=str(order.id), current_status=order.status)
        self._authorize_owner_or_admin(order, requester)

        if order.status not in CANCELLABLE_STATES:
            log.warning("order.cancel_not_allowed")
            raise InvalidTransition(
                order.status,
                OrderStatus.CANCELLED,
                f"Cannot cancel order in status {order.status}.",
            )

        # Stock, loyalty and status commit together: a retried cancellation
        # either finds the order still open with nothing released, or cancelled.
        with transaction.atomic():
            for item in order.items.all():
                self._stock.release(str(item.product_id), item.quantity)

            points_reversed = 0
            if order.loyalty_points_earned:
                points_reversed = self._loyalty.reverse(order.user_id, order.id)
                order.loyalty_points_earned = 0
                self._order_repo.update_fields(order, ["loyalty_points_earned"])

            self._apply_transition(
                order, OrderStatus.CANCELLED, requester, notes or "Order cancelled"
            )
        log.info("order.cancelled", points_reversed=points_reversed)
        self._publish(
            OrderCancelled(
                aggregate_id=order.id,
                user_id=order.user_id,
                points_reversed=points_reversed,
            )
        )
        return self._reload(order)

    def _update_status_locked(
        self, order_id, new_status: str, requester: Requester, notes: str
    ) -> Order:
        order = self._get_or_raise(order_id)
        self._apply_transition(order, new_status, requester, notes)
        return self._reload(order)

    def _apply_transition(
        self, order: Order, requested: str, requester: Requester, notes: str
    ) -> None:
        log = logger.bind(
            order_id=str(order.id),
            current_status=order.status,
            new_status=requested,
        )
        try:
            new_status = state_machine.transition(order.status, requested)
        except InvalidTransition:
            log.warning("order.invalid_transition")
            raise

        old_status = order.status
        order.status = new_status
        fields = ["status"]
        if new_status == OrderStatus.DELIVERED and order.actual_delivery_time is None:
            order.actual_delivery_time = timezone.now()
            fields.append("actual_delivery_time")
        self._order_repo.update_fields(order, fields)

        self._order_repo.add_history(
            order_id=order.id,
            status=new_status,
            notes=notes,
            old_status=old_status,
            changed_by=requester.user_id,
        )
        log.info("order.status_updated")
        self._publish(
            OrderStatusChanged(
                aggregate_id=order.id,
                user_id=order.user_id,
                old_status=old_status,
                new_status=new_status,
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _award_loyalty(self, order: Order) -> int:
        """Award the order's points unless they were already recorded."""
        if order.loyalty_points_earned is not None:
            return order.loyalty_points_earned
        points = points_for_total(order.total_amount, self._points_rate)
        self._loyalty.award(order.user_id, order.id, points)
        order.loyalty_points_earned = points
        self._order_repo.update_fields(order, ["loyalty_points_earned"])
        return points

    def _with_order_lock(self, order_id, operation: Callable[[], R]) -> R:
        return self._locks.with_lock(
            self._locks.key("order", order_id), operation, self._lock_ttl
        )

    def _get_or_raise(self, order_id) -> Order:
        order = self._order_repo.get_by_id(str(order_id))
        if not order:
            raise OrderNotFound(f"Order {order_id} not found.")
        return order

    def _reload(self, order: Order) -> Order:
        return self._order_repo.get_by_id(str(order.id)) or order

    @staticmethod
    def _authorize_owner_or_admin(order: Order, requester: Requester) -> None:
        if not (requester.is_admin or requester.owns(order)):
            raise NotAuthorized(f"Not allowed to access order {order.id}.")

    def _publish(self, event: DomainEvent) -> None:
        self._notifier.publish(event)
