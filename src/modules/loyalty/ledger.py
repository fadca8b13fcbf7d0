"""Loyalty ledger: award/reverse reward points, idempotent per order.

Balances change through single ``UPDATE ... SET points = points + n``
statements, so concurrent awards for the same user from different worker
processes cannot lose an update.  Reversal subtracts exactly the amount
recorded for the order and clamps the balance at zero (points may have
been spent in the meantime).
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal

import structlog

from django.db import transaction
from django.db.models import Case, F, Value, When
from django.utils import timezone

from modules.loyalty.models import LoyaltyAccount, LoyaltyAward

logger = structlog.get_logger(__name__)

DEFAULT_POINTS_RATE = Decimal("0.1")


def points_for_total(total: Decimal, rate: Decimal = DEFAULT_POINTS_RATE) -> int:
    """``floor(rate * total)``: the award earned by an order of ``total``."""
    return int((Decimal(total) * rate).to_integral_value(rounding=ROUND_FLOOR))


class LoyaltyLedger:
    """Authoritative per-user reward point balances."""

    @transaction.atomic
    def award(self, user_id, order_id, amount: int) -> int:
        """Credit ``amount`` points for ``order_id``.

        Returns the points actually credited: ``0`` when the order was
        already awarded (re-invocation is a no-op).
        """
        log = logger.bind(user_id=str(user_id), order_id=str(order_id))
        _, created = LoyaltyAward.objects.get_or_create(
            order_id=order_id,
            defaults={"user_id": user_id, "points": amount},
        )
        if not created:
            log.info("loyalty.award_skipped")
            return 0
        if amount > 0:
            LoyaltyAccount.objects.get_or_create(user_id=user_id)
            LoyaltyAccount.objects.filter(user_id=user_id).update(
                points=F("points") + amount, updated_at=timezone.now()
            )
        log.info("loyalty.awarded", points=amount)
        return amount

    @transaction.atomic
    def reverse(self, user_id, order_id) -> int:
        """Take back the points awarded for ``order_id``.

        Returns the points removed; ``0`` if nothing was awarded, the award
        was zero, or it was already reversed.
        """
        log = logger.bind(user_id=str(user_id), order_id=str(order_id))
        award = LoyaltyAward.objects.filter(
            order_id=order_id, reversed_at__isnull=True
        ).first()
        if award is None or award.points == 0:
            log.info("loyalty.reverse_skipped")
            return 0

        claimed = LoyaltyAward.objects.filter(
            id=award.id, reversed_at__isnull=True
        ).update(reversed_at=timezone.now(), updated_at=timezone.now())
        if not claimed:
            log.info("loyalty.reverse_skipped")
            return 0

        LoyaltyAccount.objects.filter(user_id=user_id).update(
            points=Case(
                When(points__gte=award.points, then=F("points") - award.points),
                default=Value(0),
            ),
            updated_at=timezone.now(),
        )
        log.info("loyalty.reversed", points=award.points)
        return award.points

    def balance(self, user_id) -> int:
        points = (
            LoyaltyAccount.objects.filter(user_id=user_id)
            .values_list("points", flat=True)
            .first()
        )
        return points or 0
