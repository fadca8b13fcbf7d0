"""Loyalty balance and per-order award records.

- ``LoyaltyAccount``: one point balance per user, never negative.
- ``LoyaltyAward``: the amount granted for one order.  ``order_id`` is
  unique, which makes awarding idempotent per order at the database
  level; ``reversed_at`` records that the award was taken back.
"""

from __future__ import annotations

from django.db import models

from modules.core.models import BaseModel


class LoyaltyAccount(BaseModel):
    """Per-user point balance."""

    user_id = models.UUIDField(unique=True)
    points = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "loyalty_accounts"
        constraints = [
            models.CheckConstraint(
                check=models.Q(points__gte=0),
                name="loyalty_points_non_negative",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.user_id}: {self.points} pts"


class LoyaltyAward(BaseModel):
    """Points granted for a single order (at most one per order)."""

    order_id = models.UUIDField(unique=True)
    user_id = models.UUIDField(db_index=True)
    points = models.PositiveIntegerField()
    reversed_at = models.DateTimeField(null=True, blank=True, default=None)

    class Meta:
        db_table = "loyalty_awards"
        ordering = ["-created_at"]

    @property
    def is_reversed(self) -> bool:
        return self.reversed_at is not None

    def __str__(self) -> str:
        return f"{self.order_id} -> {self.user_id} ({self.points} pts)"
