"""Django ORM implementation of the Product repository.

Satisfies ``IProductRepository`` using Django's QuerySet API.
Error handling follows the Null Object pattern: look-ups return ``None``
instead of raising, and the ledger decides how to translate a missing
product into a domain error.

Stock mutations are single conditional ``UPDATE`` statements with
``F()`` expressions, so concurrent writers from other processes can
never lose an increment or drive the counter below zero.  They join the
caller's transaction when there is one.
"""

from __future__ import annotations

from typing import Optional

from django.core.exceptions import ValidationError
from django.db.models import F
from django.utils import timezone

from modules.products.models import Product
from modules.products.repositories.interfaces import IProductRepository


class ProductDjangoRepository(IProductRepository):
    """Concrete Product repository backed by Django ORM."""

    def get_by_id(self, id: str) -> Optional[Product]:
        """Retrieve a product by primary key.

        Returns ``None`` for non-existent or invalid IDs.
        """
        try:
            return Product.objects.filter(id=id).first()
        except (ValueError, ValidationError):
            return None

    def decrement_stock(self, id: str, quantity: int) -> bool:
        updated = Product.objects.filter(
            id=id, stock_quantity__gte=quantity
        ).update(
            stock_quantity=F("stock_quantity") - quantity, updated_at=timezone.now()
        )
        return updated == 1

    def increment_stock(self, id: str, quantity: int) -> bool:
        updated = Product.objects.filter(id=id).update(
            stock_quantity=F("stock_quantity") + quantity, updated_at=timezone.now()
        )
        return updated == 1

    def get_stock(self, id: str) -> Optional[int]:
        try:
            return (
                Product.objects.filter(id=id)
                .values_list("stock_quantity", flat=True)
                .first()
            )
        except (ValueError, ValidationError):
            return None
