"""Product repository interface.

Extends ``IRepository[Product]`` with the conditional stock mutations the
stock ledger needs.  The catalog collaborator is this repository: the
fulfillment service reads current price and availability from it and
never trusts client-supplied prices.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Optional

from modules.core.repositories.interfaces import IRepository

if TYPE_CHECKING:
    from modules.products.models import Product


class IProductRepository(IRepository["Product"]):
    """Repository contract for the Product aggregate."""

    @abstractmethod
    def decrement_stock(self, id: str, quantity: int) -> bool:
        """Atomically subtract ``quantity`` if at least that much is available.

        Returns ``False`` (and changes nothing) when the row holds less than
        ``quantity``; the counter never goes negative.
        """

    @abstractmethod
    def increment_stock(self, id: str, quantity: int) -> bool:
        """Atomically add ``quantity``; ``False`` if the product is missing."""

    @abstractmethod
    def get_stock(self, id: str) -> Optional[int]:
        """Current available quantity, or ``None`` for unknown products."""
