"""Stock ledger: reserve/release of available quantity per product.

``reserve`` takes the product's lock (``lock:product:<id>``) before it
reads and decrements the counter, so concurrent reservations of the same
product from any worker process are serialized.  ``release`` is the
compensating increment used on cancellation and rollback.  It is a single
atomic increment and takes no lock, so compensation never fails on
contention.

Multi-item orders go through ``reserve_all``, which is all-or-nothing:
if any item fails, every item already reserved in the same attempt is
released before the error propagates.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, List, Mapping, Optional

import structlog

from modules.products.exceptions import (
    InsufficientStock,
    ProductNotFound,
    ProductUnavailable,
)

if TYPE_CHECKING:
    from modules.locks.providers import ILockProvider
    from modules.products.repositories.interfaces import IProductRepository

logger = structlog.get_logger(__name__)

@dataclass(frozen=True)
class StockReservation:
    """One reserved line: what was taken, and the price it was taken at."""

    product_id: str
    quantity: int
    unit_price: Decimal


class StockLedger:
    """Authoritative available-quantity counter per product."""

    def __init__(
        self,
        product_repository: IProductRepository,
        lock_provider: ILockProvider,
        lock_ttl: Optional[int] = None,
    ) -> None:
        self._products = product_repository
        self._locks = lock_provider
        self._lock_ttl = lock_ttl

    def reserve(self, product_id: str, quantity: int) -> StockReservation:
        """Take ``quantity`` units of one product.

        Raises:
            ProductNotFound: the product does not exist.
            ProductUnavailable: the product is flagged unavailable.
            InsufficientStock: fewer than ``quantity`` units are available.
            LockUnavailable: another worker holds the product's lock.
        """
        log = logger.bind(product_id=str(product_id), quantity=quantity)
        with self._locks.lock(self._locks.key("product", product_id), self._lock_ttl):
            product = self._products.get_by_id(str(product_id))
            if not product:
                raise ProductNotFound(f"Product {product_id} not found.")
            if not product.is_available:
                log.warning("stock.product_unavailable")
                raise ProductUnavailable(f"Product {product.sku} is unavailable.")
            if product.stock_quantity < quantity or not self._products.decrement_stock(
                str(product_id), quantity
            ):
                log.warning("stock.insufficient", available=product.stock_quantity)
                raise InsufficientStock(
                    f"Product {product.sku}: requested {quantity}, "
                    f"available {product.stock_quantity}."
                )
            log.info(
                "stock.reserved",
                remaining=product.stock_quantity - quantity,
            )
            return StockReservation(
                product_id=str(product_id),
                quantity=quantity,
                unit_price=product.price,
            )

    def release(self, product_id: str, quantity: int) -> None:
        """Give ``quantity`` units back.

        Unconditional: it needs no bookkeeping beyond the caller's own
        record of what was reserved.  A product that no longer exists is
        logged and skipped.
        """
        released = self._products.increment_stock(str(product_id), quantity)
        if released:
            logger.info("stock.released", product_id=str(product_id), quantity=quantity)
        else:
            logger.warning(
                "stock.release_missing_product",
                product_id=str(product_id),
                quantity=quantity,
            )

    def reserve_all(self, items: Mapping[str, int]) -> List[StockReservation]:
        """Reserve every ``product_id -> quantity`` pair, or none of them.

        Products are processed in sorted id order so two multi-item orders
        always contend for locks in the same sequence.
        """
        reserved: List[StockReservation] = []
        try:
            for product_id in sorted(items, key=str):
                reserved.append(self.reserve(product_id, items[product_id]))
        except Exception:
            logger.warning(
                "stock.reservation_rolled_back",
                rolled_back=[r.product_id for r in reserved],
            )
            self.release_all(reserved)
            raise
        return reserved

    def release_all(
        self, reservations: Iterable[StockReservation]
    ) -> List[StockReservation]:
        """Release every reservation, even when some of them fail.

        Used as the compensating step of a failed operation, so it must not
        mask that operation's error: each failure is logged and the
        reservations that could not be released are returned.
        """
        failed: List[StockReservation] = []
        for reservation in reservations:
            try:
                self.release(reservation.product_id, reservation.quantity)
            except Exception:
                logger.exception(
                    "stock.release_failed",
                    product_id=reservation.product_id,
                    quantity=reservation.quantity,
                )
                failed.append(reservation)
        return failed
