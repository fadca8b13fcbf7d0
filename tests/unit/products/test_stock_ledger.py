"""Unit tests for the stock ledger.

Covers:
- Reserve/release against the Django repository.
- Business errors (missing, unavailable, insufficient).
- ``reserve_all`` rollback when a later item fails.
- Lock contention fails fast on reserve; release and rollback take no lock.
- Concurrent reservations never oversell, even over a repository whose
  read-modify-write is not atomic (mutual exclusion comes from the lock).
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional
from unittest.mock import patch
from uuid import uuid4

import pytest
from django.db import DatabaseError

from modules.locks.exceptions import LockUnavailable
from modules.products.exceptions import (
    InsufficientStock,
    ProductNotFound,
    ProductUnavailable,
)
from modules.products.ledger import StockLedger
from modules.products.models import Product
from modules.products.repositories.django_repository import ProductDjangoRepository

pytestmark = pytest.mark.unit


@pytest.fixture()
def ledger(lock_provider):
    return StockLedger(ProductDjangoRepository(), lock_provider)


def _stock(product) -> int:
    return Product.objects.get(id=product.id).stock_quantity


class TestReserve:
    def test_reserve_decrements_and_snapshots_price(self, ledger, make_product):
        product = make_product(stock=5, price="4.50")
        reservation = ledger.reserve(str(product.id), 3)
        assert reservation.quantity == 3
        assert reservation.unit_price == Decimal("4.50")
        assert _stock(product) == 2

    def test_reserve_exact_remaining_stock(self, ledger, make_product):
        product = make_product(stock=3)
        ledger.reserve(str(product.id), 3)
        assert _stock(product) == 0

    def test_insufficient_stock(self, ledger, make_product):
        product = make_product(stock=2)
        with pytest.raises(InsufficientStock):
            ledger.reserve(str(product.id), 3)
        assert _stock(product) == 2

    def test_unavailable_product(self, ledger, make_product):
        product = make_product(stock=10, is_available=False)
        with pytest.raises(ProductUnavailable):
            ledger.reserve(str(product.id), 1)
        assert _stock(product) == 10

    def test_missing_product(self, ledger):
        with pytest.raises(ProductNotFound):
            ledger.reserve(str(uuid4()), 1)

    def test_lock_released_after_business_error(
        self, ledger, lock_provider, make_product
    ):
        product = make_product(stock=0)
        with pytest.raises(InsufficientStock):
            ledger.reserve(str(product.id), 1)
        assert not lock_provider.is_locked(lock_provider.key("product", product.id))

    def test_contended_product_fails_fast(self, ledger, lock_provider, make_product):
        product = make_product(stock=5)
        lock_provider.acquire(lock_provider.key("product", product.id))
        with pytest.raises(LockUnavailable):
            ledger.reserve(str(product.id), 1)
        assert _stock(product) == 5


class TestRelease:
    def test_release_restores_stock(self, ledger, make_product):
        product = make_product(stock=5)
        ledger.reserve(str(product.id), 3)
        ledger.release(str(product.id), 3)
        assert _stock(product) == 5

    def test_release_of_missing_product_is_skipped(self, ledger):
        ledger.release(str(uuid4()), 2)

    def test_release_ignores_held_product_lock(self, ledger, lock_provider, make_product):
        product = make_product(stock=5)
        ledger.reserve(str(product.id), 2)
        lock_provider.acquire(lock_provider.key("product", product.id))
        ledger.release(str(product.id), 2)
        assert _stock(product) == 5

    def test_release_all_continues_past_a_failure(self, ledger, make_product):
        a = make_product(stock=5)
        b = make_product(stock=5)
        reservations = ledger.reserve_all({str(a.id): 2, str(b.id): 2})
        repository = ledger._products
        real_increment = repository.increment_stock

        def _fail_first(product_id, quantity):
            if product_id == reservations[0].product_id:
                raise DatabaseError("connection lost")
            return real_increment(product_id, quantity)

        with patch.object(repository, "increment_stock", side_effect=_fail_first):
            failed = ledger.release_all(reservations)

        assert failed == [reservations[0]]
        released = Product.objects.get(id=reservations[1].product_id)
        assert released.stock_quantity == 5


class TestReserveAll:
    def test_all_items_reserved(self, ledger, make_product):
        a = make_product(stock=5)
        b = make_product(stock=5)
        reservations = ledger.reserve_all({str(a.id): 2, str(b.id): 1})
        assert {r.product_id for r in reservations} == {str(a.id), str(b.id)}
        assert _stock(a) == 3
        assert _stock(b) == 4

    def test_failure_rolls_back_earlier_items(self, ledger, make_product):
        a = make_product(stock=5)
        b = make_product(stock=1)
        with pytest.raises(InsufficientStock):
            ledger.reserve_all({str(a.id): 2, str(b.id): 3})
        assert _stock(a) == 5
        assert _stock(b) == 1

    def test_lock_contention_rolls_back(self, ledger, lock_provider, make_product):
        a = make_product(stock=5)
        b = make_product(stock=5)
        held = lock_provider.key("product", max(str(a.id), str(b.id)))
        lock_provider.acquire(held)
        with pytest.raises(LockUnavailable):
            ledger.reserve_all({str(a.id): 1, str(b.id): 1})
        assert _stock(a) == 5
        assert _stock(b) == 5

    def test_rollback_with_held_lock_keeps_original_error(
        self, ledger, lock_provider, make_product
    ):
        first = make_product(stock=5)
        second = make_product(stock=1)
        real_reserve = ledger.reserve

        def _reserve_then_contend(product_id, quantity):
            reservation = real_reserve(product_id, quantity)
            # Another worker grabs the lock right after this reservation.
            lock_provider.acquire(lock_provider.key("product", product_id))
            return reservation

        with patch.object(ledger, "reserve", side_effect=_reserve_then_contend):
            with pytest.raises(InsufficientStock):
                ledger.reserve_all({str(first.id): 1, str(second.id): 10})

        assert _stock(first) == 5
        assert _stock(second) == 1


# ---------------------------------------------------------------------------
# Concurrency over an in-memory repository
# ---------------------------------------------------------------------------


@dataclass
class _Item:
    id: str
    sku: str
    price: Decimal
    stock_quantity: int
    is_available: bool = True


class RacyProductRepository:
    """Read-modify-write without any internal synchronisation."""

    def __init__(self, stock: Dict[str, int]) -> None:
        self._items = {
            pid: _Item(id=pid, sku=pid.upper(), price=Decimal("1.00"), stock_quantity=qty)
            for pid, qty in stock.items()
        }

    def get_by_id(self, id: str) -> Optional[_Item]:
        item = self._items.get(id)
        if item is None:
            return None
        return _Item(**item.__dict__)

    def decrement_stock(self, id: str, quantity: int) -> bool:
        current = self._items[id].stock_quantity
        time.sleep(0.001)
        self._items[id].stock_quantity = current - quantity
        return True

    def increment_stock(self, id: str, quantity: int) -> bool:
        current = self._items[id].stock_quantity
        time.sleep(0.001)
        self._items[id].stock_quantity = current + quantity
        return True

    def get_stock(self, id: str) -> Optional[int]:
        return self._items[id].stock_quantity


def _reserve_with_retry(ledger: StockLedger, product_id: str) -> str:
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        try:
            ledger.reserve(product_id, 1)
            return "reserved"
        except LockUnavailable:
            time.sleep(0.002)
        except InsufficientStock:
            return "insufficient"
    return "timeout"


class TestConcurrentReservations:
    def test_never_oversells(self, lock_provider):
        repository = RacyProductRepository({"keg": 5})
        ledger = StockLedger(repository, lock_provider)
        results = []
        barrier = threading.Barrier(10)

        def _buyer():
            barrier.wait()
            results.append(_reserve_with_retry(ledger, "keg"))

        threads = [threading.Thread(target=_buyer) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("reserved") == 5
        assert results.count("insufficient") == 5
        assert repository.get_stock("keg") == 0
