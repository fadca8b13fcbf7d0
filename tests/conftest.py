from __future__ import annotations

from decimal import Decimal
from typing import List
from uuid import uuid4

import fakeredis
import pytest

from modules.core.container import build_container
from modules.locks.providers import RedisLockProvider
from modules.notifications.services import INotifier
from modules.orders.constants import DeliveryType, PaymentMethod, Role
from modules.orders.dtos import (
    CreateOrderDTO,
    CreateOrderItemDTO,
    DeliveryInfoDTO,
    Requester,
)
from modules.products.models import Product, ProductCategory


@pytest.fixture(autouse=True)
def _use_db(db):
    """Automatically use the test database for all tests."""


class RecordingNotifier(INotifier):
    """Keeps published events in memory."""

    def __init__(self) -> None:
        self.events: List = []

    def publish(self, event) -> None:
        self.events.append(event)

    def names(self) -> List[str]:
        return [event.event_name for event in self.events]


class FakeClock:
    """Manually advanced clock for queue and limiter timing."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture()
def lock_provider(redis_client):
    return RedisLockProvider(redis_client)


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def container(redis_client, notifier):
    return build_container(redis_client=redis_client, notifier=notifier)


@pytest.fixture()
def service(container):
    return container.orders


@pytest.fixture()
def make_product():
    counter = {"n": 0}

    def _make(stock: int = 10, price: str = "10.00", is_available: bool = True):
        counter["n"] += 1
        return Product.objects.create(
            sku=f"TEST-{counter['n']:03d}",
            name=f"Test product {counter['n']}",
            category=ProductCategory.BEER,
            price=Decimal(price),
            stock_quantity=stock,
            is_available=is_available,
        )

    return _make


@pytest.fixture()
def customer():
    return Requester(user_id=uuid4(), role=Role.CUSTOMER)


@pytest.fixture()
def admin():
    return Requester(user_id=uuid4(), role=Role.ADMIN)


@pytest.fixture()
def make_order_dto(customer):
    def _make(lines, user_id=None, idempotency_key=None):
        return CreateOrderDTO(
            user_id=user_id or customer.user_id,
            items=[
                CreateOrderItemDTO(product_id=product.id, quantity=quantity)
                for product, quantity in lines
            ],
            delivery=DeliveryInfoDTO(delivery_type=DeliveryType.PICKUP),
            payment_method=PaymentMethod.CARD,
            idempotency_key=idempotency_key,
        )

    return _make
