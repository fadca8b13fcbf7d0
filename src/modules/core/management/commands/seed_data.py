from __future__ import annotations

import random
from decimal import Decimal

from django.core.management.base import BaseCommand

from modules.products.models import Product, ProductCategory


class Command(BaseCommand):
    help = "Seed the catalog with development products."

    def add_arguments(self, parser):
        parser.add_argument(
            "--stock",
            type=int,
            default=None,
            help="Fixed stock for every product (random 10-200 by default).",
        )

    def handle(self, *args, **options):
        random.seed(42)
        self.stdout.write("Seeding catalog...")
        products = self._seed_products(options["stock"])
        self.stdout.write(
            self.style.SUCCESS(f"Seed completed: products={len(products)}")
        )

    def _seed_products(self, stock: int | None) -> list[Product]:
        products: list[Product] = []
        catalog = [
            ("BEER-001", "Pilsner 0.5L", ProductCategory.BEER, Decimal("4.50")),
            ("BEER-002", "Dark Lager 0.5L", ProductCategory.BEER, Decimal("5.20")),
            ("BEER-003", "Wheat Beer 0.5L", ProductCategory.BEER, Decimal("5.00")),
            ("BEER-004", "IPA 0.33L", ProductCategory.BEER, Decimal("6.10")),
            ("SNK-001", "Salted Pretzel", ProductCategory.SNACKS, Decimal("3.00")),
            ("SNK-002", "Garlic Croutons", ProductCategory.SNACKS, Decimal("2.80")),
            ("SNK-003", "Smoked Cheese Sticks", ProductCategory.SNACKS, Decimal("4.20")),
            ("FOOD-001", "Pork Knuckle", ProductCategory.FOOD, Decimal("14.90")),
            ("FOOD-002", "Sausage Platter", ProductCategory.FOOD, Decimal("11.50")),
            ("FOOD-003", "Fried Cheese", ProductCategory.FOOD, Decimal("8.40")),
            ("DRK-001", "Kvass 0.5L", ProductCategory.DRINKS, Decimal("2.50")),
            ("DRK-002", "Lemonade 0.4L", ProductCategory.DRINKS, Decimal("2.90")),
        ]
        for sku, name, category, price in catalog:
            product, _ = Product.objects.get_or_create(
                sku=sku,
                defaults={
                    "name": name,
                    "description": category.label,
                    "category": category,
                    "price": price,
                    "stock_quantity": stock
                    if stock is not None
                    else random.randint(10, 200),
                    "is_available": True,
                },
            )
            products.append(product)
        return products
