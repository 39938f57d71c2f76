"""Product lookup consumed by order creation.

The catalog itself (CRUD, seeding, storefront rendering) is owned elsewhere;
this module only reads it.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlalchemy import select

from coinpay.common.errors import ProductNotFoundError
from coinpay.services.payments.models import Product


@dataclass(frozen=True)
class ProductSnapshot:
    product_id: str
    name: str
    coins: int
    price_inr: Decimal
    price_usd: Decimal


class ProductCatalog(Protocol):
    def find_by_id(self, product_id: str) -> ProductSnapshot:
        """Return the product or raise `ProductNotFoundError`."""
        ...


class SqlProductCatalog:
    """Reads active products from the shared `products` table."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def find_by_id(self, product_id: str) -> ProductSnapshot:
        with self.session_factory() as db:
            product = db.execute(
                select(Product).where(Product.product_id == product_id, Product.active.is_(True))
            ).scalar_one_or_none()
            if product is None:
                raise ProductNotFoundError()
            return ProductSnapshot(
                product_id=product.product_id,
                name=product.name,
                coins=product.coins,
                price_inr=Decimal(product.price_inr),
                price_usd=Decimal(product.price_usd),
            )
