"""Catalog collaborator backed by the ``products`` table."""

from __future__ import annotations

from decimal import Decimal

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.backend.src.core.errors import CatalogUnavailableError
from app.backend.src.models import Product

LOGGER = structlog.get_logger(__name__)


class SqlCatalog:
    """Reads live catalog prices and stock inside the caller's transaction.

    Rows are read ``FOR UPDATE`` so a concurrent price change or stock
    decrement cannot slip in between the checks and the writes they gate.
    SQLite ignores the lock clause; its single-writer model gives the same
    guarantee once the transaction holds the write lock.
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._products: dict[int, Product | None] = {}

    def _load(self, product_id: int) -> Product | None:
        if product_id not in self._products:
            try:
                product = self._session.execute(
                    select(Product).where(Product.id == product_id).with_for_update()
                ).scalar_one_or_none()
            except OperationalError as exc:
                LOGGER.warning(
                    "catalog_lookup_failed", product_id=product_id, error=str(exc)
                )
                raise CatalogUnavailableError(
                    f"Catalog lookup for product {product_id} failed: {exc.orig}",
                    details={"product_id": product_id},
                ) from exc
            self._products[product_id] = product
        return self._products[product_id]

    def price_of(self, product_id: int) -> Decimal | None:
        product = self._load(product_id)
        return None if product is None else product.price

    def sku_of(self, product_id: int) -> str | None:
        product = self._load(product_id)
        return None if product is None else product.sku

    def buying_price_of(self, product_id: int) -> Decimal | None:
        product = self._load(product_id)
        return None if product is None else product.buying_price

    def stock_of(self, product_id: int) -> int | None:
        product = self._load(product_id)
        if product is None or product.is_shipping or product.stock is None:
            return None
        return product.stock

    def take_stock(self, product_id: int, quantity: int) -> bool:
        """Decrement tracked stock; ``False`` if fewer than ``quantity`` units remain.

        The decrement is a single conditional ``UPDATE`` so two transactions
        can never sell the same unit. Exempt products always succeed.
        """

        if self.stock_of(product_id) is None:
            return True
        result = self._session.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 1:
            return True
        self._session.refresh(self._products[product_id])
        return False

    def restock(self, product_id: int, quantity: int) -> None:
        if self.stock_of(product_id) is None:
            return
        self._session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity)
            .execution_options(synchronize_session="fetch")
        )


__all__ = ["SqlCatalog"]
