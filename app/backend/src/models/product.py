"""Product catalog model."""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

SHIPPING_CATEGORY = "shipping"


class Product(Base):
    """A catalog product whose price is the floor for invoice line items."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    buying_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # NULL means stock is not tracked for this product.
    stock: Mapped[int | None] = mapped_column(Integer, nullable=True)

    @property
    def is_shipping(self) -> bool:
        return (self.category or "").strip().lower() == SHIPPING_CATEGORY


__all__ = ["Product", "SHIPPING_CATEGORY"]
