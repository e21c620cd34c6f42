"""Client model."""

from __future__ import annotations

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class Client(Base):
    """A billed party. Maintained by the CRUD layer, read by the invoice engine."""

    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    street: Mapped[str | None] = mapped_column(String(255), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    client_unique_number: Mapped[str | None] = mapped_column(
        String(32), unique=True, nullable=True
    )

    invoices: Mapped[list["Invoice"]] = relationship("Invoice", back_populates="client")

    @property
    def address_lines(self) -> list[str]:
        """Return the non-empty postal address lines in print order."""

        city_line = " ".join(part for part in (self.postal_code, self.city) if part)
        return [line for line in (self.street, city_line, self.country) if line]


__all__ = ["Client"]
