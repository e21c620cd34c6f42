"""Invoice model."""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class InvoiceStatus(str, enum.Enum):
    """Lifecycle states of an invoice."""

    PENDING = "pending"
    MAKER = "maker"
    SENT = "sent"
    PAID = "paid"
    NOT_PAID = "not_paid"
    COMPLETED = "completed"


class Invoice(Base):
    """An invoice issued to a client.

    Totals are deliberately not stored; they are derived from the line items
    whenever the invoice is read or rendered.
    """

    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint(
            "numbering_scope", "invoice_number", name="uq_invoices_scope_number"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    numbering_scope: Mapped[str] = mapped_column(String(64), nullable=False, default="global")
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.PENDING.value
    )
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    client: Mapped["Client"] = relationship("Client", back_populates="invoices")
    line_items: Mapped[list["InvoiceLineItem"]] = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.position",
    )
    receipts: Mapped[list["DeliveryReceipt"]] = relationship(
        "DeliveryReceipt",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="DeliveryReceipt.id",
    )
    status_changes: Mapped[list["InvoiceStatusChange"]] = relationship(
        "InvoiceStatusChange",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceStatusChange.id",
    )
    amendments: Mapped[list["InvoiceAmendment"]] = relationship(
        "InvoiceAmendment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceAmendment.id",
    )

    @property
    def status_enum(self) -> InvoiceStatus:
        """Return the stored status as an :class:`InvoiceStatus`."""

        return InvoiceStatus(self.status)


__all__ = ["Invoice", "InvoiceStatus"]
