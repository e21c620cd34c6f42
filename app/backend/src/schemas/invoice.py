"""Invoice schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.backend.src.models import InvoiceStatus

from .line_item import LineItemInput, LineItemRead


class ClientSummary(BaseModel):
    id: int
    name: str
    company: str | None
    email: str | None
    client_unique_number: str | None


class InvoiceCreate(BaseModel):
    """Schema for creating an invoice."""

    client_id: int
    created_by: str = Field(min_length=1)
    issue_date: date | None = None
    due_date: date | None = None
    tax_rate: Decimal | None = None
    notes: str | None = None
    line_items: list[LineItemInput]


class InvoiceUpdate(BaseModel):
    """Editable invoice header fields. Status is deliberately absent."""

    issue_date: date | None = None
    due_date: date | None = None
    tax_rate: Decimal | None = None
    notes: str | None = None
    actor: str | None = None
    reason: str | None = None
    force: bool = False

    model_config = ConfigDict(extra="forbid")


class InvoiceRead(BaseModel):
    id: int
    invoice_number: str
    numbering_scope: str
    status: InvoiceStatus
    allowed_statuses: list[InvoiceStatus]
    client: ClientSummary
    issue_date: date
    due_date: date
    tax_rate: Decimal
    notes: str
    created_by: str
    sent_at: datetime | None
    paid_at: datetime | None
    created_at: datetime
    updated_at: datetime
    line_items: list[LineItemRead] = []
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


class StatusChangeRequest(BaseModel):
    status: InvoiceStatus
    actor: str = Field(min_length=1)
    reason: str | None = None
    force: bool = False


class StatusChangeRead(BaseModel):
    id: int
    from_status: InvoiceStatus
    to_status: InvoiceStatus
    actor: str
    reason: str | None
    forced: bool
    receipt_id: int | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AmendmentRead(BaseModel):
    id: int
    status: InvoiceStatus
    actor: str
    reason: str | None
    changes: dict[str, Any]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SendRequest(BaseModel):
    """Optional overrides for dispatching an invoice."""

    email: EmailStr | None = None
    subject: str | None = None
    message: str | None = None
