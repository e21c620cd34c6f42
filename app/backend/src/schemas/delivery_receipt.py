"""Delivery receipt schema."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class DeliveryReceiptRead(BaseModel):
    id: int
    invoice_id: int
    message_id: str
    recipient: str
    accepted: list[str]
    rejected: list[str]
    response_code: int | None
    response: str | None
    attachment_filename: str
    document_sha256: str
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
