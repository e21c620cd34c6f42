"""Renderer-facing snapshot of an invoice.

The renderer never touches ORM objects; it receives an :class:`InvoiceDocument`
whose totals were freshly derived from the line items.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from app.backend.src.core.config import Settings, get_settings
from app.backend.src.models import Invoice
from app.backend.src.services.totals import (
    InvoiceTotals,
    LineDraft,
    ProductLine,
    VirtualLine,
    compute_totals,
)


@dataclass(frozen=True, slots=True)
class Party:
    name: str
    company: str | None = None
    address_lines: tuple[str, ...] = ()
    email: str | None = None
    reference: str | None = None


@dataclass(frozen=True, slots=True)
class DocumentLine:
    quantity: int
    sku: str
    description: str
    unit_price: Decimal
    line_total: Decimal


@dataclass(frozen=True, slots=True)
class InvoiceDocument:
    invoice_id: int
    invoice_number: str
    issue_date: date | None
    due_date: date | None
    recipient: Party
    lines: tuple[DocumentLine, ...]
    totals: InvoiceTotals
    notes: str = ""


@dataclass(frozen=True, slots=True)
class Branding:
    """Seller identity and presentation settings."""

    company_name: str
    tagline: str | None = None
    address_lines: tuple[str, ...] = ()
    phone: str | None = None
    email: str | None = None
    iban: str | None = None
    bic: str | None = None
    bank_name: str | None = None
    logo_path: str | None = None
    payment_terms: str | None = None
    font_path: str | None = None
    font_bold_path: str | None = None
    locale: str = "de-DE"
    currency: str = "EUR"

    @property
    def contact_lines(self) -> list[str]:
        lines = [self.company_name, *self.address_lines]
        if self.phone:
            lines.append(f"Tel: {self.phone}")
        if self.email:
            lines.append(self.email)
        return lines


def branding_from_settings(settings: Settings | None = None) -> Branding:
    settings = settings or get_settings()
    return Branding(
        company_name=settings.company_name,
        tagline=settings.company_tagline,
        address_lines=tuple(
            line for line in (settings.company_street, settings.company_city) if line
        ),
        phone=settings.company_phone,
        email=settings.company_email,
        iban=settings.company_iban,
        bic=settings.company_bic,
        bank_name=settings.company_bank_name,
        logo_path=settings.company_logo_path,
        payment_terms=settings.payment_terms,
        font_path=settings.pdf_font_path,
        font_bold_path=settings.pdf_font_bold_path,
        locale=settings.document_locale,
        currency=settings.document_currency,
    )


def line_from_model(item) -> LineDraft:
    """Return the tagged variant for a persisted line item."""

    if item.product_id is None:
        return VirtualLine(
            product_name=item.product_name,
            quantity=item.quantity,
            unit_price=item.unit_price,
            description=item.description,
            sku=item.sku,
        )
    return ProductLine(
        product_id=item.product_id,
        product_name=item.product_name,
        quantity=item.quantity,
        unit_price=item.unit_price,
        description=item.description,
        sku=item.sku,
    )


def describe_line(line: LineDraft) -> str:
    if line.description:
        return f"{line.product_name} - {line.description}"
    return line.product_name


def invoice_totals(invoice: Invoice) -> InvoiceTotals:
    """Recompute totals for ``invoice`` from its current line items."""

    return compute_totals(
        [line_from_model(item) for item in invoice.line_items], invoice.tax_rate
    )


def build_invoice_document(invoice: Invoice) -> InvoiceDocument:
    drafts = [line_from_model(item) for item in invoice.line_items]
    totals = compute_totals(drafts, invoice.tax_rate)
    lines = tuple(
        DocumentLine(
            quantity=draft.quantity,
            sku=draft.sku or "",
            description=describe_line(draft),
            unit_price=draft.unit_price,
            line_total=amount,
        )
        for draft, amount in zip(drafts, totals.line_totals)
    )

    client = invoice.client
    recipient = Party(
        name=client.name,
        company=client.company if client.company != client.name else None,
        address_lines=tuple(client.address_lines),
        email=client.email,
        reference=client.client_unique_number,
    )
    return InvoiceDocument(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        issue_date=invoice.issue_date,
        due_date=invoice.due_date,
        recipient=recipient,
        lines=lines,
        totals=totals,
        notes=invoice.notes or "",
    )


__all__ = [
    "Branding",
    "DocumentLine",
    "InvoiceDocument",
    "Party",
    "branding_from_settings",
    "build_invoice_document",
    "describe_line",
    "invoice_totals",
    "line_from_model",
]
