"""Service layer functions for invoices."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.backend.src.core.config import Settings, get_settings
from app.backend.src.core.errors import (
    ClientNotFoundError,
    DispatchRequiredError,
    DuplicateInvoiceNumberError,
    InsufficientStockError,
    InvoiceEngineError,
    InvoiceLockedError,
    InvoiceNotFoundError,
    InvoiceValidationError,
)
from app.backend.src.models import (
    Client,
    DeliveryReceipt,
    Invoice,
    InvoiceAmendment,
    InvoiceLineItem,
    InvoiceStatus,
    InvoiceStatusChange,
)
from app.backend.src.services.catalog import SqlCatalog
from app.backend.src.services.invoice_document import (
    build_invoice_document,
    invoice_totals,
)
from app.backend.src.services.lifecycle import EDITABLE_STATUSES, allowed_targets, transition
from app.backend.src.services.metrics import invoice_number_conflicts_total
from app.backend.src.services.numbering import is_number_conflict, issue_number, scope_for
from app.backend.src.services.pdf_generation import RenderedDocument, render_invoice_pdf
from app.backend.src.services.totals import (
    LineDraft,
    ProductLine,
    lines_from_input,
    tax_fraction,
    to_money,
    validate_price_floor,
    validate_stock,
)

LOGGER = structlog.get_logger(__name__)

DEFAULT_PAYMENT_DAYS = 14
UPDATABLE_FIELDS = ("issue_date", "due_date", "tax_rate", "notes")


def get_invoice(session: Session, invoice_id: int) -> Invoice:
    invoice = session.execute(
        select(Invoice)
        .options(selectinload(Invoice.line_items), selectinload(Invoice.client))
        .where(Invoice.id == invoice_id)
    ).scalar_one_or_none()
    if invoice is None:
        raise InvoiceNotFoundError(invoice_id)
    return invoice


def _validated_lines(
    session: Session,
    items: Sequence[Mapping[str, Any] | Any],
    *,
    released: Sequence[InvoiceLineItem] = (),
) -> list[LineDraft]:
    """Validate submitted lines against live catalog prices and stock.

    Product rows are locked for the rest of the transaction so the floor
    and stock cannot move between the checks and the write. Stock held by
    ``released`` lines is returned before the new quantities are taken.
    """

    lines = lines_from_input(items)
    catalog = SqlCatalog(session)
    validate_price_floor(lines, catalog)

    for item in released:
        if item.product_id is not None:
            catalog.restock(item.product_id, item.quantity)
    requested = validate_stock(lines, catalog)
    for product_id, quantity in requested.items():
        if not catalog.take_stock(product_id, quantity):
            # Lost a race with another writer after the check above.
            name = next(line.product_name for line in lines if line.product_id == product_id)
            raise InsufficientStockError(
                [
                    {
                        "product_id": product_id,
                        "product_name": name,
                        "available": catalog.stock_of(product_id),
                        "requested": quantity,
                    }
                ]
            )

    return [
        dataclasses.replace(
            line,
            sku=line.sku or catalog.sku_of(line.product_id),
            buying_price=catalog.buying_price_of(line.product_id),
        )
        if isinstance(line, ProductLine)
        else line
        for line in lines
    ]


def _line_item_rows(lines: Sequence[LineDraft]) -> list[InvoiceLineItem]:
    return [
        InvoiceLineItem(
            position=position,
            product_id=line.product_id,
            product_name=line.product_name,
            description=line.description,
            sku=line.sku,
            quantity=line.quantity,
            unit_price=line.unit_price,
            buying_price=line.buying_price,
        )
        for position, line in enumerate(lines, start=1)
    ]


def _checked_tax_rate(value: Any) -> Decimal:
    tax_fraction(value)
    return to_money(value)


def _create_once(
    session: Session,
    *,
    client_id: int,
    line_items: Sequence[Mapping[str, Any] | Any],
    created_by: str,
    issue_date: date,
    due_date: date,
    tax_rate: Decimal,
    notes: str,
    settings: Settings,
) -> Invoice:
    client = session.get(Client, client_id)
    if client is None:
        raise ClientNotFoundError(client_id)

    lines = _validated_lines(session, line_items)
    scope = scope_for(client.id, settings.invoice_numbering_scope)
    number = issue_number(
        session,
        scope,
        strategy=settings.invoice_numbering_strategy,
        width=settings.invoice_number_width,
    )
    invoice = Invoice(
        invoice_number=number,
        numbering_scope=scope,
        client_id=client.id,
        status=InvoiceStatus.PENDING.value,
        issue_date=issue_date,
        due_date=due_date,
        tax_rate=tax_rate,
        notes=notes,
        created_by=created_by,
        line_items=_line_item_rows(lines),
    )
    session.add(invoice)
    session.flush()
    return invoice


def create_invoice(
    session: Session,
    *,
    client_id: int,
    line_items: Sequence[Mapping[str, Any] | Any],
    created_by: str,
    issue_date: date | None = None,
    due_date: date | None = None,
    tax_rate: Any = None,
    notes: str | None = None,
    settings: Settings | None = None,
) -> Invoice:
    """Create a ``pending`` invoice with a freshly issued number.

    Issuing the number, inserting the invoice and inserting its lines form
    one transaction. Losing a numbering race rolls the transaction back and
    starts over, up to ``INVOICE_NUMBER_MAX_ATTEMPTS`` times.
    """

    settings = settings or get_settings()
    issue_date = issue_date or date.today()
    due_date = due_date or issue_date + timedelta(days=DEFAULT_PAYMENT_DAYS)
    tax_rate = _checked_tax_rate(settings.default_tax_rate if tax_rate is None else tax_rate)
    attempts = max(1, settings.invoice_number_max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            invoice = _create_once(
                session,
                client_id=client_id,
                line_items=line_items,
                created_by=created_by,
                issue_date=issue_date,
                due_date=due_date,
                tax_rate=tax_rate,
                notes=notes or "",
                settings=settings,
            )
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            if not is_number_conflict(exc):
                raise
            invoice_number_conflicts_total.inc()
            LOGGER.warning(
                "invoice_number_conflict",
                client_id=client_id,
                attempt=attempt,
                max_attempts=attempts,
            )
            continue
        except InvoiceEngineError:
            session.rollback()
            raise

        session.refresh(invoice)
        LOGGER.info(
            "invoice_created",
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            client_id=client_id,
            line_items=len(invoice.line_items),
            created_by=created_by,
        )
        return invoice

    raise DuplicateInvoiceNumberError(
        f"Could not issue a unique invoice number after {attempts} attempts",
        details={"client_id": client_id, "attempts": attempts},
    )


def _json_value(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _line_summary(items: Sequence[InvoiceLineItem]) -> list[dict[str, Any]]:
    return [
        {
            "product_id": item.product_id,
            "product_name": item.product_name,
            "quantity": item.quantity,
            "unit_price": str(to_money(item.unit_price)),
        }
        for item in items
    ]


def _edit_guard(invoice: Invoice, *, actor: str | None, force: bool) -> bool:
    """Return whether the edit must be audited; refuse it if it is not allowed.

    Invoices still in ``pending`` or ``maker`` are edited freely. Anything
    later needs ``force`` and a named actor.
    """

    if invoice.status_enum in EDITABLE_STATUSES:
        return False
    if not force:
        raise InvoiceLockedError(
            f"Invoice {invoice.invoice_number} is {invoice.status}; editing it "
            "requires force and an actor",
            details={"invoice_id": invoice.id, "status": invoice.status},
        )
    if not (actor or "").strip():
        raise InvoiceValidationError(
            "A forced edit must name the actor", details={"field": "actor"}
        )
    return True


def _record_amendment(
    session: Session,
    invoice: Invoice,
    *,
    actor: str,
    reason: str | None,
    changes: dict[str, Any],
) -> InvoiceAmendment:
    amendment = InvoiceAmendment(
        invoice_id=invoice.id,
        status=invoice.status,
        actor=actor.strip(),
        reason=reason,
        changes=changes,
    )
    session.add(amendment)
    LOGGER.warning(
        "invoice_amended",
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        status=invoice.status,
        actor=amendment.actor,
        fields=sorted(changes),
    )
    return amendment


def replace_line_items(
    session: Session,
    invoice_id: int,
    line_items: Sequence[Mapping[str, Any] | Any],
    *,
    actor: str | None = None,
    reason: str | None = None,
    force: bool = False,
) -> Invoice:
    """Replace every line item of an invoice; all or nothing.

    Stock held by the old lines is returned before the new lines take
    theirs. Invoices past ``maker`` need ``force`` and are audited.
    """

    invoice = get_invoice(session, invoice_id)
    audited = _edit_guard(invoice, actor=actor, force=force)
    try:
        previous = _line_summary(invoice.line_items)
        lines = _validated_lines(session, line_items, released=list(invoice.line_items))
        invoice.line_items.clear()
        session.flush()
        invoice.line_items.extend(_line_item_rows(lines))
        session.add(invoice)
        if audited:
            _record_amendment(
                session,
                invoice,
                actor=actor or "",
                reason=reason,
                changes={
                    "line_items": {
                        "from": previous,
                        "to": _line_summary(invoice.line_items),
                    }
                },
            )
        session.commit()
    except InvoiceEngineError:
        session.rollback()
        raise
    session.refresh(invoice)
    LOGGER.info(
        "invoice_line_items_replaced",
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        line_items=len(invoice.line_items),
    )
    return invoice


def update_invoice(
    session: Session,
    invoice_id: int,
    changes: Mapping[str, Any],
    *,
    actor: str | None = None,
    reason: str | None = None,
    force: bool = False,
) -> Invoice:
    """Update editable header fields. Status is never written here."""

    invoice = get_invoice(session, invoice_id)
    if "status" in changes:
        raise DispatchRequiredError(
            "Status changes go through the status or send operations",
            details={"field": "status"},
        )
    audited = _edit_guard(invoice, actor=actor, force=force)
    diff: dict[str, Any] = {}
    try:
        for field_name in UPDATABLE_FIELDS:
            if field_name not in changes or changes[field_name] is None:
                continue
            value = changes[field_name]
            if field_name == "tax_rate":
                value = _checked_tax_rate(value)
            current = getattr(invoice, field_name)
            if current != value:
                diff[field_name] = {"from": _json_value(current), "to": _json_value(value)}
            setattr(invoice, field_name, value)
        session.add(invoice)
        if audited and diff:
            _record_amendment(
                session, invoice, actor=actor or "", reason=reason, changes=diff
            )
        session.commit()
    except InvoiceEngineError:
        session.rollback()
        raise
    session.refresh(invoice)
    return invoice


def delete_invoice(session: Session, invoice_id: int) -> None:
    invoice = get_invoice(session, invoice_id)
    session.delete(invoice)
    session.commit()
    LOGGER.info(
        "invoice_deleted", invoice_id=invoice_id, invoice_number=invoice.invoice_number
    )


def change_status(
    session: Session,
    invoice_id: int,
    target: InvoiceStatus | str,
    *,
    actor: str,
    reason: str | None = None,
    force: bool = False,
) -> Invoice:
    """Apply an operator status write. ``sent`` is only reachable via dispatch."""

    invoice = get_invoice(session, invoice_id)
    try:
        transition(session, invoice, target, actor=actor, reason=reason, force=force)
        session.commit()
    except InvoiceEngineError:
        session.rollback()
        raise
    session.refresh(invoice)
    return invoice


def status_history(session: Session, invoice_id: int) -> list[InvoiceStatusChange]:
    get_invoice(session, invoice_id)
    return list(
        session.execute(
            select(InvoiceStatusChange)
            .where(InvoiceStatusChange.invoice_id == invoice_id)
            .order_by(InvoiceStatusChange.id)
        ).scalars()
    )


def list_receipts(session: Session, invoice_id: int) -> list[DeliveryReceipt]:
    get_invoice(session, invoice_id)
    return list(
        session.execute(
            select(DeliveryReceipt)
            .where(DeliveryReceipt.invoice_id == invoice_id)
            .order_by(DeliveryReceipt.id)
        ).scalars()
    )


def list_amendments(session: Session, invoice_id: int) -> list[InvoiceAmendment]:
    get_invoice(session, invoice_id)
    return list(
        session.execute(
            select(InvoiceAmendment)
            .where(InvoiceAmendment.invoice_id == invoice_id)
            .order_by(InvoiceAmendment.id)
        ).scalars()
    )


def render_document(
    session: Session, invoice_id: int, *, show_prices: bool = True
) -> RenderedDocument:
    invoice = get_invoice(session, invoice_id)
    return render_invoice_pdf(build_invoice_document(invoice), show_prices=show_prices)


def serialize_invoice(invoice: Invoice) -> dict[str, Any]:
    """Return an API representation with totals derived from the line items."""

    totals = invoice_totals(invoice)
    client = invoice.client
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "numbering_scope": invoice.numbering_scope,
        "status": invoice.status,
        "allowed_statuses": [status.value for status in allowed_targets(invoice.status_enum)],
        "client": {
            "id": client.id,
            "name": client.name,
            "company": client.company,
            "email": client.email,
            "client_unique_number": client.client_unique_number,
        },
        "issue_date": invoice.issue_date,
        "due_date": invoice.due_date,
        "tax_rate": invoice.tax_rate,
        "notes": invoice.notes,
        "created_by": invoice.created_by,
        "sent_at": invoice.sent_at,
        "paid_at": invoice.paid_at,
        "created_at": invoice.created_at,
        "updated_at": invoice.updated_at,
        "line_items": [
            {
                "id": item.id,
                "position": item.position,
                "product_id": item.product_id,
                "product_name": item.product_name,
                "description": item.description,
                "sku": item.sku,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "buying_price": item.buying_price,
                "line_total": amount,
            }
            for item, amount in zip(invoice.line_items, totals.line_totals)
        ],
        "subtotal": totals.subtotal,
        "tax_amount": totals.tax_amount,
        "total": totals.total,
    }


__all__ = [
    "change_status",
    "create_invoice",
    "delete_invoice",
    "get_invoice",
    "list_amendments",
    "list_receipts",
    "render_document",
    "replace_line_items",
    "serialize_invoice",
    "status_history",
    "update_invoice",
]
