"""Invoice related endpoints."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.backend.src.schemas.delivery_receipt import DeliveryReceiptRead
from app.backend.src.schemas.invoice import (
    AmendmentRead,
    InvoiceCreate,
    InvoiceRead,
    InvoiceUpdate,
    SendRequest,
    StatusChangeRead,
    StatusChangeRequest,
)
from app.backend.src.schemas.line_item import LineItemsReplace
from app.backend.src.services import invoices as invoice_service
from app.backend.src.services.dispatch import InvoiceDispatcher
from app.backend.src.services.mailer import Mailer, get_mailer
from ..db import get_session_dependency

LOGGER = structlog.get_logger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post("", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: InvoiceCreate,
    session: Session = Depends(get_session_dependency),
) -> dict:
    """Create a pending invoice with a newly issued number."""

    invoice = invoice_service.create_invoice(
        session,
        client_id=payload.client_id,
        line_items=payload.line_items,
        created_by=payload.created_by,
        issue_date=payload.issue_date,
        due_date=payload.due_date,
        tax_rate=payload.tax_rate,
        notes=payload.notes,
    )
    return invoice_service.serialize_invoice(invoice)


@router.get("/{invoice_id}", response_model=InvoiceRead)
def read_invoice(
    invoice_id: int,
    session: Session = Depends(get_session_dependency),
) -> dict:
    """Return an invoice with freshly computed totals."""

    return invoice_service.serialize_invoice(invoice_service.get_invoice(session, invoice_id))


@router.patch("/{invoice_id}", response_model=InvoiceRead)
def update_invoice(
    invoice_id: int,
    payload: InvoiceUpdate,
    session: Session = Depends(get_session_dependency),
) -> dict:
    invoice = invoice_service.update_invoice(
        session,
        invoice_id,
        payload.model_dump(exclude_unset=True, exclude={"actor", "reason", "force"}),
        actor=payload.actor,
        reason=payload.reason,
        force=payload.force,
    )
    return invoice_service.serialize_invoice(invoice)


@router.put("/{invoice_id}/line-items", response_model=InvoiceRead)
def replace_line_items(
    invoice_id: int,
    payload: LineItemsReplace,
    session: Session = Depends(get_session_dependency),
) -> dict:
    """Replace all line items; rejected as a whole on any price or stock violation."""

    invoice = invoice_service.replace_line_items(
        session,
        invoice_id,
        payload.line_items,
        actor=payload.actor,
        reason=payload.reason,
        force=payload.force,
    )
    return invoice_service.serialize_invoice(invoice)


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice(
    invoice_id: int,
    session: Session = Depends(get_session_dependency),
) -> Response:
    invoice_service.delete_invoice(session, invoice_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{invoice_id}/status", response_model=InvoiceRead)
def change_status(
    invoice_id: int,
    payload: StatusChangeRequest,
    session: Session = Depends(get_session_dependency),
) -> dict:
    """Apply an operator status change. ``sent`` is only reachable via ``/send``."""

    invoice = invoice_service.change_status(
        session,
        invoice_id,
        payload.status,
        actor=payload.actor,
        reason=payload.reason,
        force=payload.force,
    )
    return invoice_service.serialize_invoice(invoice)


@router.get("/{invoice_id}/history", response_model=list[StatusChangeRead])
def status_history(
    invoice_id: int,
    session: Session = Depends(get_session_dependency),
):
    return invoice_service.status_history(session, invoice_id)


@router.get("/{invoice_id}/amendments", response_model=list[AmendmentRead])
def list_amendments(
    invoice_id: int,
    session: Session = Depends(get_session_dependency),
):
    return invoice_service.list_amendments(session, invoice_id)


@router.post("/{invoice_id}/send", response_model=DeliveryReceiptRead)
def send_invoice(
    invoice_id: int,
    payload: SendRequest | None = None,
    session: Session = Depends(get_session_dependency),
    mailer: Mailer = Depends(get_mailer),
):
    """Render the invoice, email it and mark it sent once the server accepts it."""

    payload = payload or SendRequest()
    receipt = InvoiceDispatcher(session, mailer).send(
        invoice_id,
        recipient=payload.email,
        subject=payload.subject,
        message=payload.message,
    )
    return receipt


@router.get("/{invoice_id}/receipts", response_model=list[DeliveryReceiptRead])
def list_receipts(
    invoice_id: int,
    session: Session = Depends(get_session_dependency),
):
    return invoice_service.list_receipts(session, invoice_id)


@router.get("/{invoice_id}/pdf")
def download_pdf(
    invoice_id: int,
    show_prices: bool = Query(True),
    session: Session = Depends(get_session_dependency),
) -> Response:
    """Render the invoice, or the delivery note variant with ``show_prices=false``."""

    document = invoice_service.render_document(session, invoice_id, show_prices=show_prices)
    LOGGER.info(
        "invoice_pdf_downloaded",
        invoice_id=invoice_id,
        show_prices=show_prices,
        filename=document.filename,
    )
    return Response(
        content=document.content,
        media_type=document.media_type,
        headers={
            "Content-Disposition": f'inline; filename="{document.filename}"',
            "X-Page-Count": str(document.page_count),
        },
    )
