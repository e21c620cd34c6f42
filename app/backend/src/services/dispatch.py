"""Invoice dispatch: render, email and record delivery.

A dispatch runs in fixed stages. Each stage is a precondition for the next
and every failure is re-raised as a :class:`DispatchError` naming the stage,
so callers can tell a missing SMTP password from a flaky connection. The
invoice only becomes ``sent`` once the mail server has accepted the
message, and that status write is committed together with the delivery
receipt.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.backend.src.core.config import Settings, get_settings
from app.backend.src.core.errors import (
    DispatchError,
    InvoiceEngineError,
    InvoiceNotFoundError,
    MailTransportError,
    MissingRecipientError,
    RecipientRejectedError,
)
from app.backend.src.models import DeliveryReceipt, Invoice
from app.backend.src.services.formatting import format_date, format_money
from app.backend.src.services.invoice_document import (
    Branding,
    InvoiceDocument,
    branding_from_settings,
    build_invoice_document,
)
from app.backend.src.services.lifecycle import SENDABLE_STATUSES, transition
from app.backend.src.services.mailer import (
    Attachment,
    Mailer,
    MailReport,
    OutgoingMessage,
    render_email_bodies,
)
from app.backend.src.services.metrics import invoice_dispatch_total
from app.backend.src.services.pdf_generation import RenderedDocument, render_invoice_pdf
from app.backend.src.services.pdf_layout import labels_for

LOGGER = structlog.get_logger(__name__)

STAGES = ("load", "recipient", "verify", "render", "transmit", "record")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvoiceDispatcher:
    """Sends one invoice to its client and records the outcome."""

    def __init__(
        self,
        session: Session,
        mailer: Mailer,
        *,
        settings: Settings | None = None,
        branding: Branding | None = None,
        actor: str = "dispatch",
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.session = session
        self.mailer = mailer
        self.settings = settings or get_settings()
        self.branding = branding or branding_from_settings(self.settings)
        self.actor = actor
        self.now = now

    def send(
        self,
        invoice_id: int,
        *,
        recipient: str | None = None,
        subject: str | None = None,
        message: str | None = None,
    ) -> DeliveryReceipt:
        """Dispatch ``invoice_id`` and return the persisted delivery receipt.

        Sending an invoice that is already past ``maker`` is allowed; the
        receipt is recorded but the status is left alone.
        """

        stage = "load"
        report: MailReport | None = None
        try:
            invoice = self.session.get(Invoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(invoice_id)

            stage = "recipient"
            address = (recipient or invoice.client.email or "").strip()
            if not address:
                raise MissingRecipientError(
                    f"Invoice {invoice.invoice_number} has no recipient: client "
                    f"{invoice.client_id} has no email address",
                    details={"invoice_id": invoice.id, "client_id": invoice.client_id},
                )

            stage = "verify"
            self.mailer.verify()

            stage = "render"
            document = build_invoice_document(invoice)
            rendered = render_invoice_pdf(document, show_prices=True, branding=self.branding)

            stage = "transmit"
            outgoing = self._compose(document, rendered, address, subject, message)
            report = self.mailer.send(outgoing)
            if not report.accepted:
                reply = {
                    "recipient": address,
                    "smtp_code": report.response_code,
                    "smtp_response": report.response,
                }
                if report.temporary_failure:
                    raise MailTransportError(
                        f"Mail server temporarily refused recipient {address}: "
                        f"{report.response_code} {report.response}",
                        details=reply,
                    )
                raise RecipientRejectedError(
                    f"Mail server rejected recipient {address}", details=reply
                )

            stage = "record"
            receipt = self._record(invoice, document, rendered, outgoing, report)
        except InvoiceEngineError as exc:
            self.session.rollback()
            raise self._failure(invoice_id, stage, exc, report) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise self._failure(
                invoice_id,
                stage,
                InvoiceEngineError(
                    f"Database error: {exc}", code="DISPATCH_STORAGE_FAILED"
                ),
                report,
            ) from exc

        invoice_dispatch_total.labels(outcome="sent", stage="record").inc()
        LOGGER.info(
            "invoice_dispatched",
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            recipient=address,
            message_id=receipt.message_id,
            status=invoice.status,
        )
        return receipt

    def _compose(
        self,
        document: InvoiceDocument,
        rendered: RenderedDocument,
        address: str,
        subject: str | None,
        message: str | None,
    ) -> OutgoingMessage:
        title = labels_for(self.branding.locale)["invoice_title"]
        text_body, html_body = render_email_bodies(
            {
                "invoice_number": document.invoice_number,
                "client_name": document.recipient.name,
                "company_name": self.branding.company_name,
                "company_address": self.branding.address_lines,
                "total": format_money(
                    document.totals.total, self.branding.currency, self.branding.locale
                ),
                "due_date": format_date(document.due_date, self.branding.locale),
                "message": (message or "").strip(),
            }
        )
        return OutgoingMessage(
            recipient=address,
            subject=(subject or "").strip() or f"{title} {document.invoice_number}",
            text_body=text_body,
            html_body=html_body,
            attachments=(
                Attachment(
                    filename=f"{title}-{document.invoice_number}.pdf",
                    content=rendered.content,
                    media_type=rendered.media_type,
                ),
            ),
        )

    def _record(
        self,
        invoice: Invoice,
        document: InvoiceDocument,
        rendered: RenderedDocument,
        outgoing: OutgoingMessage,
        report: MailReport,
    ) -> DeliveryReceipt:
        receipt = DeliveryReceipt(
            invoice_id=invoice.id,
            message_id=report.message_id,
            recipient=outgoing.recipient,
            accepted=list(report.accepted),
            rejected=list(report.rejected),
            response_code=report.response_code,
            response=report.response,
            attachment_filename=outgoing.attachments[0].filename,
            document_sha256=hashlib.sha256(rendered.content).hexdigest(),
            subtotal=document.totals.subtotal,
            tax_amount=document.totals.tax_amount,
            total=document.totals.total,
        )
        self.session.add(receipt)
        self.session.flush()

        if invoice.status_enum in SENDABLE_STATUSES:
            transition(
                self.session,
                invoice,
                "sent",
                actor=self.actor,
                reason=f"Delivered to {outgoing.recipient}",
                receipt=receipt,
                now=self.now,
            )
        else:
            LOGGER.info(
                "invoice_resent",
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                status=invoice.status,
            )
        self.session.commit()
        self.session.refresh(receipt)
        return receipt

    def _failure(
        self,
        invoice_id: int,
        stage: str,
        cause: InvoiceEngineError,
        report: MailReport | None,
    ) -> DispatchError:
        invoice_dispatch_total.labels(outcome="failed", stage=stage).inc()
        LOGGER.warning(
            "invoice_dispatch_failed",
            invoice_id=invoice_id,
            stage=stage,
            error=cause.code,
            retryable=cause.retryable,
            message=cause.message,
        )
        return DispatchError(
            stage, cause, report=report.to_dict() if report is not None else None
        )


__all__ = ["InvoiceDispatcher", "STAGES"]
