"""Tests for the invoice dispatch coordinator."""

from __future__ import annotations

import hashlib
import os
import smtplib
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[4]))

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_invoice.db")

import pytest
from prometheus_client import REGISTRY

from app.backend.src.core.config import Settings
from app.backend.src.core.errors import (
    DispatchError,
    MailConfigurationError,
    MailTransportError,
)
from app.backend.src.db import get_engine, session_scope
from app.backend.src.models import Client, Invoice
from app.backend.src.models.base import Base
from app.backend.src.services import invoices as invoice_service
from app.backend.src.services.dispatch import InvoiceDispatcher
from app.backend.src.services.invoice_document import Branding
from app.backend.src.services.mailer import MailReport, OutgoingMessage, SmtpMailer
from app.backend.src.services.seed import seed_development_data

FIXED_NOW = datetime(2024, 3, 2, 8, 0, tzinfo=timezone.utc)
BRANDING = Branding(
    company_name="Pro Arbeitsschutz",
    address_lines=("Dieselstraße 6-8", "63165 Mühlheim am Main"),
)


class FakeMailer:
    """Records submitted messages instead of talking to an SMTP server."""

    def __init__(
        self,
        *,
        reject: bool = False,
        reject_code: int | None = None,
        send_error: Exception | None = None,
        verify_error: Exception | None = None,
    ) -> None:
        self.reject = reject
        self.reject_code = reject_code
        self.send_error = send_error
        self.verify_error = verify_error
        self.verified = 0
        self.sent: list[OutgoingMessage] = []

    def verify(self) -> None:
        self.verified += 1
        if self.verify_error is not None:
            raise self.verify_error

    def send(self, message: OutgoingMessage) -> MailReport:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)
        if self.reject:
            return MailReport(
                message_id="<1@test>",
                rejected=[message.recipient],
                response_code=self.reject_code,
                response="refused" if self.reject_code else None,
            )
        return MailReport(
            message_id=f"<{len(self.sent)}@test>",
            accepted=[message.recipient],
            response_code=250,
            response="2.0.0 queued",
        )


@pytest.fixture(autouse=True)
def setup_database() -> None:  # type: ignore[no-untyped-def]
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def invoice_id() -> int:
    with session_scope() as session:
        seeded = seed_development_data(session)
        session.commit()
        product = seeded.products[0]
        invoice = invoice_service.create_invoice(
            session,
            client_id=seeded.client.id,
            line_items=[
                {
                    "product_id": product.id,
                    "product_name": product.name,
                    "quantity": 1,
                    "unit_price": product.price,
                }
            ],
            created_by="tests",
        )
        return invoice.id


def _dispatcher(session, mailer: FakeMailer, **kwargs) -> InvoiceDispatcher:  # type: ignore[no-untyped-def]
    kwargs.setdefault("branding", BRANDING)
    return InvoiceDispatcher(session, mailer, now=lambda: FIXED_NOW, **kwargs)


def _sent_metric(outcome: str, stage: str) -> float:
    labels = {"outcome": outcome, "stage": stage}
    return REGISTRY.get_sample_value("invoice_dispatch_total", labels) or 0.0


def test_successful_dispatch_marks_invoice_sent_and_records_receipt(invoice_id: int) -> None:
    mailer = FakeMailer()
    before = _sent_metric("sent", "record")

    with session_scope() as session:
        receipt = _dispatcher(session, mailer).send(invoice_id)

    (message,) = mailer.sent
    assert mailer.verified == 1
    assert message.recipient == "buchhaltung@musterbau.example"
    assert message.subject == "Rechnung 001"
    assert "Rechnung 001" in message.text_body
    (attachment,) = message.attachments
    assert attachment.filename == "Rechnung-001.pdf"
    assert attachment.content.startswith(b"%PDF")

    assert receipt.id is not None
    assert receipt.accepted == ["buchhaltung@musterbau.example"]
    assert receipt.document_sha256 == hashlib.sha256(attachment.content).hexdigest()
    assert receipt.attachment_filename == "Rechnung-001.pdf"
    assert _sent_metric("sent", "record") == before + 1

    with session_scope() as session:
        invoice = session.get(Invoice, invoice_id)
        assert invoice.status == "sent"
        assert invoice.sent_at.replace(tzinfo=None) == FIXED_NOW.replace(tzinfo=None)
        assert receipt.total == invoice_service.serialize_invoice(invoice)["total"]
        (change,) = invoice_service.status_history(session, invoice_id)
        assert (change.from_status, change.to_status) == ("pending", "sent")
        assert change.receipt_id == receipt.id
        assert change.actor == "dispatch"


def test_dispatch_honours_recipient_subject_and_message_overrides(invoice_id: int) -> None:
    mailer = FakeMailer()

    with session_scope() as session:
        receipt = _dispatcher(session, mailer).send(
            invoice_id,
            recipient=" einkauf@musterbau.example ",
            subject="Ihre Rechnung",
            message="Hallo Team,\n\nanbei die Rechnung.",
        )

    (message,) = mailer.sent
    assert message.recipient == "einkauf@musterbau.example"
    assert message.subject == "Ihre Rechnung"
    assert message.text_body.startswith("Hallo Team,")
    assert receipt.recipient == "einkauf@musterbau.example"


def test_rejected_recipient_leaves_invoice_untouched(invoice_id: int) -> None:
    before = _sent_metric("failed", "transmit")

    with session_scope() as session:
        with pytest.raises(DispatchError) as excinfo:
            _dispatcher(session, FakeMailer(reject=True)).send(invoice_id)

    error = excinfo.value
    assert error.stage == "transmit"
    assert error.code == "RECIPIENT_REJECTED"
    assert error.status_code == 502
    assert error.retryable is False
    assert error.report["rejected"] == ["buchhaltung@musterbau.example"]
    assert _sent_metric("failed", "transmit") == before + 1

    with session_scope() as session:
        assert session.get(Invoice, invoice_id).status == "pending"
        assert invoice_service.list_receipts(session, invoice_id) == []
        assert invoice_service.status_history(session, invoice_id) == []


def test_transport_failure_is_retryable_and_changes_nothing(invoice_id: int) -> None:
    mailer = FakeMailer(send_error=MailTransportError("connection reset"))

    with session_scope() as session:
        with pytest.raises(DispatchError) as excinfo:
            _dispatcher(session, mailer).send(invoice_id)

    assert excinfo.value.stage == "transmit"
    assert excinfo.value.code == "MAIL_TRANSPORT_FAILED"
    assert excinfo.value.retryable is True
    assert isinstance(excinfo.value.cause, MailTransportError)
    with session_scope() as session:
        assert session.get(Invoice, invoice_id).status == "pending"


def test_missing_mail_configuration_fails_at_verify(invoice_id: int) -> None:
    mailer = FakeMailer(verify_error=MailConfigurationError("SMTP is not configured"))

    with session_scope() as session:
        with pytest.raises(DispatchError) as excinfo:
            _dispatcher(session, mailer).send(invoice_id)

    assert excinfo.value.stage == "verify"
    assert excinfo.value.code == "MAIL_NOT_CONFIGURED"
    assert excinfo.value.retryable is False
    assert mailer.sent == []


def test_client_without_email_needs_an_explicit_recipient(invoice_id: int) -> None:
    with session_scope() as session:
        invoice = session.get(Invoice, invoice_id)
        session.get(Client, invoice.client_id).email = None

    mailer = FakeMailer()
    with session_scope() as session:
        with pytest.raises(DispatchError) as excinfo:
            _dispatcher(session, mailer).send(invoice_id)

    assert excinfo.value.stage == "recipient"
    assert excinfo.value.code == "NO_RECIPIENT"
    assert excinfo.value.status_code == 400
    assert mailer.verified == 0

    with session_scope() as session:
        receipt = _dispatcher(session, mailer).send(
            invoice_id, recipient="einkauf@musterbau.example"
        )
    assert receipt.recipient == "einkauf@musterbau.example"


def test_unknown_invoice_fails_at_load() -> None:
    with session_scope() as session:
        with pytest.raises(DispatchError) as excinfo:
            _dispatcher(session, FakeMailer()).send(404)

    assert excinfo.value.stage == "load"
    assert excinfo.value.code == "INVOICE_NOT_FOUND"
    assert excinfo.value.status_code == 404


def test_render_failure_stops_before_sending(invoice_id: int, tmp_path: Path) -> None:
    mailer = FakeMailer()
    branding = Branding(company_name="Pro Arbeitsschutz", font_path=str(tmp_path / "none.ttf"))

    with session_scope() as session:
        with pytest.raises(DispatchError) as excinfo:
            _dispatcher(session, mailer, branding=branding).send(invoice_id)

    assert excinfo.value.stage == "render"
    assert excinfo.value.code == "PDF_FONT_MISSING"
    assert mailer.sent == []


def test_resending_a_paid_invoice_records_receipt_without_status_change(invoice_id: int) -> None:
    mailer = FakeMailer()
    with session_scope() as session:
        _dispatcher(session, mailer).send(invoice_id)
        invoice_service.change_status(session, invoice_id, "paid", actor="buchhaltung")

    with session_scope() as session:
        receipt = _dispatcher(session, mailer).send(invoice_id)

        assert session.get(Invoice, invoice_id).status == "paid"
        assert [item.id for item in invoice_service.list_receipts(session, invoice_id)][-1] == receipt.id
        assert len(invoice_service.list_receipts(session, invoice_id)) == 2
        history = invoice_service.status_history(session, invoice_id)
        assert [(item.from_status, item.to_status) for item in history] == [
            ("pending", "sent"),
            ("sent", "paid"),
        ]
    assert len(mailer.sent) == 2


@pytest.mark.parametrize(
    ("reply_code", "error_code", "retryable", "status_code"),
    [
        (550, "RECIPIENT_REJECTED", False, 502),
        (450, "MAIL_TRANSPORT_FAILED", True, 503),
        (452, "MAIL_TRANSPORT_FAILED", True, 503),
    ],
)
def test_recipient_refusal_is_permanent_only_for_5xx_replies(
    invoice_id: int, reply_code: int, error_code: str, retryable: bool, status_code: int
) -> None:
    mailer = FakeMailer(reject=True, reject_code=reply_code)

    with session_scope() as session:
        with pytest.raises(DispatchError) as excinfo:
            _dispatcher(session, mailer).send(invoice_id)

    error = excinfo.value
    assert error.stage == "transmit"
    assert error.code == error_code
    assert error.retryable is retryable
    assert error.status_code == status_code
    assert error.details["smtp_code"] == reply_code
    assert error.report["response_code"] == reply_code
    assert error.report["response"] == "refused"
    with session_scope() as session:
        assert session.get(Invoice, invoice_id).status == "pending"


class AsciiOnlySMTP:
    """SMTP server double without SMTPUTF8 that encodes commands like smtplib."""

    def __init__(self, host, port, timeout=None, context=None):  # type: ignore[no-untyped-def]
        self.calls: list[str] = []

    def starttls(self, context=None):  # type: ignore[no-untyped-def]
        return 220, b"ready"

    def login(self, username, password):  # type: ignore[no-untyped-def]
        return 235, b"ok"

    def noop(self):  # type: ignore[no-untyped-def]
        return 250, b"ok"

    def ehlo_or_helo_if_needed(self) -> None:
        pass

    def has_extn(self, name):  # type: ignore[no-untyped-def]
        return False

    def mail(self, sender, options=()):  # type: ignore[no-untyped-def]
        return 250, b"ok"

    def rcpt(self, recipient):  # type: ignore[no-untyped-def]
        recipient.encode("ascii")
        return 250, b"ok"

    def rset(self):  # type: ignore[no-untyped-def]
        return 250, b"ok"

    def data(self, payload):  # type: ignore[no-untyped-def]
        return 250, b"queued"

    def quit(self):  # type: ignore[no-untyped-def]
        return 221, b"bye"

    def close(self) -> None:
        pass


def test_internationalized_client_email_fails_at_transmit_with_typed_error(
    invoice_id: int, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(smtplib, "SMTP", AsciiOnlySMTP)
    with session_scope() as session:
        invoice = session.get(Invoice, invoice_id)
        session.get(Client, invoice.client_id).email = "jörg@musterbau.example"

    mailer = SmtpMailer(
        Settings(
            SMTP_HOST="smtp.example.com",
            SMTP_USERNAME="rechnung@pro-arbeitsschutz.example",
            SMTP_PASSWORD="secret",
        )
    )
    before = _sent_metric("failed", "transmit")

    with session_scope() as session:
        with pytest.raises(DispatchError) as excinfo:
            _dispatcher(session, mailer).send(invoice_id)

    assert excinfo.value.stage == "transmit"
    assert excinfo.value.code == "RECIPIENT_REJECTED"
    assert excinfo.value.retryable is False
    assert _sent_metric("failed", "transmit") == before + 1
    with session_scope() as session:
        assert session.get(Invoice, invoice_id).status == "pending"
