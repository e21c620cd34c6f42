"""Tests for the invoice service layer."""

from __future__ import annotations

import os
import sys
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[4]))

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_invoice.db")

import pytest
from sqlalchemy import func, select

from app.backend.src.core.config import Settings
from app.backend.src.core.errors import (
    ClientNotFoundError,
    DispatchRequiredError,
    InsufficientStockError,
    InvalidTransitionError,
    InvoiceLockedError,
    InvoiceNotFoundError,
    InvoiceValidationError,
    PriceFloorError,
    ProductNotFoundError,
)
from app.backend.src.db import get_engine, session_scope
from app.backend.src.models import (
    Invoice,
    InvoiceAmendment,
    InvoiceLineItem,
    InvoiceStatusChange,
    Product,
)
from app.backend.src.models.base import Base
from app.backend.src.services import invoices as invoice_service
from app.backend.src.services.seed import seed_development_data


@pytest.fixture(autouse=True)
def setup_database() -> None:  # type: ignore[no-untyped-def]
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def seeded() -> dict[str, int]:
    with session_scope() as session:
        result = seed_development_data(session)
        ids = {"client": result.client.id}
        for product in result.products:
            ids[product.sku] = product.id
        return ids


def _create(session, seeded: dict[str, int], line_items=None, **kwargs) -> Invoice:  # type: ignore[no-untyped-def]
    return invoice_service.create_invoice(
        session,
        client_id=seeded["client"],
        line_items=line_items
        or [
            {
                "product_id": seeded["PA-S3-100"],
                "product_name": "Sicherheitsschuh S3",
                "quantity": 2,
                "unit_price": "89.90",
            },
            {"product_name": "Versand", "quantity": 1, "unit_price": "5.50"},
        ],
        created_by="sachbearbeitung",
        **kwargs,
    )


def _count(session, model) -> int:  # type: ignore[no-untyped-def]
    return session.execute(select(func.count()).select_from(model)).scalar_one()


def test_create_invoice_persists_pending_invoice_with_defaults(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(session, seeded, issue_date=date(2024, 3, 1))

        assert invoice.invoice_number == "001"
        assert invoice.status == "pending"
        assert invoice.due_date == date(2024, 3, 1) + timedelta(days=14)
        assert invoice.tax_rate == Decimal("19.00")
        assert [item.position for item in invoice.line_items] == [1, 2]
        assert invoice.line_items[0].sku == "PA-S3-100"
        assert invoice.line_items[1].product_id is None


def test_create_invoice_uses_configured_default_tax_rate(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(session, seeded, settings=Settings(DEFAULT_TAX_RATE="7"))

        assert invoice.tax_rate == Decimal("7.00")


def test_create_invoice_below_price_floor_persists_nothing(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        with pytest.raises(PriceFloorError) as excinfo:
            _create(
                session,
                seeded,
                line_items=[
                    {
                        "product_id": seeded["PA-WJ-300"],
                        "product_name": "Warnschutzjacke Klasse 3",
                        "quantity": 1,
                        "unit_price": "50.00",
                    },
                    {
                        "product_id": seeded["PA-HS-020"],
                        "product_name": "Arbeitshandschuhe Nitril",
                        "quantity": 10,
                        "unit_price": "4.95",
                    },
                ],
            )

        assert [item["product_id"] for item in excinfo.value.violations] == [seeded["PA-WJ-300"]]
        assert _count(session, Invoice) == 0
        assert _count(session, InvoiceLineItem) == 0


def test_create_invoice_rejects_unknown_client_and_product(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        with pytest.raises(ClientNotFoundError):
            invoice_service.create_invoice(
                session,
                client_id=9999,
                line_items=[{"product_name": "Versand", "quantity": 1, "unit_price": 1}],
                created_by="tests",
            )
        with pytest.raises(ProductNotFoundError):
            _create(
                session,
                seeded,
                line_items=[
                    {"product_id": 9999, "product_name": "Geist", "quantity": 1, "unit_price": 1}
                ],
            )
        assert _count(session, Invoice) == 0


def test_create_invoice_rejects_invalid_tax_rate(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        with pytest.raises(InvoiceValidationError):
            _create(session, seeded, tax_rate=150)


def test_failed_creation_does_not_consume_a_number(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        with pytest.raises(InvoiceValidationError):
            _create(
                session,
                seeded,
                line_items=[{"product_name": "Versand", "quantity": 0, "unit_price": 1}],
            )
        invoice = _create(session, seeded)

        assert invoice.invoice_number == "001"


def test_replace_line_items_swaps_every_line(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(session, seeded)
        updated = invoice_service.replace_line_items(
            session,
            invoice.id,
            [
                {
                    "product_id": seeded["PA-HS-020"],
                    "product_name": "Arbeitshandschuhe Nitril",
                    "quantity": 12,
                    "unit_price": "5.20",
                }
            ],
        )

        assert [(item.position, item.product_name) for item in updated.line_items] == [
            (1, "Arbeitshandschuhe Nitril")
        ]
        assert _count(session, InvoiceLineItem) == 1


def test_replace_line_items_is_all_or_nothing(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(session, seeded)
        invoice_id = invoice.id

        with pytest.raises(PriceFloorError):
            invoice_service.replace_line_items(
                session,
                invoice_id,
                [
                    {"product_name": "Versand", "quantity": 1, "unit_price": "5.50"},
                    {
                        "product_id": seeded["PA-S3-100"],
                        "product_name": "Sicherheitsschuh S3",
                        "quantity": 1,
                        "unit_price": "1.00",
                    },
                ],
            )

    with session_scope() as session:
        names = [item.product_name for item in invoice_service.get_invoice(session, invoice_id).line_items]
        assert names == ["Sicherheitsschuh S3", "Versand"]


def test_update_invoice_changes_header_fields_but_never_status(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(session, seeded)
        updated = invoice_service.update_invoice(
            session, invoice.id, {"notes": "Lieferung an Tor 3", "tax_rate": "7"}
        )
        assert updated.notes == "Lieferung an Tor 3"
        assert updated.tax_rate == Decimal("7.00")

        with pytest.raises(DispatchRequiredError):
            invoice_service.update_invoice(session, invoice.id, {"status": "sent"})
        with pytest.raises(InvoiceValidationError):
            invoice_service.update_invoice(session, invoice.id, {"tax_rate": -1})


def test_change_status_records_history_and_blocks_manual_sent(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(session, seeded)
        invoice_service.change_status(session, invoice.id, "maker", actor="buchhaltung")

        with pytest.raises(DispatchRequiredError) as excinfo:
            invoice_service.change_status(session, invoice.id, "sent", actor="buchhaltung")
        assert excinfo.value.status_code == 409
        with pytest.raises(InvalidTransitionError):
            invoice_service.change_status(session, invoice.id, "paid", actor="buchhaltung")

        history = invoice_service.status_history(session, invoice.id)
        assert [(item.from_status, item.to_status) for item in history] == [("pending", "maker")]
        assert invoice_service.get_invoice(session, invoice.id).status == "maker"


def test_delete_invoice_cascades_to_lines_and_history(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(session, seeded)
        invoice_service.change_status(session, invoice.id, "maker", actor="buchhaltung")
        invoice_service.delete_invoice(session, invoice.id)

        assert _count(session, Invoice) == 0
        assert _count(session, InvoiceLineItem) == 0
        assert _count(session, InvoiceStatusChange) == 0
        with pytest.raises(InvoiceNotFoundError):
            invoice_service.get_invoice(session, invoice.id)


def test_serialize_invoice_uses_current_line_items(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(session, seeded)
        product = session.get(Product, seeded["PA-S3-100"])
        product.price = Decimal("120.00")
        session.commit()

        payload = invoice_service.serialize_invoice(invoice)

        assert payload["subtotal"] == Decimal("185.30")
        assert payload["tax_amount"] == Decimal("35.21")
        assert payload["total"] == Decimal("220.51")
        assert payload["allowed_statuses"] == ["maker"]
        assert payload["client"]["client_unique_number"] == "K101"
        assert [line["line_total"] for line in payload["line_items"]] == [
            Decimal("179.80"),
            Decimal("5.50"),
        ]


def test_render_document_returns_invoice_and_delivery_note(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(session, seeded)

        with_prices = invoice_service.render_document(session, invoice.id)
        without_prices = invoice_service.render_document(session, invoice.id, show_prices=False)

        assert with_prices.content.startswith(b"%PDF")
        assert with_prices.filename == "invoice-001.pdf"
        assert without_prices.filename == "invoice-001-no-prices.pdf"


def _stock(session, product_id: int) -> int | None:  # type: ignore[no-untyped-def]
    session.expire_all()
    return session.get(Product, product_id).stock


def test_create_invoice_takes_stock_and_snapshots_buying_price(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(session, seeded)

        assert _stock(session, seeded["PA-S3-100"]) == 38
        assert invoice.line_items[0].buying_price == Decimal("52.00")
        assert invoice.line_items[1].buying_price is None
        assert invoice_service.serialize_invoice(invoice)["line_items"][0]["buying_price"] == Decimal(
            "52.00"
        )


def test_create_invoice_rejects_quantities_above_stock(seeded: dict[str, int]) -> None:
    line = {
        "product_id": seeded["PA-S3-100"],
        "product_name": "Sicherheitsschuh S3",
        "unit_price": "89.90",
    }
    with session_scope() as session:
        with pytest.raises(InsufficientStockError) as excinfo:
            _create(session, seeded, line_items=[{**line, "quantity": 30}, {**line, "quantity": 11}])

        assert excinfo.value.shortages == [
            {
                "product_id": seeded["PA-S3-100"],
                "product_name": "Sicherheitsschuh S3",
                "available": 40,
                "requested": 41,
            }
        ]
        assert _count(session, Invoice) == 0
        assert _stock(session, seeded["PA-S3-100"]) == 40

        invoice = _create(session, seeded, line_items=[{**line, "quantity": 40}])
        assert invoice.invoice_number == "001"
        assert _stock(session, seeded["PA-S3-100"]) == 0


def test_shipping_products_are_exempt_from_stock(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(
            session,
            seeded,
            line_items=[
                {
                    "product_id": seeded["PA-VS-001"],
                    "product_name": "Versandpauschale",
                    "quantity": 3,
                    "unit_price": "5.90",
                }
            ],
        )

        assert invoice.line_items[0].buying_price == Decimal("4.20")
        assert _stock(session, seeded["PA-VS-001"]) == 0


def test_replace_line_items_returns_old_stock_before_taking_new(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(session, seeded)
        assert _stock(session, seeded["PA-S3-100"]) == 38

        invoice_service.replace_line_items(
            session,
            invoice.id,
            [
                {
                    "product_id": seeded["PA-S3-100"],
                    "product_name": "Sicherheitsschuh S3",
                    "quantity": 40,
                    "unit_price": "89.90",
                }
            ],
        )
        assert _stock(session, seeded["PA-S3-100"]) == 0

        with pytest.raises(InsufficientStockError):
            invoice_service.replace_line_items(
                session,
                invoice.id,
                [
                    {
                        "product_id": seeded["PA-S3-100"],
                        "product_name": "Sicherheitsschuh S3",
                        "quantity": 41,
                        "unit_price": "89.90",
                    }
                ],
            )
        assert _stock(session, seeded["PA-S3-100"]) == 0
        assert [item.quantity for item in invoice_service.get_invoice(session, invoice.id).line_items] == [40]


def _paid_invoice(session, seeded: dict[str, int]) -> Invoice:  # type: ignore[no-untyped-def]
    invoice = _create(session, seeded)
    return invoice_service.change_status(
        session, invoice.id, "paid", actor="buchhaltung", reason="Zahlungseingang", force=True
    )


def test_editing_a_paid_invoice_requires_force(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _paid_invoice(session, seeded)

        with pytest.raises(InvoiceLockedError) as excinfo:
            invoice_service.update_invoice(session, invoice.id, {"notes": "Korrektur"})
        assert excinfo.value.status_code == 409
        with pytest.raises(InvoiceLockedError):
            invoice_service.replace_line_items(
                session,
                invoice.id,
                [{"product_name": "Versand", "quantity": 1, "unit_price": "5.50"}],
            )
        with pytest.raises(InvoiceValidationError):
            invoice_service.update_invoice(session, invoice.id, {"notes": "Korrektur"}, force=True)

        assert invoice_service.get_invoice(session, invoice.id).notes == ""
        assert _count(session, InvoiceAmendment) == 0


def test_forced_edits_of_a_paid_invoice_are_audited(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _paid_invoice(session, seeded)

        invoice_service.update_invoice(
            session,
            invoice.id,
            {"notes": "Korrektur", "due_date": date(2024, 5, 1)},
            actor="admin",
            reason="Kundenwunsch",
            force=True,
        )
        invoice_service.replace_line_items(
            session,
            invoice.id,
            [{"product_name": "Versand", "quantity": 1, "unit_price": "6.50"}],
            actor="admin",
            force=True,
        )

        header, lines = invoice_service.list_amendments(session, invoice.id)
        assert (header.actor, header.status, header.reason) == ("admin", "paid", "Kundenwunsch")
        assert header.changes["notes"] == {"from": "", "to": "Korrektur"}
        assert header.changes["due_date"]["to"] == "2024-05-01"
        assert [item["product_name"] for item in lines.changes["line_items"]["from"]] == [
            "Sicherheitsschuh S3",
            "Versand",
        ]
        assert lines.changes["line_items"]["to"] == [
            {"product_id": None, "product_name": "Versand", "quantity": 1, "unit_price": "6.50"}
        ]
        assert _stock(session, seeded["PA-S3-100"]) == 40


def test_editing_a_pending_invoice_leaves_no_amendment(seeded: dict[str, int]) -> None:
    with session_scope() as session:
        invoice = _create(session, seeded)
        invoice_service.update_invoice(session, invoice.id, {"notes": "Tor 3"})

        assert invoice_service.list_amendments(session, invoice.id) == []
