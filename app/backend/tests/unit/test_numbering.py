"""Tests for invoice number issuance and the creation retry loop."""

from __future__ import annotations

import os
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[4]))

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_invoice.db")

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import select

from app.backend.src.core.config import Settings
from app.backend.src.core.errors import DuplicateInvoiceNumberError
from app.backend.src.db import get_engine, session_scope
from app.backend.src.models import Client, Invoice, InvoiceCounter
from app.backend.src.models.base import Base
from app.backend.src.services import numbering
from app.backend.src.services.invoices import create_invoice

SHIPPING = [{"product_name": "Versand", "quantity": 1, "unit_price": "4.90"}]
ISSUED = date(2024, 1, 15)


@pytest.fixture(autouse=True)
def setup_database() -> None:  # type: ignore[no-untyped-def]
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client_ids() -> list[int]:
    with session_scope() as session:
        clients = [
            Client(name="Musterbau GmbH", email="buchhaltung@musterbau.example"),
            Client(name="Hafenlogistik AG", email="rechnung@hafen.example"),
        ]
        session.add_all(clients)
        session.flush()
        return [client.id for client in clients]


def _conflicts() -> float:
    return REGISTRY.get_sample_value("invoice_number_conflicts_total") or 0.0


def _create(client_id: int, settings: Settings) -> str:
    with session_scope() as session:
        invoice = create_invoice(
            session,
            client_id=client_id,
            line_items=SHIPPING,
            created_by="tests",
            settings=settings,
        )
        return invoice.invoice_number


def test_format_and_parse_number() -> None:
    assert numbering.format_number(7, 3) == "007"
    assert numbering.format_number(1234, 3) == "1234"
    assert numbering.parse_number(" 042 ") == 42
    assert numbering.parse_number("INV-1") is None
    assert numbering.parse_number(None) is None


def test_scope_for_global_and_client_modes() -> None:
    assert numbering.scope_for(5, "global") == "global"
    assert numbering.scope_for(5, "client") == "client:5"
    with pytest.raises(ValueError):
        numbering.scope_for(None, "client")


@pytest.mark.parametrize("strategy", ["counter", "scan"])
def test_first_invoice_is_numbered_001(client_ids: list[int], strategy: str) -> None:
    settings = Settings(INVOICE_NUMBERING_STRATEGY=strategy)

    assert _create(client_ids[0], settings) == "001"
    assert _create(client_ids[0], settings) == "002"


def test_counter_is_seeded_from_existing_numbers(client_ids: list[int]) -> None:
    with session_scope() as session:
        for number in ("003", "005", "abc"):
            session.add(
                Invoice(
                    invoice_number=number,
                    numbering_scope="global",
                    client_id=client_ids[0],
                    status="pending",
                    issue_date=ISSUED,
                    due_date=ISSUED,
                    tax_rate=Decimal("19"),
                    created_by="import",
                )
            )

    assert _create(client_ids[0], Settings(INVOICE_NUMBERING_STRATEGY="counter")) == "006"

    with session_scope() as session:
        counter = session.execute(
            select(InvoiceCounter).where(InvoiceCounter.name == "invoice:global")
        ).scalar_one()
        assert counter.value == 6


def test_per_client_scopes_count_independently(client_ids: list[int]) -> None:
    settings = Settings(INVOICE_NUMBERING_SCOPE="client")
    first, second = client_ids

    assert _create(first, settings) == "001"
    assert _create(first, settings) == "002"
    assert _create(second, settings) == "001"

    with session_scope() as session:
        scopes = set(session.execute(select(Invoice.numbering_scope)).scalars())
    assert scopes == {f"client:{first}", f"client:{second}"}


def test_concurrent_creation_issues_unique_consecutive_numbers(client_ids: list[int]) -> None:
    settings = Settings(INVOICE_NUMBERING_STRATEGY="counter")

    with ThreadPoolExecutor(max_workers=6) as pool:
        numbers = list(pool.map(lambda _: _create(client_ids[0], settings), range(18)))

    assert len(set(numbers)) == 18
    assert sorted(numbers) == [f"{value:03d}" for value in range(1, 19)]


def test_scan_strategy_retries_after_losing_a_race(
    client_ids: list[int], monkeypatch: pytest.MonkeyPatch
) -> None:
    settings = Settings(INVOICE_NUMBERING_STRATEGY="scan")
    assert _create(client_ids[0], settings) == "001"

    real_highest = numbering.highest_number
    calls = {"count": 0}

    def stale_once(session, scope):  # type: ignore[no-untyped-def]
        calls["count"] += 1
        if calls["count"] == 1:
            return 0
        return real_highest(session, scope)

    monkeypatch.setattr(numbering, "highest_number", stale_once)
    before = _conflicts()

    assert _create(client_ids[0], settings) == "002"
    assert calls["count"] == 2
    assert _conflicts() == before + 1


def test_scan_strategy_gives_up_after_max_attempts(
    client_ids: list[int], monkeypatch: pytest.MonkeyPatch
) -> None:
    settings = Settings(
        INVOICE_NUMBERING_STRATEGY="scan", INVOICE_NUMBER_MAX_ATTEMPTS=3
    )
    assert _create(client_ids[0], settings) == "001"
    monkeypatch.setattr(numbering, "highest_number", lambda session, scope: 0)
    before = _conflicts()

    with pytest.raises(DuplicateInvoiceNumberError) as excinfo:
        _create(client_ids[0], settings)

    assert excinfo.value.details["attempts"] == 3
    assert _conflicts() == before + 3
    with session_scope() as session:
        numbers = list(session.execute(select(Invoice.invoice_number)).scalars())
    assert numbers == ["001"]
