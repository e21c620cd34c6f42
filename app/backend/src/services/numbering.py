"""Invoice number issuance.

Numbers are zero-padded decimal strings that are unique and strictly
increasing within a *scope*: either the whole system (``"global"``) or a
single client (``"client:<id>"``).

Two strategies are available:

``counter``
    Increments a row in ``invoice_counters`` with a single
    ``UPDATE ... RETURNING`` statement inside the caller's transaction. The
    row lock taken by the update serialises concurrent issuers.

``scan``
    Reads the highest number already used in the scope and adds one. This is
    only safe together with the ``(numbering_scope, invoice_number)`` unique
    constraint and the retry loop in :func:`app.backend.src.services.invoices.create_invoice`.
"""

from __future__ import annotations

from typing import Literal

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.backend.src.core.config import get_settings
from app.backend.src.models import Invoice, InvoiceCounter
from app.backend.src.services.metrics import invoice_numbers_issued_total

LOGGER = structlog.get_logger(__name__)

GLOBAL_SCOPE = "global"
Strategy = Literal["counter", "scan"]

# Fragments of the unique-constraint violations a number race produces.
_CONFLICT_MARKERS = (
    "uq_invoices_scope_number",
    "invoices.numbering_scope",
    "invoice_counters.name",
    "invoice_counters_name_key",
)


def scope_for(client_id: int | None, mode: str | None = None) -> str:
    """Return the numbering scope for an invoice of ``client_id``."""

    mode = mode or get_settings().invoice_numbering_scope
    if mode == "client":
        if client_id is None:
            raise ValueError("Per-client numbering requires a client id")
        return f"client:{client_id}"
    return GLOBAL_SCOPE


def counter_name(scope: str) -> str:
    return f"invoice:{scope}"


def format_number(value: int, width: int | None = None) -> str:
    width = width or get_settings().invoice_number_width
    return str(value).zfill(width)


def parse_number(value: str | None) -> int | None:
    """Return the integer value of an issued number, or ``None`` if unparseable."""

    if value is None:
        return None
    candidate = value.strip()
    if not candidate.isdigit():
        return None
    return int(candidate)


def highest_number(session: Session, scope: str) -> int:
    """Return the highest parseable number used in ``scope`` (0 if none)."""

    numbers = session.execute(
        select(Invoice.invoice_number).where(Invoice.numbering_scope == scope)
    ).scalars()
    parsed = [value for value in (parse_number(number) for number in numbers) if value]
    return max(parsed, default=0)


def _next_from_counter(session: Session, scope: str) -> int:
    name = counter_name(scope)
    value = session.execute(
        update(InvoiceCounter)
        .where(InvoiceCounter.name == name)
        .values(value=InvoiceCounter.value + 1)
        .returning(InvoiceCounter.value)
        .execution_options(synchronize_session=False)
    ).scalar_one_or_none()
    if value is not None:
        return value

    # First issuance in this scope: seed from whatever numbers already exist
    # so switching from the scan strategy never reissues a number. A racing
    # creator hits the unique constraint on ``name`` and retries.
    value = highest_number(session, scope) + 1
    session.add(InvoiceCounter(name=name, value=value))
    session.flush()
    LOGGER.info("invoice_counter_created", counter=name, seed=value)
    return value


def issue_number(
    session: Session,
    scope: str,
    *,
    strategy: Strategy | None = None,
    width: int | None = None,
) -> str:
    """Issue the next invoice number in ``scope``.

    The number is only reserved once the caller's transaction commits; with
    the counter strategy a rollback returns it to the pool.
    """

    strategy = strategy or get_settings().invoice_numbering_strategy
    if strategy == "counter":
        value = _next_from_counter(session, scope)
    elif strategy == "scan":
        value = highest_number(session, scope) + 1
    else:
        raise ValueError(f"Unknown numbering strategy {strategy!r}")

    number = format_number(value, width)
    invoice_numbers_issued_total.labels(strategy=strategy).inc()
    LOGGER.info("invoice_number_issued", scope=scope, strategy=strategy, number=number)
    return number


def is_number_conflict(exc: IntegrityError) -> bool:
    """Return ``True`` when ``exc`` is a lost race for an invoice number."""

    message = str(exc.orig) if exc.orig is not None else str(exc)
    return any(marker in message for marker in _CONFLICT_MARKERS)


__all__ = [
    "GLOBAL_SCOPE",
    "counter_name",
    "format_number",
    "highest_number",
    "is_number_conflict",
    "issue_number",
    "parse_number",
    "scope_for",
]
