"""Invoice status state machine."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy.orm import Session

from app.backend.src.core.errors import DispatchRequiredError, InvalidTransitionError
from app.backend.src.models import (
    DeliveryReceipt,
    Invoice,
    InvoiceStatus,
    InvoiceStatusChange,
)

LOGGER = structlog.get_logger(__name__)

# The intended flow. Anything else needs an explicit ``force`` from an operator.
INTENDED_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.MAKER, InvoiceStatus.SENT}),
    InvoiceStatus.MAKER: frozenset({InvoiceStatus.PENDING, InvoiceStatus.SENT}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.NOT_PAID}),
    InvoiceStatus.PAID: frozenset({InvoiceStatus.COMPLETED}),
    InvoiceStatus.NOT_PAID: frozenset({InvoiceStatus.PAID, InvoiceStatus.COMPLETED}),
    InvoiceStatus.COMPLETED: frozenset(),
}

SENDABLE_STATUSES = frozenset({InvoiceStatus.PENDING, InvoiceStatus.MAKER})
# Past these, header and line item edits need force and leave an amendment.
EDITABLE_STATUSES = SENDABLE_STATUSES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_intended(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in INTENDED_TRANSITIONS[current]


def allowed_targets(current: InvoiceStatus) -> list[InvoiceStatus]:
    """Return the statuses an operator can set without forcing, in flow order."""

    return [
        status
        for status in InvoiceStatus
        if status in INTENDED_TRANSITIONS[current] and status is not InvoiceStatus.SENT
    ]


def transition(
    session: Session,
    invoice: Invoice,
    target: InvoiceStatus | str,
    *,
    actor: str,
    reason: str | None = None,
    force: bool = False,
    receipt: DeliveryReceipt | None = None,
    now: Callable[[], datetime] = _utcnow,
) -> InvoiceStatusChange:
    """Apply a status write to ``invoice`` and record it.

    The change is added to ``session`` but not committed; the caller owns the
    transaction so a transition can be committed together with the write
    that justifies it (e.g. a delivery receipt).
    """

    target = InvoiceStatus(target)
    current = invoice.status_enum

    if target is current:
        raise InvalidTransitionError(
            f"Invoice {invoice.invoice_number} is already {current.value}",
            details={"from": current.value, "to": target.value},
        )

    if target is InvoiceStatus.SENT:
        if receipt is None or receipt.invoice_id != invoice.id or not receipt.accepted:
            raise DispatchRequiredError(
                f"Invoice {invoice.invoice_number} can only become sent through a "
                "successful dispatch",
                details={"from": current.value, "to": target.value},
            )

    intended = is_intended(current, target)
    if not intended and not force:
        raise InvalidTransitionError(
            f"Invoice {invoice.invoice_number} cannot move from {current.value} "
            f"to {target.value} without force",
            details={
                "from": current.value,
                "to": target.value,
                "allowed": [status.value for status in allowed_targets(current)],
            },
        )

    timestamp = now()
    invoice.status = target.value
    if target is InvoiceStatus.SENT:
        invoice.sent_at = timestamp
    elif target is InvoiceStatus.PAID:
        invoice.paid_at = timestamp

    change = InvoiceStatusChange(
        invoice_id=invoice.id,
        from_status=current.value,
        to_status=target.value,
        actor=actor,
        reason=reason,
        forced=not intended,
        receipt_id=receipt.id if receipt is not None else None,
    )
    session.add(invoice)
    session.add(change)

    log = LOGGER.warning if not intended else LOGGER.info
    log(
        "invoice_status_changed",
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        from_status=current.value,
        to_status=target.value,
        actor=actor,
        forced=not intended,
    )
    return change


__all__ = [
    "INTENDED_TRANSITIONS",
    "EDITABLE_STATUSES",
    "SENDABLE_STATUSES",
    "allowed_targets",
    "is_intended",
    "transition",
]
