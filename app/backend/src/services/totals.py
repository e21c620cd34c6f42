"""Line-item and invoice total computation.

Everything in this module is pure: no database access, no clock. Amounts are
:class:`~decimal.Decimal` values quantized to currency precision (two
fractional digits, half-up) before they are compared or returned.

Tax rates are percentages (``19`` means 19 %). :func:`tax_fraction` is the
only place that converts them into a multiplier.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Protocol

import structlog

from app.backend.src.core.errors import (
    InsufficientStockError,
    InvoiceValidationError,
    PriceFloorError,
    ProductNotFoundError,
)

LOGGER = structlog.get_logger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


@dataclass(frozen=True, slots=True)
class ProductLine:
    """A line backed by a catalog product; subject to the price floor."""

    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    description: str | None = None
    sku: str | None = None
    buying_price: Decimal | None = None


@dataclass(frozen=True, slots=True)
class VirtualLine:
    """A line with no catalog entry (shipping, handling, ...)."""

    product_name: str
    quantity: int
    unit_price: Decimal
    description: str | None = None
    sku: str | None = None

    product_id = None
    buying_price = None


LineDraft = ProductLine | VirtualLine


@dataclass(frozen=True, slots=True)
class InvoiceTotals:
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    line_totals: tuple[Decimal, ...]


class PriceCatalog(Protocol):
    """Catalog collaborator used for the price floor check."""

    def price_of(self, product_id: int) -> Decimal | None:
        """Return the live price of ``product_id`` or ``None`` if unknown."""


class StockCatalog(Protocol):
    def stock_of(self, product_id: int) -> int | None:
        """Return units in stock, or ``None`` when the product is exempt."""


def to_money(value: Any) -> Decimal:
    """Return ``value`` as a Decimal rounded to currency precision."""

    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def tax_fraction(tax_rate_percent: Any) -> Decimal:
    """Convert a 0-100 percentage into a multiplier, rejecting anything else."""

    try:
        rate = Decimal(str(tax_rate_percent))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvoiceValidationError(
            f"Tax rate {tax_rate_percent!r} is not a number",
            details={"field": "tax_rate"},
        ) from exc
    if not rate.is_finite() or rate < 0 or rate > HUNDRED:
        raise InvoiceValidationError(
            f"Tax rate {tax_rate_percent} must be a percentage between 0 and 100",
            details={"field": "tax_rate"},
        )
    return rate / HUNDRED


def line_total(line: LineDraft) -> Decimal:
    return to_money(line.unit_price * line.quantity)


def compute_totals(lines: Iterable[LineDraft], tax_rate_percent: Any) -> InvoiceTotals:
    """Derive subtotal, tax and gross total for ``lines``."""

    fraction = tax_fraction(tax_rate_percent)
    line_totals = tuple(line_total(line) for line in lines)
    subtotal = sum(line_totals, Decimal("0.00"))
    tax_amount = to_money(subtotal * fraction)
    return InvoiceTotals(
        subtotal=to_money(subtotal),
        tax_rate=Decimal(str(tax_rate_percent)),
        tax_amount=tax_amount,
        total=to_money(subtotal + tax_amount),
        line_totals=line_totals,
    )


def _field(raw: Mapping[str, Any] | Any, name: str) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(name)
    return getattr(raw, name, None)


def line_from_input(raw: Mapping[str, Any] | Any, index: int) -> LineDraft:
    """Validate one submitted line item and return its tagged variant.

    ``index`` is the zero-based position in the submitted batch; error
    messages report it one-based so they match what the user sees.
    """

    label = f"line item {index + 1}"
    product_name = (_field(raw, "product_name") or "").strip()
    if not product_name:
        raise InvoiceValidationError(
            f"{label}: product_name is required",
            details={"index": index, "field": "product_name"},
        )

    quantity = _field(raw, "quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvoiceValidationError(
            f"{label} ({product_name}): quantity must be a whole number of at least 1",
            details={"index": index, "field": "quantity"},
        )

    raw_price = _field(raw, "unit_price")
    try:
        unit_price = to_money(raw_price)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvoiceValidationError(
            f"{label} ({product_name}): unit_price {raw_price!r} is not a number",
            details={"index": index, "field": "unit_price"},
        ) from exc
    if not unit_price.is_finite() or unit_price < 0:
        raise InvoiceValidationError(
            f"{label} ({product_name}): unit_price must not be negative",
            details={"index": index, "field": "unit_price"},
        )

    description = _field(raw, "description") or None
    sku = _field(raw, "sku") or None
    product_id = _field(raw, "product_id")
    if product_id is None:
        return VirtualLine(
            product_name=product_name,
            quantity=quantity,
            unit_price=unit_price,
            description=description,
            sku=sku,
        )
    return ProductLine(
        product_id=product_id,
        product_name=product_name,
        quantity=quantity,
        unit_price=unit_price,
        description=description,
        sku=sku,
    )


def lines_from_input(items: Sequence[Mapping[str, Any] | Any]) -> list[LineDraft]:
    if not items:
        raise InvoiceValidationError(
            "At least one line item is required", details={"field": "line_items"}
        )
    return [line_from_input(item, index) for index, item in enumerate(items)]


def validate_price_floor(lines: Iterable[LineDraft], catalog: PriceCatalog) -> None:
    """Reject the whole batch if any product line undercuts its catalog price."""

    violations: list[dict[str, Any]] = []
    for line in lines:
        if isinstance(line, VirtualLine):
            continue
        floor = catalog.price_of(line.product_id)
        if floor is None:
            raise ProductNotFoundError(line.product_id)
        floor = to_money(floor)
        if line.unit_price < floor:
            violations.append(
                {
                    "product_id": line.product_id,
                    "product_name": line.product_name,
                    "unit_price": str(line.unit_price),
                    "floor": str(floor),
                }
            )

    if violations:
        LOGGER.info("price_floor_rejected", violations=violations)
        raise PriceFloorError(violations)


def validate_stock(lines: Iterable[LineDraft], catalog: StockCatalog) -> dict[int, int]:
    """Check requested quantities against stock and return them per product.

    Quantities of the same product on several lines are added up. Virtual
    lines and products without tracked stock (shipping) are exempt.
    """

    requested: dict[int, int] = {}
    names: dict[int, str] = {}
    for line in lines:
        if isinstance(line, VirtualLine):
            continue
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity
        names.setdefault(line.product_id, line.product_name)

    shortages: list[dict[str, Any]] = []
    tracked: dict[int, int] = {}
    for product_id, quantity in requested.items():
        available = catalog.stock_of(product_id)
        if available is None:
            continue
        tracked[product_id] = quantity
        if quantity > available:
            shortages.append(
                {
                    "product_id": product_id,
                    "product_name": names[product_id],
                    "available": available,
                    "requested": quantity,
                }
            )

    if shortages:
        LOGGER.info("stock_check_rejected", shortages=shortages)
        raise InsufficientStockError(shortages)
    return tracked


__all__ = [
    "InvoiceTotals",
    "LineDraft",
    "PriceCatalog",
    "ProductLine",
    "StockCatalog",
    "VirtualLine",
    "compute_totals",
    "line_from_input",
    "line_total",
    "lines_from_input",
    "tax_fraction",
    "to_money",
    "validate_price_floor",
    "validate_stock",
]
