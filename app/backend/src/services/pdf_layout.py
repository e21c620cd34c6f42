"""Page layout planning for invoice documents.

Layout is computed before anything is drawn: :func:`plan_layout` walks the
document top to bottom, decides where every block goes and on which page,
and returns a :class:`LayoutPlan`. The renderer only paints the plan, so the
page count is known up front and pagination can be tested without parsing
PDF output.

Coordinates follow reportlab: points, origin at the bottom-left corner, so
a block's ``top`` is greater than its ``bottom``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import simpleSplit
from reportlab.pdfbase.pdfmetrics import stringWidth

from app.backend.src.services.formatting import (
    conventions_for,
    format_date,
    format_money,
    format_percent,
)
from app.backend.src.services.invoice_document import Branding, InvoiceDocument

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN_LEFT = 50
MARGIN_RIGHT = 50
MARGIN_TOP = 45
MARGIN_BOTTOM = 60
PAGE_NUMBER_BASELINE = 30

HEADER_HEIGHT = 80
HEADER_LINE_HEIGHT = 12
RUNNING_HEADER_HEIGHT = 24
PARTY_LINE_HEIGHT = 14
TITLE_HEIGHT = 24
TABLE_HEADER_HEIGHT = 20
SECTION_GAP = 14

BODY_FONT_SIZE = 9
LEADING = 11
ROW_PADDING = 4
CELL_PADDING = 4

MIN_DESCRIPTION_WIDTH = 140
FIXED_COLUMN_WIDTHS = {
    "quantity": 45,
    "sku": 80,
    "unit_price": 80,
    "line_total": 85,
}
TOTALS_LABEL_WIDTH = 130
TOTALS_AMOUNT_WIDTH = 85
SIGNATURE_SPACE = 28

LABELS: dict[str, dict[str, str]] = {
    "de": {
        "invoice_title": "Rechnung",
        "delivery_title": "Lieferschein",
        "quantity": "Menge",
        "sku": "Art.-Nr.",
        "description": "Artikel-Bezeichnung",
        "unit_price": "Einzelpreis",
        "line_total": "Gesamtpreis",
        "invoice_number": "Rechnungsnummer",
        "issue_date": "Rechnungsdatum",
        "due_date": "Fälligkeitsdatum",
        "client_reference": "Kundennummer",
        "subtotal": "Gesamt Netto",
        "tax": "Umsatzsteuer ({rate}%)",
        "total": "Gesamt Brutto",
        "notes": "Bemerkungen",
        "closing": "Mit freundlichen Grüßen",
        "signature": "Unterschrift",
        "bank": "Bankverbindung",
        "page": "Seite {page} von {pages}",
        "continued": "Fortsetzung",
    },
    "en": {
        "invoice_title": "Invoice",
        "delivery_title": "Delivery note",
        "quantity": "Qty",
        "sku": "SKU",
        "description": "Description",
        "unit_price": "Unit price",
        "line_total": "Total",
        "invoice_number": "Invoice number",
        "issue_date": "Issue date",
        "due_date": "Due date",
        "client_reference": "Customer number",
        "subtotal": "Net total",
        "tax": "VAT ({rate}%)",
        "total": "Gross total",
        "notes": "Notes",
        "closing": "Kind regards",
        "signature": "Signature",
        "bank": "Bank details",
        "page": "Page {page} of {pages}",
        "continued": "continued",
    },
}


def labels_for(locale: str | None) -> dict[str, str]:
    return LABELS.get(conventions_for(locale).language, LABELS["en"])


@dataclass(frozen=True, slots=True)
class FontSet:
    regular: str = "Helvetica"
    bold: str = "Helvetica-Bold"


@dataclass(frozen=True, slots=True)
class Column:
    key: str
    label: str
    x: float
    width: float
    align: str

    @property
    def right(self) -> float:
        return self.x + self.width


@dataclass(frozen=True, slots=True)
class RowLayout:
    index: int
    quantity: str
    sku_lines: tuple[str, ...]
    description_lines: tuple[str, ...]
    unit_price: str
    line_total: str
    shaded: bool
    continued: bool = False


@dataclass(frozen=True, slots=True)
class PlacedBlock:
    kind: str
    page: int
    top: float
    bottom: float
    payload: Any = None

    @property
    def height(self) -> float:
        return self.top - self.bottom

    def overlaps(self, other: "PlacedBlock") -> bool:
        if self.page != other.page:
            return False
        return self.bottom < other.top and other.bottom < self.top


@dataclass(slots=True)
class LayoutPlan:
    show_prices: bool
    title: str
    labels: dict[str, str]
    columns: list[Column]
    blocks: list[PlacedBlock] = field(default_factory=list)
    pages: int = 1

    def blocks_on(self, page: int) -> list[PlacedBlock]:
        return [block for block in self.blocks if block.page == page]

    def blocks_of(self, kind: str) -> list[PlacedBlock]:
        return [block for block in self.blocks if block.kind == kind]


def usable_width() -> float:
    return PAGE_WIDTH - MARGIN_LEFT - MARGIN_RIGHT


def compute_columns(
    show_prices: bool,
    labels: dict[str, str],
    width: float | None = None,
    left: float = MARGIN_LEFT,
) -> list[Column]:
    """Lay out table columns for the given mode.

    Fixed columns keep their nominal widths; the description column absorbs
    whatever is left. If that would drop below ``MIN_DESCRIPTION_WIDTH`` the
    fixed columns shrink proportionally instead.
    """

    width = usable_width() if width is None else width
    keys = ["quantity", "sku", "description"]
    if show_prices:
        keys += ["unit_price", "line_total"]

    fixed = {key: FIXED_COLUMN_WIDTHS[key] for key in keys if key != "description"}
    fixed_total = sum(fixed.values())
    description_width = width - fixed_total
    if description_width < MIN_DESCRIPTION_WIDTH:
        scale = max(width - MIN_DESCRIPTION_WIDTH, 0) / fixed_total
        fixed = {key: value * scale for key, value in fixed.items()}
        description_width = width - sum(fixed.values())

    alignments = {
        "quantity": "center",
        "sku": "left",
        "description": "left",
        "unit_price": "right",
        "line_total": "right",
    }
    columns = []
    x = left
    for key in keys:
        column_width = description_width if key == "description" else fixed[key]
        columns.append(Column(key, labels[key], x, column_width, alignments[key]))
        x += column_width
    return columns


def _break_long_words(lines: list[str], font: str, size: float, width: float) -> list[str]:
    """Hard-break tokens that are wider than ``width`` on their own."""

    result: list[str] = []
    for line in lines:
        if stringWidth(line, font, size) <= width:
            result.append(line)
            continue
        current = ""
        for char in line:
            if current and stringWidth(current + char, font, size) > width:
                result.append(current)
                current = char
            else:
                current += char
        result.append(current)
    return result


def wrap_text(text: str, font: str, size: float, width: float) -> list[str]:
    """Split ``text`` into lines no wider than ``width``; never returns ``[]``.

    Words wider than ``width`` on their own (URLs, IBANs) are broken per
    character.
    """

    width = max(width, 1)
    lines: list[str] = []
    for paragraph in (text or "").splitlines() or [""]:
        lines.extend(simpleSplit(paragraph, font, size, width) or [""])
    return _break_long_words(lines, font, size, width)


def cell_lines(text: str, font: str, size: float, width: float) -> list[str]:
    inner = max(width - 2 * CELL_PADDING, 1)
    return wrap_text(text, font, size, inner)


def _party_payload(
    document: InvoiceDocument, labels: dict[str, str], locale: str, fonts: FontSet
) -> dict[str, list[Any]]:
    recipient = document.recipient
    left_width = usable_width() / 2 - 10
    left_source = [recipient.name]
    if recipient.company:
        left_source.append(recipient.company)
    left_source.extend(recipient.address_lines)
    left: list[str] = []
    for line in left_source:
        left.extend(wrap_text(line, fonts.regular, 10, left_width))

    right = [
        (labels["invoice_number"], document.invoice_number or "N/A"),
        (labels["issue_date"], format_date(document.issue_date, locale)),
        (labels["due_date"], format_date(document.due_date, locale)),
    ]
    if recipient.reference:
        right.append((labels["client_reference"], recipient.reference))
    return {"left": left, "right": right}


def _row_layouts(
    document: InvoiceDocument,
    columns: list[Column],
    branding: Branding,
    fonts: FontSet,
) -> list[RowLayout]:
    by_key = {column.key: column for column in columns}
    rows = []
    for index, line in enumerate(document.lines):
        rows.append(
            RowLayout(
                index=index,
                quantity=str(line.quantity),
                sku_lines=tuple(
                    cell_lines(line.sku, fonts.regular, BODY_FONT_SIZE, by_key["sku"].width)
                ),
                description_lines=tuple(
                    cell_lines(
                        line.description,
                        fonts.regular,
                        BODY_FONT_SIZE,
                        by_key["description"].width,
                    )
                ),
                unit_price=format_money(line.unit_price, branding.currency, branding.locale),
                line_total=format_money(line.line_total, branding.currency, branding.locale),
                shaded=index % 2 == 0,
            )
        )
    return rows


def row_height(row: RowLayout) -> float:
    lines = max(len(row.description_lines), len(row.sku_lines), 1)
    return lines * LEADING + 2 * ROW_PADDING


def totals_payload(
    document: InvoiceDocument, labels: dict[str, str], branding: Branding
) -> dict[str, Any]:
    totals = document.totals
    money = lambda value: format_money(value, branding.currency, branding.locale)  # noqa: E731
    rate = format_percent(totals.tax_rate, branding.locale)
    return {
        "lines": [
            (labels["subtotal"], money(totals.subtotal), False),
            (labels["tax"].format(rate=rate), money(totals.tax_amount), False),
            (labels["total"], money(totals.total), True),
        ],
        "payment_terms": branding.payment_terms,
    }


def totals_height(payload: dict[str, Any]) -> float:
    height = SECTION_GAP + 16 + 16 + 20
    if payload.get("payment_terms"):
        height += 18
    return height


def footer_payload(branding: Branding, labels: dict[str, str], fonts: FontSet) -> dict[str, Any]:
    contact = " | ".join(
        part
        for part in (
            branding.company_name,
            ", ".join(branding.address_lines),
            f"Tel: {branding.phone}" if branding.phone else "",
            branding.email or "",
        )
        if part
    )
    bank_parts = [
        branding.bank_name or "",
        f"IBAN: {branding.iban}" if branding.iban else "",
        f"BIC: {branding.bic}" if branding.bic else "",
    ]
    bank = " | ".join(part for part in bank_parts if part)
    width = usable_width()
    return {
        "contact": wrap_text(contact, fonts.regular, 8, width),
        "bank": wrap_text(f"{labels['bank']}: {bank}", fonts.regular, 8, width) if bank else [],
        "closing": labels["closing"],
        "company": branding.company_name,
        "signature": labels["signature"],
    }


def footer_height(payload: dict[str, Any]) -> float:
    text_lines = len(payload["contact"]) + len(payload["bank"])
    return 12 + text_lines * 10 + 16 + 12 + SIGNATURE_SPACE + 12


class _Flow:
    """Tracks the write position while blocks are placed top to bottom."""

    def __init__(self, plan: LayoutPlan, running_header: dict[str, str]) -> None:
        self.plan = plan
        self.page = 0
        self.y = PAGE_HEIGHT - MARGIN_TOP
        self._running_header = running_header

    @property
    def page_top(self) -> float:
        return PAGE_HEIGHT - MARGIN_TOP

    def remaining(self) -> float:
        return self.y - MARGIN_BOTTOM

    def fits(self, height: float) -> bool:
        return self.y - height >= MARGIN_BOTTOM

    def new_page(self) -> None:
        self.page += 1
        self.plan.pages = self.page + 1
        self.y = self.page_top
        self.place("running_header", RUNNING_HEADER_HEIGHT, self._running_header)

    def place(self, kind: str, height: float, payload: Any = None, gap: float = 0) -> PlacedBlock:
        block = PlacedBlock(kind, self.page, self.y, self.y - height, payload)
        self.plan.blocks.append(block)
        self.y = block.bottom - gap
        return block

    def place_keeping(self, kind: str, height: float, payload: Any = None, gap: float = 0) -> PlacedBlock:
        """Place a block that must not be split, starting a page if needed."""

        if not self.fits(height):
            self.new_page()
        return self.place(kind, height, payload, gap)


def _place_rows(flow: _Flow, rows: list[RowLayout], columns: list[Column]) -> None:
    header_payload = {"columns": columns}
    fresh_capacity = flow.page_top - RUNNING_HEADER_HEIGHT - TABLE_HEADER_HEIGHT - MARGIN_BOTTOM
    if rows:
        # The header never ends a page alone; a row that will be split anyway
        # only needs room for its first line.
        first = row_height(rows[0])
        if first > fresh_capacity:
            first = LEADING + 2 * ROW_PADDING
        if not flow.fits(TABLE_HEADER_HEIGHT + first):
            flow.new_page()
    flow.place("table_header", TABLE_HEADER_HEIGHT, header_payload)

    for row in rows:
        pending = row
        while True:
            height = row_height(pending)
            if flow.fits(height):
                flow.place("row", height, pending)
                break

            if height <= fresh_capacity:
                flow.new_page()
                flow.place("table_header", TABLE_HEADER_HEIGHT, header_payload)
                continue

            # Taller than a whole page: split the wrapped text across pages.
            fit_lines = int((flow.remaining() - 2 * ROW_PADDING) // LEADING)
            if fit_lines < 1:
                flow.new_page()
                flow.place("table_header", TABLE_HEADER_HEIGHT, header_payload)
                continue
            head = RowLayout(
                index=pending.index,
                quantity=pending.quantity,
                sku_lines=pending.sku_lines[:fit_lines],
                description_lines=pending.description_lines[:fit_lines],
                unit_price=pending.unit_price,
                line_total=pending.line_total,
                shaded=pending.shaded,
                continued=pending.continued,
            )
            flow.place("row", row_height(head), head)
            pending = RowLayout(
                index=pending.index,
                quantity="",
                sku_lines=pending.sku_lines[fit_lines:],
                description_lines=pending.description_lines[fit_lines:],
                unit_price="",
                line_total="",
                shaded=pending.shaded,
                continued=True,
            )
            flow.new_page()
            flow.place("table_header", TABLE_HEADER_HEIGHT, header_payload)


def _place_notes(flow: _Flow, notes: str, labels: dict[str, str], fonts: FontSet) -> None:
    lines = wrap_text(notes, fonts.regular, BODY_FONT_SIZE, usable_width())
    label_height = 16
    if not flow.fits(label_height + LEADING):
        flow.new_page()
    first = True
    while lines:
        available = flow.remaining() - (label_height if first else 0)
        count = min(len(lines), int(available // LEADING))
        if count < 1:
            flow.new_page()
            continue
        chunk, lines = lines[:count], lines[count:]
        height = count * LEADING + (label_height if first else 0)
        flow.place(
            "notes",
            height,
            {"label": labels["notes"] if first else None, "lines": chunk},
            gap=SECTION_GAP if not lines else 0,
        )
        first = False
        if lines:
            flow.new_page()


def plan_layout(
    document: InvoiceDocument,
    *,
    show_prices: bool,
    branding: Branding,
    fonts: FontSet | None = None,
    header_height: float | None = None,
) -> LayoutPlan:
    """Plan every block of the document onto A4 pages."""

    fonts = fonts or FontSet()
    labels = labels_for(branding.locale)
    title = labels["invoice_title"] if show_prices else labels["delivery_title"]
    columns = compute_columns(show_prices, labels)
    plan = LayoutPlan(show_prices=show_prices, title=title, labels=labels, columns=columns)
    flow = _Flow(
        plan,
        {
            "company": branding.company_name,
            "text": f"{title} {document.invoice_number} ({labels['continued']})",
        },
    )

    contact_lines = branding.contact_lines
    header_height = header_height or max(
        HEADER_HEIGHT, len(contact_lines) * HEADER_LINE_HEIGHT + 8
    )
    flow.place(
        "header",
        header_height,
        {"contact_lines": contact_lines, "tagline": branding.tagline},
        gap=20,
    )

    party = _party_payload(document, labels, branding.locale, fonts)
    party_height = max(len(party["left"]), len(party["right"])) * PARTY_LINE_HEIGHT
    flow.place("party", party_height, party, gap=SECTION_GAP + 6)
    flow.place("title", TITLE_HEIGHT, {"text": title}, gap=8)

    _place_rows(flow, _row_layouts(document, columns, branding, fonts), columns)
    flow.y -= 6

    if show_prices:
        payload = totals_payload(document, labels, branding)
        flow.place_keeping("totals", totals_height(payload), payload, gap=SECTION_GAP)

    if document.notes.strip():
        _place_notes(flow, document.notes.strip(), labels, fonts)

    footer = footer_payload(branding, labels, fonts)
    flow.place_keeping("footer", footer_height(footer), footer)

    for page in range(plan.pages):
        plan.blocks.append(
            PlacedBlock(
                "page_number",
                page,
                PAGE_NUMBER_BASELINE + 10,
                PAGE_NUMBER_BASELINE - 2,
                {"text": labels["page"].format(page=page + 1, pages=plan.pages)},
            )
        )
    return plan


def totals_columns(columns: list[Column]) -> tuple[float, float]:
    """Return the x of the totals labels and the right edge of the amounts."""

    right = columns[-1].right
    return right - TOTALS_AMOUNT_WIDTH - TOTALS_LABEL_WIDTH, right



__all__ = [
    "Column",
    "FontSet",
    "LABELS",
    "LayoutPlan",
    "PlacedBlock",
    "RowLayout",
    "cell_lines",
    "compute_columns",
    "labels_for",
    "plan_layout",
    "row_height",
    "totals_columns",
    "wrap_text",
]
