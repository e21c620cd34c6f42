"""Utilities for generating invoice PDFs."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from time import perf_counter

import structlog
from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFError, TTFont
from reportlab.pdfgen import canvas

from app.backend.src.core.errors import (
    InvoiceEngineError,
    RenderConfigurationError,
    RenderError,
)
from app.backend.src.services.invoice_document import (
    Branding,
    InvoiceDocument,
    branding_from_settings,
)
from app.backend.src.services.metrics import pdf_generation_seconds
from app.backend.src.services.pdf_layout import (
    BODY_FONT_SIZE,
    CELL_PADDING,
    HEADER_LINE_HEIGHT,
    LEADING,
    MARGIN_LEFT,
    MARGIN_RIGHT,
    PAGE_NUMBER_BASELINE,
    ROW_PADDING,
    SIGNATURE_SPACE,
    FontSet,
    LayoutPlan,
    PlacedBlock,
    plan_layout,
    totals_columns,
)

LOGGER = structlog.get_logger(__name__)

PRIMARY_COLOR = HexColor("#0F172A")
ACCENT_COLOR = HexColor("#6366F1")
MUTED_TEXT = HexColor("#64748B")
LIGHT_PANEL = HexColor("#F8FAFC")
TABLE_HEADER_COLOR = HexColor("#EEF2FF")
BORDER_COLOR = HexColor("#E2E8F0")

LOGO_MAX_WIDTH = 160
LOGO_MAX_HEIGHT = 60


@dataclass(frozen=True, slots=True)
class RenderedDocument:
    """A rendered invoice PDF ready to be streamed or attached."""

    filename: str
    content: bytes
    page_count: int
    media_type: str = "application/pdf"


def build_filename(invoice_number: str, show_prices: bool = True) -> str:
    safe_number = (invoice_number or "draft").replace("/", "-").replace(" ", "_")
    suffix = "" if show_prices else "-no-prices"
    return f"invoice-{safe_number}{suffix}.pdf"


def _register_font(path: str) -> str:
    font_file = Path(path)
    if not font_file.is_file():
        raise RenderConfigurationError(
            f"Configured PDF font file not found: {path}",
            details={"font_path": path},
        )
    resolved = font_file.resolve()
    digest = hashlib.sha1(str(resolved).encode("utf-8")).hexdigest()[:8]
    name = f"Invoice-{font_file.stem}-{digest}"
    if name in pdfmetrics.getRegisteredFontNames():
        return name
    try:
        pdfmetrics.registerFont(TTFont(name, str(resolved)))
    except (TTFError, OSError, ValueError, struct.error) as exc:
        raise RenderConfigurationError(
            f"Configured PDF font could not be loaded: {path}",
            details={"font_path": path, "reason": str(exc)},
        ) from exc
    return name


def resolve_fonts(branding: Branding) -> FontSet:
    """Resolve the fonts to draw with, failing before any output is produced."""

    if branding.font_path:
        regular = _register_font(branding.font_path)
        bold = _register_font(branding.font_bold_path) if branding.font_bold_path else regular
        return FontSet(regular=regular, bold=bold)

    fonts = FontSet()
    try:
        pdfmetrics.getFont(fonts.regular)
        pdfmetrics.getFont(fonts.bold)
    except (KeyError, OSError) as exc:
        raise RenderConfigurationError(
            "Built-in PDF fonts are unavailable", details={"reason": str(exc)}
        ) from exc
    return fonts


def _load_logo(path: str | None) -> ImageReader | None:
    if not path:
        return None
    try:
        reader = ImageReader(path)
        reader.getSize()
    except Exception as exc:
        LOGGER.warning("invoice_logo_unavailable", logo_path=path, error=str(exc))
        return None
    return reader


class _PageRenderer:
    """Paints the blocks of a :class:`LayoutPlan` onto a reportlab canvas."""

    def __init__(
        self,
        pdf_canvas: canvas.Canvas,
        plan: LayoutPlan,
        branding: Branding,
        fonts: FontSet,
        logo: ImageReader | None,
    ) -> None:
        self.canvas = pdf_canvas
        self.plan = plan
        self.branding = branding
        self.fonts = fonts
        self.logo = logo
        self.width, self.height = A4
        self.left = MARGIN_LEFT
        self.right = self.width - MARGIN_RIGHT

    def draw(self, block: PlacedBlock) -> None:
        getattr(self, f"draw_{block.kind}")(block)

    def draw_header(self, block: PlacedBlock) -> None:
        pdf_canvas = self.canvas
        payload = block.payload

        if self.logo is not None:
            image_width, image_height = self.logo.getSize()
            scale = min(LOGO_MAX_WIDTH / image_width, LOGO_MAX_HEIGHT / image_height, 1)
            drawn_height = image_height * scale
            pdf_canvas.drawImage(
                self.logo,
                self.left,
                block.top - drawn_height,
                width=image_width * scale,
                height=drawn_height,
                mask="auto",
            )
        else:
            pdf_canvas.setFillColor(PRIMARY_COLOR)
            pdf_canvas.setFont(self.fonts.bold, 18)
            pdf_canvas.drawString(self.left, block.top - 22, self.branding.company_name)
            if payload["tagline"]:
                pdf_canvas.setFont(self.fonts.regular, 10)
                pdf_canvas.setFillColor(MUTED_TEXT)
                pdf_canvas.drawString(self.left, block.top - 38, payload["tagline"])

        pdf_canvas.setFillColor(MUTED_TEXT)
        y = block.top - 10
        for index, line in enumerate(payload["contact_lines"]):
            pdf_canvas.setFont(self.fonts.bold if index == 0 else self.fonts.regular, 9)
            pdf_canvas.drawRightString(self.right, y, line)
            y -= HEADER_LINE_HEIGHT

        pdf_canvas.setStrokeColor(BORDER_COLOR)
        pdf_canvas.line(self.left, block.bottom, self.right, block.bottom)

    def draw_running_header(self, block: PlacedBlock) -> None:
        pdf_canvas = self.canvas
        pdf_canvas.setFillColor(MUTED_TEXT)
        pdf_canvas.setFont(self.fonts.bold, 9)
        pdf_canvas.drawString(self.left, block.top - 12, block.payload["company"])
        pdf_canvas.setFont(self.fonts.regular, 9)
        pdf_canvas.drawRightString(self.right, block.top - 12, block.payload["text"])
        pdf_canvas.setStrokeColor(BORDER_COLOR)
        pdf_canvas.line(self.left, block.bottom + 4, self.right, block.bottom + 4)

    def draw_party(self, block: PlacedBlock) -> None:
        pdf_canvas = self.canvas
        y = block.top - 11
        for index, line in enumerate(block.payload["left"]):
            pdf_canvas.setFillColor(PRIMARY_COLOR)
            pdf_canvas.setFont(self.fonts.bold if index == 0 else self.fonts.regular, 10)
            pdf_canvas.drawString(self.left, y, line)
            y -= 14

        label_x = self.right - 110
        y = block.top - 11
        for label, value in block.payload["right"]:
            pdf_canvas.setFillColor(MUTED_TEXT)
            pdf_canvas.setFont(self.fonts.regular, 9)
            pdf_canvas.drawRightString(label_x, y, f"{label}:")
            pdf_canvas.setFillColor(PRIMARY_COLOR)
            pdf_canvas.setFont(self.fonts.bold, 9)
            pdf_canvas.drawRightString(self.right, y, value)
            y -= 14

    def draw_title(self, block: PlacedBlock) -> None:
        self.canvas.setFillColor(ACCENT_COLOR)
        self.canvas.setFont(self.fonts.bold, 16)
        self.canvas.drawString(self.left, block.bottom + 6, block.payload["text"])

    def draw_table_header(self, block: PlacedBlock) -> None:
        pdf_canvas = self.canvas
        pdf_canvas.setFillColor(TABLE_HEADER_COLOR)
        pdf_canvas.roundRect(
            self.left, block.bottom, self.right - self.left, block.height, 4, fill=1, stroke=0
        )
        pdf_canvas.setFillColor(PRIMARY_COLOR)
        pdf_canvas.setFont(self.fonts.bold, BODY_FONT_SIZE)
        baseline = block.bottom + 7
        for column in block.payload["columns"]:
            self._cell_text(column, baseline, column.label)

    def _cell_text(self, column, y: float, text: str) -> None:
        if column.align == "right":
            self.canvas.drawRightString(column.right - CELL_PADDING, y, text)
        elif column.align == "center":
            self.canvas.drawCentredString(column.x + column.width / 2, y, text)
        else:
            self.canvas.drawString(column.x + CELL_PADDING, y, text)

    def draw_row(self, block: PlacedBlock) -> None:
        pdf_canvas = self.canvas
        row = block.payload
        if row.shaded:
            pdf_canvas.setFillColor(LIGHT_PANEL)
            pdf_canvas.rect(
                self.left, block.bottom, self.right - self.left, block.height, fill=1, stroke=0
            )

        pdf_canvas.setFillColor(PRIMARY_COLOR)
        pdf_canvas.setFont(self.fonts.regular, BODY_FONT_SIZE)
        first_baseline = block.top - ROW_PADDING - BODY_FONT_SIZE
        for column in self.plan.columns:
            if column.key in ("sku", "description"):
                lines = row.sku_lines if column.key == "sku" else row.description_lines
                y = first_baseline
                for line in lines:
                    self._cell_text(column, y, line)
                    y -= LEADING
            else:
                self._cell_text(column, first_baseline, getattr(row, column.key))

        pdf_canvas.setStrokeColor(BORDER_COLOR)
        pdf_canvas.line(self.left, block.bottom, self.right, block.bottom)

    def draw_totals(self, block: PlacedBlock) -> None:
        pdf_canvas = self.canvas
        label_x, amount_right = totals_columns(self.plan.columns)
        y = block.top - 14 - 8
        for label, amount, emphasised in block.payload["lines"]:
            if emphasised:
                y -= 4
                pdf_canvas.setStrokeColor(BORDER_COLOR)
                pdf_canvas.line(label_x, y + 13, amount_right, y + 13)
                pdf_canvas.setFont(self.fonts.bold, 11)
                pdf_canvas.setFillColor(ACCENT_COLOR)
            else:
                pdf_canvas.setFont(self.fonts.regular, 10)
                pdf_canvas.setFillColor(PRIMARY_COLOR)
            pdf_canvas.drawString(label_x, y, label)
            pdf_canvas.drawRightString(amount_right, y, amount)
            y -= 16

        if block.payload["payment_terms"]:
            pdf_canvas.setFont(self.fonts.regular, 9)
            pdf_canvas.setFillColor(MUTED_TEXT)
            pdf_canvas.drawString(self.left, block.bottom + 4, block.payload["payment_terms"])

    def draw_notes(self, block: PlacedBlock) -> None:
        pdf_canvas = self.canvas
        y = block.top - BODY_FONT_SIZE
        if block.payload["label"]:
            pdf_canvas.setFont(self.fonts.bold, 10)
            pdf_canvas.setFillColor(PRIMARY_COLOR)
            pdf_canvas.drawString(self.left, y - 1, block.payload["label"])
            y -= 16
        pdf_canvas.setFont(self.fonts.regular, BODY_FONT_SIZE)
        pdf_canvas.setFillColor(MUTED_TEXT)
        for line in block.payload["lines"]:
            pdf_canvas.drawString(self.left, y, line)
            y -= LEADING

    def draw_footer(self, block: PlacedBlock) -> None:
        pdf_canvas = self.canvas
        payload = block.payload
        pdf_canvas.setFillColor(PRIMARY_COLOR)
        pdf_canvas.setFont(self.fonts.regular, 10)
        y = block.top - 10
        pdf_canvas.drawString(self.left, y, payload["closing"])
        y -= 12
        pdf_canvas.setFont(self.fonts.bold, 10)
        pdf_canvas.drawString(self.left, y, payload["company"])
        y -= SIGNATURE_SPACE
        pdf_canvas.setStrokeColor(MUTED_TEXT)
        pdf_canvas.line(self.left, y, self.left + 180, y)
        pdf_canvas.setFont(self.fonts.regular, 8)
        pdf_canvas.setFillColor(MUTED_TEXT)
        pdf_canvas.drawString(self.left, y - 10, payload["signature"])

        y -= 26
        pdf_canvas.setStrokeColor(BORDER_COLOR)
        pdf_canvas.line(self.left, y + 8, self.right, y + 8)
        for line in [*payload["contact"], *payload["bank"]]:
            pdf_canvas.drawString(self.left, y - 2, line)
            y -= 10

    def draw_page_number(self, block: PlacedBlock) -> None:
        self.canvas.setFont(self.fonts.regular, 8)
        self.canvas.setFillColor(MUTED_TEXT)
        self.canvas.drawRightString(self.right, PAGE_NUMBER_BASELINE, block.payload["text"])


def render_invoice_pdf(
    document: InvoiceDocument,
    *,
    show_prices: bool = True,
    branding: Branding | None = None,
) -> RenderedDocument:
    """Render ``document`` as an A4 PDF.

    ``show_prices=False`` produces the delivery-note variant without price
    columns or totals. Identical input yields byte-identical output.
    """

    branding = branding or branding_from_settings()
    mode = "invoice" if show_prices else "delivery_note"
    filename = build_filename(document.invoice_number, show_prices)
    start = perf_counter()

    fonts = resolve_fonts(branding)
    logo = _load_logo(branding.logo_path)

    try:
        plan = plan_layout(document, show_prices=show_prices, branding=branding, fonts=fonts)
        buffer = BytesIO()
        pdf_canvas = canvas.Canvas(buffer, pagesize=A4, invariant=1)
        pdf_canvas.setTitle(f"{plan.title} {document.invoice_number}")
        pdf_canvas.setAuthor(branding.company_name)
        pdf_canvas.setSubject(plan.title)

        painter = _PageRenderer(pdf_canvas, plan, branding, fonts, logo)
        for page in range(plan.pages):
            for block in plan.blocks_on(page):
                painter.draw(block)
            pdf_canvas.showPage()
        pdf_canvas.save()
    except InvoiceEngineError:
        raise
    except Exception as exc:
        LOGGER.error(
            "pdf_render_failed",
            invoice_id=document.invoice_id,
            invoice_number=document.invoice_number,
            mode=mode,
            error=str(exc),
        )
        raise RenderError(
            f"Failed to render invoice {document.invoice_number}: {exc}",
            details={"invoice_id": document.invoice_id, "mode": mode},
        ) from exc

    pdf_bytes = buffer.getvalue()
    elapsed = perf_counter() - start
    pdf_generation_seconds.labels(mode=mode).observe(elapsed)
    LOGGER.info(
        "pdf_rendered",
        invoice_id=document.invoice_id,
        invoice_number=document.invoice_number,
        mode=mode,
        pages=plan.pages,
        bytes=len(pdf_bytes),
        duration_ms=round(elapsed * 1000, 2),
    )
    return RenderedDocument(filename=filename, content=pdf_bytes, page_count=plan.pages)


__all__ = [
    "RenderedDocument",
    "build_filename",
    "render_invoice_pdf",
    "resolve_fonts",
]
