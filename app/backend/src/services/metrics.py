"""Prometheus metric definitions for the invoice engine."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

invoice_numbers_issued_total = Counter(
    "invoice_numbers_issued_total",
    "Invoice numbers issued, by numbering strategy.",
    labelnames=["strategy"],
)

invoice_number_conflicts_total = Counter(
    "invoice_number_conflicts_total",
    "Invoice creations retried after losing a numbering race.",
)

invoice_dispatch_total = Counter(
    "invoice_dispatch_total",
    "Invoice dispatch attempts by outcome and failing stage.",
    labelnames=["outcome", "stage"],
)

pdf_generation_seconds = Histogram(
    "pdf_generation_seconds",
    "Time spent rendering a single invoice PDF.",
    labelnames=["mode"],
)

__all__ = [
    "invoice_dispatch_total",
    "invoice_number_conflicts_total",
    "invoice_numbers_issued_total",
    "pdf_generation_seconds",
]
