"""Public API routers exposed by the FastAPI application."""

from . import health, invoices

__all__ = ["health", "invoices"]
