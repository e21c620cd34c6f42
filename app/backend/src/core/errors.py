"""Typed errors raised by the invoice engine.

Every error carries a stable ``code`` that API clients can switch on, a
``status_code`` used by the HTTP layer, and a ``retryable`` flag that tells
the caller whether a manual retry could succeed. Errors raised while
dispatching an invoice are additionally annotated with the ``stage`` that
failed.
"""

from __future__ import annotations

from typing import Any


class InvoiceEngineError(Exception):
    """Base class for all invoice engine errors."""

    code = "INVOICE_ENGINE_ERROR"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        stage: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.stage = stage
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable representation for API responses."""

        return {
            "error": self.code,
            "message": self.message,
            "stage": self.stage,
            "retryable": self.retryable,
            "details": self.details,
        }


# --------------------------------------------------------------------------
# Validation
# --------------------------------------------------------------------------
class InvoiceValidationError(InvoiceEngineError):
    code = "VALIDATION_FAILED"
    status_code = 400


class PriceFloorError(InvoiceValidationError):
    """Raised when one or more line items undercut the live catalog price."""

    code = "PRICE_BELOW_FLOOR"

    def __init__(self, violations: list[dict[str, Any]]) -> None:
        parts = [
            f"product {item['product_id']} ({item['product_name']}) has unit price "
            f"{item['unit_price']} below the catalog price {item['floor']}"
            for item in violations
        ]
        super().__init__(
            "Line item price below catalog price: " + "; ".join(parts),
            details={"violations": violations},
        )
        self.violations = violations


class InsufficientStockError(InvoiceValidationError):
    """Raised when line items ask for more units than a product has in stock."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, shortages: list[dict[str, Any]]) -> None:
        parts = [
            f"product {item['product_id']} ({item['product_name']}) has "
            f"{item['available']} in stock, {item['requested']} requested"
            for item in shortages
        ]
        super().__init__(
            "Insufficient stock: " + "; ".join(parts),
            details={"shortages": shortages},
        )
        self.shortages = shortages


class MissingRecipientError(InvoiceValidationError):
    code = "NO_RECIPIENT"


# --------------------------------------------------------------------------
# Not found
# --------------------------------------------------------------------------
class NotFoundError(InvoiceEngineError):
    code = "NOT_FOUND"
    status_code = 404


class InvoiceNotFoundError(NotFoundError):
    code = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: object) -> None:
        super().__init__(
            f"Invoice {invoice_id} not found", details={"invoice_id": invoice_id}
        )


class ClientNotFoundError(NotFoundError):
    code = "CLIENT_NOT_FOUND"

    def __init__(self, client_id: object) -> None:
        super().__init__(
            f"Client {client_id} not found", details={"client_id": client_id}
        )


class ProductNotFoundError(NotFoundError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: object) -> None:
        super().__init__(
            f"Product {product_id} not found", details={"product_id": product_id}
        )


# --------------------------------------------------------------------------
# Consistency
# --------------------------------------------------------------------------
class ConsistencyError(InvoiceEngineError):
    code = "CONFLICT"
    status_code = 409


class InvalidTransitionError(ConsistencyError):
    code = "INVALID_STATUS_TRANSITION"


class DispatchRequiredError(ConsistencyError):
    code = "DISPATCH_REQUIRED"


class DuplicateInvoiceNumberError(ConsistencyError):
    code = "DUPLICATE_INVOICE_NUMBER"


class InvoiceLockedError(ConsistencyError):
    """Raised when an invoice past ``maker`` is edited without ``force``."""

    code = "INVOICE_LOCKED"


# --------------------------------------------------------------------------
# Configuration (fatal, never retried)
# --------------------------------------------------------------------------
class ConfigurationError(InvoiceEngineError):
    code = "CONFIGURATION_ERROR"
    status_code = 500


class MailConfigurationError(ConfigurationError):
    code = "MAIL_NOT_CONFIGURED"


class RenderConfigurationError(ConfigurationError):
    code = "PDF_FONT_MISSING"


class RenderError(InvoiceEngineError):
    code = "PDF_RENDER_FAILED"
    status_code = 500


class RecipientRejectedError(InvoiceEngineError):
    """The mail server refused every recipient of a message."""

    code = "RECIPIENT_REJECTED"
    status_code = 502


# --------------------------------------------------------------------------
# Transient
# --------------------------------------------------------------------------
class TransientError(InvoiceEngineError):
    code = "TRANSIENT_FAILURE"
    status_code = 503
    retryable = True


class MailTransportError(TransientError):
    code = "MAIL_TRANSPORT_FAILED"


class CatalogUnavailableError(TransientError):
    code = "CATALOG_UNAVAILABLE"


# --------------------------------------------------------------------------
# Dispatch
# --------------------------------------------------------------------------
class DispatchError(InvoiceEngineError):
    """A failed dispatch, annotated with the stage that failed."""

    code = "DISPATCH_FAILED"

    def __init__(
        self,
        stage: str,
        cause: InvoiceEngineError,
        *,
        report: dict[str, Any] | None = None,
    ) -> None:
        details = {"cause": cause.code, **cause.details}
        if report is not None:
            details["report"] = report
        super().__init__(
            f"Dispatch failed during {stage}: {cause.message}",
            code=cause.code,
            stage=stage,
            details=details,
        )
        self.cause = cause
        self.status_code = cause.status_code
        self.retryable = cause.retryable
        self.report = report


__all__ = [
    "CatalogUnavailableError",
    "ClientNotFoundError",
    "ConfigurationError",
    "ConsistencyError",
    "DispatchError",
    "DispatchRequiredError",
    "DuplicateInvoiceNumberError",
    "InsufficientStockError",
    "InvalidTransitionError",
    "InvoiceEngineError",
    "InvoiceLockedError",
    "InvoiceNotFoundError",
    "InvoiceValidationError",
    "MailConfigurationError",
    "MailTransportError",
    "MissingRecipientError",
    "NotFoundError",
    "PriceFloorError",
    "ProductNotFoundError",
    "RecipientRejectedError",
    "RenderConfigurationError",
    "RenderError",
    "TransientError",
]
