"""ORM models exposed for easy imports."""

from .amendment import InvoiceAmendment
from .client import Client
from .delivery_receipt import DeliveryReceipt
from .invoice import Invoice, InvoiceStatus
from .invoice_counter import InvoiceCounter
from .line_item import InvoiceLineItem
from .product import Product
from .status_change import InvoiceStatusChange

__all__ = [
    "Client",
    "DeliveryReceipt",
    "Invoice",
    "InvoiceAmendment",
    "InvoiceCounter",
    "InvoiceLineItem",
    "InvoiceStatus",
    "InvoiceStatusChange",
    "Product",
]
