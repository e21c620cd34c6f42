"""Invoice line item schemas."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class LineItemInput(BaseModel):
    """A submitted line item.

    Only shapes are checked here; quantity, price and name rules are enforced
    by the totals layer so errors can name the offending item.
    """

    product_id: int | None = None
    product_name: str = ""
    description: str | None = None
    sku: str | None = None
    quantity: int
    unit_price: Decimal


class LineItemsReplace(BaseModel):
    line_items: list[LineItemInput]
    actor: str | None = None
    reason: str | None = None
    force: bool = False


class LineItemRead(BaseModel):
    id: int
    position: int
    product_id: int | None
    product_name: str
    description: str | None
    sku: str | None
    quantity: int
    unit_price: Decimal
    buying_price: Decimal | None = None
    line_total: Decimal

    model_config = ConfigDict(from_attributes=True)
