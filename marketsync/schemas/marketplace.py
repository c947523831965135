from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


class RawOrderItem(BaseModel):
    """One line of a marketplace order after field mapping, before SKU resolution."""

    sku: str | None = None
    name: str | None = None
    variant_name: str | None = None
    external_product_id: str | None = None
    external_variant_id: str | None = None
    quantity: int = Field(default=1, ge=0)
    unit_price: Decimal = Decimal("0")
    total_price: Decimal | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class RawOrder(BaseModel):
    external_order_id: str = Field(min_length=1)
    status: str | None = None
    total_amount: Decimal = Decimal("0")
    shipping_cost: Decimal = Decimal("0")
    customer_info: dict[str, Any] = Field(default_factory=dict)
    shipping_address: dict[str, Any] | None = None
    order_date: datetime | None = None
    notes: str | None = None
    items: list[RawOrderItem] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def customer_email(self) -> str | None:
        email = self.customer_info.get("email")
        return str(email) if email else None


class OrdersPage(BaseModel):
    data: list[RawOrder] = Field(default_factory=list)
    has_more: bool = False
    total: int | None = None


class StockUpdateResult(BaseModel):
    success: bool
    external_product_id: str
    external_variant_id: str | None = None
    quantity: int
    message: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)
