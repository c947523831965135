from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from marketsync.core.enums import OrderStatus, StatusActor


class OrderLineItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    product_id: UUID | None
    variant_id: UUID | None
    sku: str | None
    product_name: str | None
    variant_name: str | None
    external_product_id: str | None
    external_variant_id: str | None
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class StatusHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    status: OrderStatus
    previous_status: OrderStatus | None
    actor: StatusActor
    changed_by: str | None
    reason: str | None
    changed_at: datetime


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    marketplace_account_id: UUID
    external_order_id: str
    order_number: str
    status: OrderStatus
    total_amount: Decimal
    shipping_cost: Decimal
    customer_info: dict | None
    shipping_address: dict | None
    order_date: datetime | None
    notes: str | None
    tags: list[str] | None
    assigned_user_id: UUID | None
    created_at: datetime
    updated_at: datetime


class OrderDetailOut(OrderOut):
    items: list[OrderLineItemOut] = Field(default_factory=list)
    status_history: list[StatusHistoryOut] = Field(default_factory=list)


class OrderSyncIn(BaseModel):
    marketplace_account_id: UUID
    date_from: datetime | None = None
    date_to: datetime | None = None
    status: str | None = None

    @model_validator(mode="after")
    def _check_range(self) -> "OrderSyncIn":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self


class ReconcileItemResultOut(BaseModel):
    external_order_id: str
    ok: bool
    action: str | None = None
    order_id: UUID | None = None
    error: str | None = None


class ReconcileResultOut(BaseModel):
    marketplace_account_id: UUID
    synced: int
    failed: int
    skipped: bool = False
    pages_fetched: int = 0
    page_error: str | None = None
    items: list[ReconcileItemResultOut] = Field(default_factory=list)


class OrderStatusUpdateIn(BaseModel):
    status: OrderStatus
    reason: str | None = Field(default=None, max_length=500)


class OrderAssignIn(BaseModel):
    user_id: UUID | None = None


class OrderTagIn(BaseModel):
    tag: str = Field(min_length=1, max_length=100)
