from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class InventoryAdjustIn(BaseModel):
    product_id: UUID
    variant_id: UUID | None = None
    quantity: int | None = Field(default=None, ge=0)
    delta: int | None = None
    reason: str = Field(default="manual adjustment", min_length=1, max_length=500)

    @model_validator(mode="after")
    def _one_of(self) -> "InventoryAdjustIn":
        if (self.quantity is None) == (self.delta is None):
            raise ValueError("Provide exactly one of quantity or delta")
        return self


class InventoryChangeOut(BaseModel):
    inventory_id: UUID
    product_id: UUID
    variant_id: UUID | None
    stock_before: int
    stock_after: int
    available: int
