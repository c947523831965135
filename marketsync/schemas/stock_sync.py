from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from marketsync.core.enums import SyncScope, SyncStrategy


TimeRange = Literal["1h", "24h", "7d", "30d"]


class StockSyncRuleIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    scope: SyncScope = SyncScope.ALL_PRODUCTS
    product_ids: list[UUID] = Field(default_factory=list)
    category_ids: list[UUID] = Field(default_factory=list)
    strategy: SyncStrategy = SyncStrategy.EXACT_MATCH
    sync_percentage: Decimal | None = None
    sync_offset: int | None = None
    minimum_stock: int | None = None
    custom_formula: str | None = Field(default=None, max_length=500)
    target_account_ids: list[UUID] = Field(min_length=1)
    is_active: bool = True


class StockSyncRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    scope: SyncScope
    product_ids: list[str] | None
    category_ids: list[str] | None
    strategy: SyncStrategy
    sync_percentage: Decimal | None
    sync_offset: int | None
    minimum_stock: int | None
    custom_formula: str | None
    is_active: bool
    target_account_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class StockSyncTriggerIn(BaseModel):
    product_ids: list[UUID] = Field(min_length=1)
    reason: str = Field(default="Manual sync", min_length=1, max_length=500)


class StockSyncTriggerItemOut(BaseModel):
    product_id: UUID
    variant_id: UUID | None
    rules_matched: int
    rules_skipped: int
    success_count: int
    failure_count: int


class StockSyncTriggerOut(BaseModel):
    message: str
    items: list[StockSyncTriggerItemOut] = Field(default_factory=list)


class StockSyncLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rule_id: UUID | None
    product_id: UUID
    variant_id: UUID | None
    source_stock: int
    target_stock: int
    reason: str | None
    results: list[dict] | None
    success_count: int
    failure_count: int
    synced_at: datetime


class StockSyncStatsOut(BaseModel):
    time_range: TimeRange
    total_syncs: int
    successful_syncs: int
    failed_syncs: int
    success_rate: float
