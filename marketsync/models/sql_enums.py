from __future__ import annotations

from sqlalchemy import Enum

from marketsync.core.enums import (
    MarketplaceCode,
    MarketplaceProductSyncStatus,
    OrderStatus,
    StatusActor,
    StockMovementType,
    SyncScope,
    SyncStrategy,
)

marketplace_code_enum = Enum(MarketplaceCode, name="marketplace_code")
marketplace_product_sync_status_enum = Enum(MarketplaceProductSyncStatus, name="marketplace_product_sync_status")

order_status_enum = Enum(OrderStatus, name="order_status")
status_actor_enum = Enum(StatusActor, name="status_actor")

stock_movement_type_enum = Enum(StockMovementType, name="stock_movement_type")

sync_scope_enum = Enum(SyncScope, name="sync_scope")
sync_strategy_enum = Enum(SyncStrategy, name="sync_strategy")
