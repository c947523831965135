from __future__ import annotations

from fastapi import APIRouter, Depends

from marketsync.api.v1.endpoints import automation, events, inventory, orders, stock_sync
from marketsync.core.security import require_basic_auth


api_router = APIRouter(dependencies=[Depends(require_basic_auth)])

api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(automation.router, prefix="/automation", tags=["automation"])

api_router.include_router(inventory.router, prefix="/inventory", tags=["inventory"])
api_router.include_router(stock_sync.router, prefix="/stock-sync", tags=["stock-sync"])

api_router.include_router(events.router, prefix="/events", tags=["events"])
