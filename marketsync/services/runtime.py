from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.config import Settings, get_settings
from marketsync.services.automation import AutomationEvaluator
from marketsync.services.events import EventBus
from marketsync.services.order_reconciliation import AdapterFactory, OrderReconciliationEngine
from marketsync.services.stock_sync import StockSyncEngine


@dataclass(slots=True)
class Engines:
    bus: EventBus
    automation: AutomationEvaluator
    stock_sync: StockSyncEngine
    orders: OrderReconciliationEngine


def build_engines(
    *,
    session_factory: Callable[[], AsyncSession],
    settings: Settings | None = None,
    adapter_factory: AdapterFactory | None = None,
    bus: EventBus | None = None,
) -> Engines:
    """Wire the engines of one process around a shared event bus and session factory."""
    settings = settings or get_settings()
    bus = bus or EventBus()
    automation = AutomationEvaluator(session_factory=session_factory, bus=bus)
    stock_sync = StockSyncEngine(
        session_factory=session_factory,
        bus=bus,
        adapter_factory=adapter_factory,
        settings=settings,
    )
    orders = OrderReconciliationEngine(
        session_factory=session_factory,
        bus=bus,
        automation=automation,
        stock_sync=stock_sync,
        adapter_factory=adapter_factory,
        settings=settings,
    )
    return Engines(bus=bus, automation=automation, stock_sync=stock_sync, orders=orders)
