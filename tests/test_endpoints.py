from __future__ import annotations

import json
import uuid
from decimal import Decimal

import pytest
from fastapi import HTTPException

from marketsync.api.v1.endpoints import automation as automation_endpoints
from marketsync.api.v1.endpoints import orders as order_endpoints
from marketsync.api.v1.endpoints import stock_sync as stock_sync_endpoints
from marketsync.api.v1.endpoints.events import format_sse
from marketsync.api.v1.endpoints.inventory import adjust_stock
from marketsync.core.enums import (
    AutomationActionType,
    EventType,
    MarketplaceCode,
    OrderStatus,
    SyncStrategy,
)
from marketsync.schemas.automation import AutomationActionIn, AutomationRuleIn
from marketsync.schemas.inventory import InventoryAdjustIn
from marketsync.schemas.orders import OrderStatusUpdateIn, OrderSyncIn
from marketsync.schemas.stock_sync import StockSyncRuleIn, StockSyncTriggerIn
from marketsync.services.events import Event


@pytest.mark.asyncio
async def test_stock_sync_rule_crud(session_factory, seed) -> None:
    user = await seed.user()
    account = await seed.account(user, MarketplaceCode.TOKOPEDIA)
    data = StockSyncRuleIn(
        name="Keep 80%",
        strategy=SyncStrategy.PERCENTAGE,
        sync_percentage="80",
        target_account_ids=[account.id],
    )

    async with session_factory() as session:
        created = await stock_sync_endpoints.create_rule(data, session=session, user=user)
    assert created.target_account_ids == [account.id]

    async with session_factory() as session:
        fetched = await stock_sync_endpoints.get_rule(created.id, session=session, user=user)
    assert fetched.strategy == SyncStrategy.PERCENTAGE

    update = data.model_copy(update={"name": "Keep 90%", "sync_percentage": Decimal("90")})
    async with session_factory() as session:
        updated = await stock_sync_endpoints.update_rule(created.id, update, session=session, user=user)
    assert updated.name == "Keep 90%"

    async with session_factory() as session:
        await stock_sync_endpoints.delete_rule(created.id, session=session, user=user)

    async with session_factory() as session:
        with pytest.raises(HTTPException) as exc:
            await stock_sync_endpoints.get_rule(created.id, session=session, user=user)
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_stock_sync_rule_rejects_disconnected_target(session_factory, seed) -> None:
    user = await seed.user()
    offline = await seed.account(user, connected=False)
    data = StockSyncRuleIn(name="Sync", target_account_ids=[offline.id])

    async with session_factory() as session:
        with pytest.raises(HTTPException) as exc:
            await stock_sync_endpoints.create_rule(data, session=session, user=user)
    assert exc.value.status_code == 409
    assert "not connected" in exc.value.detail


@pytest.mark.asyncio
async def test_trigger_and_stats_endpoints(session_factory, seed, engines, fake_adapters) -> None:
    user = await seed.user()
    account = await seed.account(user)
    product = await seed.product(user, "P", stock=7)
    await seed.listing(account, product, "EXT-P")
    await seed.stock_rule(user, [account])

    out = await stock_sync_endpoints.trigger_sync(
        StockSyncTriggerIn(product_ids=[product.id]),
        user=user,
        engines=engines,
    )
    assert out.message == "Stock sync completed for 1 products"
    (item,) = out.items
    assert (item.rules_matched, item.success_count, item.failure_count) == (1, 1, 0)

    async with session_factory() as session:
        stats = await stock_sync_endpoints.sync_stats(time_range="1h", session=session, user=user)
        logs = await stock_sync_endpoints.list_logs(
            rule_id=None, product_id=product.id, limit=50, offset=0, session=session, user=user
        )
    assert (stats.total_syncs, stats.success_rate) == (1, 100.0)
    assert logs[0].target_stock == 7

    with pytest.raises(HTTPException) as exc:
        await stock_sync_endpoints.trigger_sync(
            StockSyncTriggerIn(product_ids=[uuid.uuid4()]),
            user=user,
            engines=engines,
        )
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_automation_rule_endpoints(session_factory, seed) -> None:
    user = await seed.user()
    good = AutomationRuleIn(
        name="Tag",
        actions=[AutomationActionIn(action_type=AutomationActionType.ADD_TAG, action_value="auto")],
    )
    bad = AutomationRuleIn(
        name="Bad",
        actions=[AutomationActionIn(action_type=AutomationActionType.UPDATE_STATUS, action_value="SHIPPING")],
    )

    async with session_factory() as session:
        created = await automation_endpoints.create_rule(good, session=session, user=user)
    assert [a.action_value for a in created.actions] == ["auto"]

    async with session_factory() as session:
        rules = await automation_endpoints.list_rules(session=session, user=user)
    assert [r.id for r in rules] == [created.id]

    async with session_factory() as session:
        with pytest.raises(HTTPException) as exc:
            await automation_endpoints.create_rule(bad, session=session, user=user)
    assert exc.value.status_code == 409

    async with session_factory() as session:
        with pytest.raises(HTTPException) as exc:
            await automation_endpoints.get_rule(uuid.uuid4(), session=session, user=user)
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_order_endpoints_map_errors(session_factory, seed, engines) -> None:
    user = await seed.user()
    stranger = await seed.user("stranger")
    account = await seed.account(user)
    order = await seed.order(user, account)

    confirmed = await order_endpoints.update_order_status(
        order.id,
        OrderStatusUpdateIn(status=OrderStatus.CONFIRMED),
        user=user,
        engines=engines,
    )
    assert confirmed.status == OrderStatus.CONFIRMED

    with pytest.raises(HTTPException) as exc:
        await order_endpoints.update_order_status(
            order.id,
            OrderStatusUpdateIn(status=OrderStatus.DELIVERED),
            user=user,
            engines=engines,
        )
    assert exc.value.status_code == 409

    with pytest.raises(HTTPException) as exc:
        await order_endpoints.update_order_status(
            order.id,
            OrderStatusUpdateIn(status=OrderStatus.CANCELLED),
            user=stranger,
            engines=engines,
        )
    assert exc.value.status_code == 404

    async with session_factory() as session:
        detail = await order_endpoints.get_order(order.id, session=session, user=user)
    assert [h.status for h in detail.status_history] == [OrderStatus.PENDING, OrderStatus.CONFIRMED]

    async with session_factory() as session:
        with pytest.raises(HTTPException) as exc:
            await order_endpoints.run_order_sync(
                OrderSyncIn(marketplace_account_id=account.id),
                session=session,
                user=stranger,
                engines=engines,
            )
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_manual_adjustment_pushes_stock(session_factory, seed, engines, fake_adapters) -> None:
    user = await seed.user()
    account = await seed.account(user)
    product = await seed.product(user, "P", stock=10)
    await seed.listing(account, product, "EXT-P")
    await seed.stock_rule(user, [account], strategy=SyncStrategy.FIXED_OFFSET, sync_offset=-2)

    async with session_factory() as session:
        out = await adjust_stock(
            InventoryAdjustIn(product_id=product.id, quantity=30, reason="Restock"),
            session=session,
            user=user,
            engines=engines,
        )

    assert (out.stock_before, out.stock_after) == (10, 30)
    assert fake_adapters.for_account(account.id).stock_calls == [("EXT-P", 28, None)]

    async with session_factory() as session:
        with pytest.raises(HTTPException) as exc:
            await adjust_stock(
                InventoryAdjustIn(product_id=product.id, delta=-31),
                session=session,
                user=user,
                engines=engines,
            )
    assert exc.value.status_code == 409


def test_format_sse() -> None:
    event = Event(type=EventType.STOCK_SYNC_COMPLETED, user_id=uuid.uuid4(), payload={"successCount": 2})
    frame = format_sse(event)

    assert frame.startswith("event: stock-sync-completed\ndata: ")
    assert frame.endswith("\n\n")
    body = json.loads(frame.split("data: ", 1)[1])
    assert body["type"] == "stock-sync-completed"
    assert body["payload"] == {"successCount": 2}
