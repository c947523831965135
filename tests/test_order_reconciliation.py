from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketsync.core.enums import EventType, MarketplaceCode, OrderStatus, StatusActor, StockMovementType
from marketsync.core.errors import AdapterError, NotFoundError, ValidationError
from marketsync.models.inventory import Inventory, StockMovement
from marketsync.models.marketplace_account import MarketplaceAccount
from marketsync.models.order import Order, OrderLineItem, OrderStatusHistory
from marketsync.services.order_reconciliation import generate_order_number


async def _orders(session_factory: async_sessionmaker[AsyncSession]) -> list[Order]:
    async with session_factory() as session:
        return list((await session.execute(select(Order))).scalars().all())


async def _stock(session_factory: async_sessionmaker[AsyncSession], product_id) -> int:
    async with session_factory() as session:
        inv = (await session.execute(select(Inventory).where(Inventory.product_id == product_id))).scalar_one()
        return inv.stock_quantity


async def _history(session_factory: async_sessionmaker[AsyncSession], order_id) -> list[OrderStatusHistory]:
    async with session_factory() as session:
        rows = await session.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.sequence.asc())
        )
        return list(rows.scalars().all())


async def _movements(session_factory: async_sessionmaker[AsyncSession]) -> list[StockMovement]:
    async with session_factory() as session:
        return list((await session.execute(select(StockMovement))).scalars().all())


def test_order_number_is_prefixed_with_marketplace_and_external_id() -> None:
    number = generate_order_number(MarketplaceCode.SHOPEE, "220101ABC")
    prefix, suffix = number.rsplit("-", 1)
    assert prefix == "SHOPEE-220101ABC"
    assert len(suffix) == 6 and suffix.isdigit()


@pytest.mark.asyncio
async def test_new_order_decrements_stock_and_records_initial_status(
    session_factory,
    seed,
    engines,
    fake_adapters,
    raw_order,
    recorded_events,
) -> None:
    user = await seed.user()
    account = await seed.account(user)
    product = await seed.product(user, "X", stock=50)
    fake_adapters.for_account(account.id).pages = [[raw_order("O1", "TO_SHIP", items=[("X", 2, "15000")], total="30000")]]

    result = await engines.orders.reconcile(account.id)

    assert result.synced == 1
    assert result.failed == 0
    assert result.items[0].action == "created"

    orders = await _orders(session_factory)
    assert len(orders) == 1
    order = orders[0]
    assert order.status == OrderStatus.CONFIRMED
    assert order.external_order_id == "O1"
    assert order.user_id == user.id

    assert await _stock(session_factory, product.id) == 48

    movements = await _movements(session_factory)
    assert len(movements) == 1
    assert movements[0].movement_type == StockMovementType.OUT
    assert movements[0].quantity == 2
    assert (movements[0].stock_before, movements[0].stock_after) == (50, 48)
    assert movements[0].order_id == order.id

    history = await _history(session_factory, order.id)
    assert len(history) == 1
    assert history[0].actor == StatusActor.SYSTEM
    assert history[0].previous_status is None
    assert history[0].status == OrderStatus.CONFIRMED

    completed = [e for e in recorded_events if e.type == EventType.ORDER_SYNC_COMPLETED]
    assert len(completed) == 1
    assert completed[0].payload["totalSynced"] == 1

    async with session_factory() as session:
        refreshed = await session.get(MarketplaceAccount, account.id)
        assert refreshed is not None and refreshed.last_order_sync_at is not None


@pytest.mark.asyncio
async def test_resync_updates_status_without_second_decrement(
    session_factory,
    seed,
    engines,
    fake_adapters,
    raw_order,
    recorded_events,
) -> None:
    user = await seed.user()
    account = await seed.account(user)
    product = await seed.product(user, "X", stock=50)
    adapter = fake_adapters.for_account(account.id)

    adapter.pages = [[raw_order("O1", "TO_SHIP", items=[("X", 2, "15000")], total="30000")]]
    await engines.orders.reconcile(account.id)

    adapter.pages = [[raw_order("O1", "SHIPPED", items=[("X", 2, "15000")], total="31000")]]
    result = await engines.orders.reconcile(account.id)

    assert result.items[0].action == "updated"
    orders = await _orders(session_factory)
    assert len(orders) == 1
    assert orders[0].status == OrderStatus.SHIPPED
    assert str(orders[0].total_amount) in {"31000", "31000.00"}

    assert await _stock(session_factory, product.id) == 48
    assert len(await _movements(session_factory)) == 1

    history = await _history(session_factory, orders[0].id)
    assert [(h.previous_status, h.status) for h in history] == [
        (None, OrderStatus.CONFIRMED),
        (OrderStatus.CONFIRMED, OrderStatus.SHIPPED),
    ]
    assert [h.sequence for h in history] == [1, 2]

    changed = [e for e in recorded_events if e.type == EventType.ORDER_STATUS_CHANGED]
    assert len(changed) == 1
    assert changed[0].payload["oldStatus"] == "CONFIRMED"
    assert changed[0].payload["newStatus"] == "SHIPPED"


@pytest.mark.asyncio
async def test_same_status_resync_leaves_history_untouched(session_factory, seed, engines, fake_adapters, raw_order) -> None:
    user = await seed.user()
    account = await seed.account(user)
    await seed.product(user, "X", stock=10)
    adapter = fake_adapters.for_account(account.id)
    adapter.pages = [[raw_order("O1", "READY_TO_SHIP", items=[("X", 1, "100")])]]

    await engines.orders.reconcile(account.id)
    await engines.orders.reconcile(account.id)

    orders = await _orders(session_factory)
    assert len(orders) == 1
    assert len(await _history(session_factory, orders[0].id)) == 1


@pytest.mark.asyncio
async def test_duplicate_external_id_in_one_feed_creates_one_order(
    session_factory,
    seed,
    engines,
    fake_adapters,
    raw_order,
) -> None:
    user = await seed.user()
    account = await seed.account(user)
    product = await seed.product(user, "X", stock=20)
    order = raw_order("DUP", "UNPAID", items=[("X", 3, "10")])
    fake_adapters.for_account(account.id).pages = [[order, order]]

    result = await engines.orders.reconcile(account.id)

    assert result.synced == 2
    assert [i.action for i in result.items] == ["created", "updated"]
    assert len(await _orders(session_factory)) == 1
    assert await _stock(session_factory, product.id) == 17


@pytest.mark.asyncio
async def test_page_failure_keeps_earlier_pages(session_factory, seed, engines, fake_adapters, raw_order) -> None:
    user = await seed.user()
    account = await seed.account(user)
    adapter = fake_adapters.for_account(account.id)
    adapter.pages = [[raw_order("P1", "UNPAID")], [raw_order("P2", "UNPAID")]]
    adapter.page_errors = {2: AdapterError("upstream 500", marketplace="SHOPEE", status_code=500)}

    result = await engines.orders.reconcile(account.id)

    assert result.synced == 1
    assert result.pages_fetched == 1
    assert result.page_error is not None and "upstream 500" in result.page_error
    assert [o.external_order_id for o in await _orders(session_factory)] == ["P1"]


@pytest.mark.asyncio
async def test_auth_failure_raises_and_emits_sync_failed(seed, engines, fake_adapters, recorded_events) -> None:
    user = await seed.user()
    account = await seed.account(user)
    fake_adapters.for_account(account.id).page_errors = {
        1: AdapterError("token expired", marketplace="SHOPEE", status_code=401)
    }

    with pytest.raises(AdapterError):
        await engines.orders.reconcile(account.id)

    failed = [e for e in recorded_events if e.type == EventType.ORDER_SYNC_FAILED]
    assert len(failed) == 1
    assert failed[0].payload["marketplaceAccountId"] == str(account.id)


@pytest.mark.asyncio
async def test_reconcile_rejects_unknown_and_disconnected_accounts(seed, engines, recorded_events) -> None:
    user = await seed.user()
    account = await seed.account(user, connected=False)

    with pytest.raises(ValidationError):
        await engines.orders.reconcile(account.id)

    failed = [e for e in recorded_events if e.type == EventType.ORDER_SYNC_FAILED]
    assert len(failed) == 1
    assert failed[0].payload["marketplaceAccountId"] == str(account.id)
    assert "not connected" in failed[0].payload["error"]

    with pytest.raises(NotFoundError):
        await engines.orders.reconcile(user.id)


@pytest.mark.asyncio
async def test_auth_failure_after_first_page_is_a_page_error(
    session_factory, seed, engines, fake_adapters, raw_order, recorded_events
) -> None:
    user = await seed.user()
    account = await seed.account(user)
    adapter = fake_adapters.for_account(account.id)
    adapter.pages = [[raw_order("A1", "UNPAID")], [raw_order("A2", "UNPAID")]]
    adapter.page_errors = {2: AdapterError("token expired", marketplace="SHOPEE", status_code=401)}

    result = await engines.orders.reconcile(account.id)

    assert result.synced == 1
    assert result.page_error is not None and "token expired" in result.page_error
    assert [o.external_order_id for o in await _orders(session_factory)] == ["A1"]
    types = [e.type for e in recorded_events]
    assert EventType.ORDER_SYNC_COMPLETED in types
    assert EventType.ORDER_SYNC_FAILED not in types


@pytest.mark.asyncio
async def test_unexpected_page_failure_keeps_earlier_pages(
    session_factory, seed, engines, fake_adapters, raw_order, recorded_events
) -> None:
    user = await seed.user()
    account = await seed.account(user)
    adapter = fake_adapters.for_account(account.id)
    adapter.pages = [[raw_order("B1", "UNPAID")], [raw_order("B2", "UNPAID")]]
    adapter.page_errors = {2: KeyError("order_sn")}

    result = await engines.orders.reconcile(account.id)

    assert result.synced == 1
    assert result.pages_fetched == 1
    assert result.page_error is not None
    assert [o.external_order_id for o in await _orders(session_factory)] == ["B1"]
    completed = [e for e in recorded_events if e.type == EventType.ORDER_SYNC_COMPLETED]
    assert len(completed) == 1
    assert completed[0].payload["totalSynced"] == 1


@pytest.mark.asyncio
async def test_unresolved_line_item_keeps_raw_payload(session_factory, seed, engines, fake_adapters, raw_order) -> None:
    user = await seed.user()
    account = await seed.account(user)
    fake_adapters.for_account(account.id).pages = [[raw_order("O9", "UNPAID", items=[("UNKNOWN-SKU", 1, "500")])]]

    result = await engines.orders.reconcile(account.id)

    assert result.synced == 1
    async with session_factory() as session:
        line = (await session.execute(select(OrderLineItem))).scalar_one()
    assert line.product_id is None
    assert line.sku == "UNKNOWN-SKU"
    assert line.raw_payload == {"sku": "UNKNOWN-SKU"}
    assert await _movements(session_factory) == []


@pytest.mark.asyncio
async def test_line_items_resolve_through_listing_then_variant_sku(
    session_factory,
    seed,
    engines,
    fake_adapters,
    raw_order,
) -> None:
    from marketsync.schemas.marketplace import RawOrderItem

    user = await seed.user()
    account = await seed.account(user)
    listed = await seed.product(user, "LISTED", stock=5)
    await seed.listing(account, listed, "9001")
    shirt = await seed.product(user, "SHIRT")
    red = await seed.variant(shirt, "SHIRT-RED", stock=7)

    order = raw_order("O2", "UNPAID", items=[("SHIRT-RED", 2, "20")])
    order.items.append(RawOrderItem(sku=None, external_product_id="9001", quantity=1))
    fake_adapters.for_account(account.id).pages = [[order]]

    await engines.orders.reconcile(account.id)

    async with session_factory() as session:
        lines = (await session.execute(select(OrderLineItem).order_by(OrderLineItem.position))).scalars().all()
        red_inv = (await session.execute(select(Inventory).where(Inventory.variant_id == red.id))).scalar_one()
    assert lines[0].product_id == shirt.id
    assert lines[0].variant_id == red.id
    assert lines[0].variant_name == "Variant SHIRT-RED"
    assert lines[1].product_id == listed.id
    assert red_inv.stock_quantity == 5
    assert await _stock(session_factory, listed.id) == 4


@pytest.mark.asyncio
async def test_oversell_floors_stock_at_zero(session_factory, seed, engines, fake_adapters, raw_order) -> None:
    user = await seed.user()
    account = await seed.account(user)
    product = await seed.product(user, "X", stock=1)
    fake_adapters.for_account(account.id).pages = [[raw_order("O3", "UNPAID", items=[("X", 4, "10")])]]

    result = await engines.orders.reconcile(account.id)

    assert result.synced == 1
    assert await _stock(session_factory, product.id) == 0


@pytest.mark.asyncio
async def test_overlapping_reconcile_for_same_account_is_skipped(seed, engines, fake_adapters, raw_order) -> None:
    user = await seed.user()
    account = await seed.account(user)
    adapter = fake_adapters.for_account(account.id)
    adapter.pages = [[raw_order("O1", "UNPAID")]]
    adapter.feed_gate = asyncio.Event()

    first = asyncio.create_task(engines.orders.reconcile(account.id))
    while not engines.orders.guard.is_held(account.id):
        await asyncio.sleep(0)

    second = await engines.orders.reconcile(account.id)
    assert second.skipped is True
    assert second.synced == 0

    adapter.feed_gate.set()
    first_result = await asyncio.wait_for(first, timeout=5)
    assert first_result.skipped is False
    assert first_result.synced == 1
    assert not engines.orders.guard.is_held(account.id)


@pytest.mark.asyncio
async def test_reconciled_order_runs_automation_and_stock_sync(
    session_factory,
    seed,
    engines,
    fake_adapters,
    raw_order,
) -> None:
    user = await seed.user()
    shopee = await seed.account(user)
    tokopedia = await seed.account(user, MarketplaceCode.TOKOPEDIA)
    product = await seed.product(user, "X", stock=50)
    await seed.listing(tokopedia, product, "TP-1")
    await seed.stock_rule(user, [tokopedia])
    await seed.automation_rule(
        user,
        name="High value",
        conditions=[("totalAmount", "greater_than", "50000")],
        actions=[("add_tag", "high-value")],
    )
    fake_adapters.for_account(shopee.id).pages = [
        [
            raw_order("BIG", "UNPAID", items=[("X", 2, "50000")], total="100000"),
            raw_order("SMALL", "UNPAID", total="10000"),
        ]
    ]

    await engines.orders.reconcile(shopee.id)

    tags = {o.external_order_id: o.tags for o in await _orders(session_factory)}
    assert tags == {"BIG": ["high-value"], "SMALL": []}
    assert fake_adapters.for_account(tokopedia.id).stock_calls == [("TP-1", 48, None)]


@pytest.mark.asyncio
async def test_status_monitor_applies_marketplace_status(
    session_factory,
    seed,
    engines,
    fake_adapters,
    raw_order,
    recorded_events,
) -> None:
    user = await seed.user()
    account = await seed.account(user)
    order = await seed.order(user, account, "M1", status=OrderStatus.CONFIRMED)
    untouched = await seed.order(user, account, "M2", status=OrderStatus.CONFIRMED)
    adapter = fake_adapters.for_account(account.id)
    adapter.orders = {"M1": raw_order("M1", "COMPLETED"), "M2": raw_order("M2", "READY_TO_SHIP")}

    result = await engines.orders.refresh_order_statuses()

    assert (result.checked, result.changed, result.failed) == (2, 1, 0)
    async with session_factory() as session:
        assert (await session.get(Order, order.id)).status == OrderStatus.DELIVERED
        assert (await session.get(Order, untouched.id)).status == OrderStatus.CONFIRMED
    history = await _history(session_factory, order.id)
    assert history[-1].actor == StatusActor.SYSTEM
    assert any(e.type == EventType.ORDER_STATUS_CHANGED for e in recorded_events)


@pytest.mark.asyncio
async def test_reconcile_all_accounts_isolates_failures(seed, engines, fake_adapters, raw_order) -> None:
    user = await seed.user()
    good = await seed.account(user, name="good")
    bad = await seed.account(user, MarketplaceCode.LAZADA, name="bad")
    await seed.account(user, name="off", connected=False)
    fake_adapters.for_account(good.id).pages = [[raw_order("G1", "UNPAID")]]
    fake_adapters.for_account(bad.id).page_errors = {1: AdapterError("forbidden", status_code=403)}

    results = await engines.orders.reconcile_all_accounts()

    assert set(results) == {good.id, bad.id}
    assert results[good.id].synced == 1
    assert isinstance(results[bad.id], AdapterError)
