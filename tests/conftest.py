from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import AsyncIterator
from datetime import datetime
from decimal import Decimal
from typing import Any

# marketsync.core.db builds its engine at import time; give it something to build.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BASIC_AUTH_USERNAME", "test-user")
os.environ.setdefault("BASIC_AUTH_PASSWORD", "test-pass")

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

import marketsync.models  # noqa: E402,F401
from marketsync.core.config import get_settings  # noqa: E402
from marketsync.core.enums import (  # noqa: E402
    MarketplaceCode,
    OrderStatus,
    StatusActor,
    SyncScope,
    SyncStrategy,
)
from marketsync.integrations.base import MarketplaceAdapter  # noqa: E402
from marketsync.models.automation import AutomationAction, AutomationCondition, AutomationRule  # noqa: E402
from marketsync.models.base import Base  # noqa: E402
from marketsync.models.inventory import Inventory  # noqa: E402
from marketsync.models.marketplace_account import MarketplaceAccount  # noqa: E402
from marketsync.models.marketplace_product import MarketplaceProduct  # noqa: E402
from marketsync.models.order import Order, OrderStatusHistory  # noqa: E402
from marketsync.models.product import Category, Product, ProductVariant  # noqa: E402
from marketsync.models.stock_sync import StockSyncRule, StockSyncRuleTarget  # noqa: E402
from marketsync.models.user import User  # noqa: E402
from marketsync.schemas.marketplace import OrdersPage, RawOrder, RawOrderItem, StockUpdateResult  # noqa: E402
from marketsync.services.events import ALL_EVENTS, Event  # noqa: E402
from marketsync.services.runtime import Engines, build_engines  # noqa: E402


@compiles(JSONB, "sqlite")
def _compile_jsonb_for_sqlite(_type, _compiler, **_kw) -> str:
    return "JSON"


@pytest_asyncio.fixture
async def db_engine(tmp_path, monkeypatch) -> AsyncIterator[AsyncEngine]:
    db_path = tmp_path / "test.db"

    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("BASIC_AUTH_USERNAME", "test-user")
    monkeypatch.setenv("BASIC_AUTH_PASSWORD", "test-pass")
    monkeypatch.setenv("ORDER_SYNC_PAGE_SIZE", "2")
    monkeypatch.setenv("ORDER_SYNC_MAX_PAGES", "5")
    get_settings.cache_clear()

    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", future=True)

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


# --- marketplace fakes ---


class FakeAdapter(MarketplaceAdapter):
    """In-memory marketplace: paged order feed, order lookup and recorded stock pushes."""

    marketplace = MarketplaceCode.SHOPEE

    def __init__(self) -> None:
        super().__init__(credentials={}, base_url="http://marketplace.invalid")
        self.pages: list[list[RawOrder]] = []
        self.page_errors: dict[int, Exception] = {}
        self.orders: dict[str, RawOrder] = {}
        self.stock_calls: list[tuple[str, int, str | None]] = []
        self.stock_error: Exception | None = None
        self.feed_gate: asyncio.Event | None = None
        self.stock_gate: asyncio.Event | None = None

    async def get_orders(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        status: str | None = None,
    ) -> OrdersPage:
        if self.feed_gate is not None:
            await self.feed_gate.wait()
        if page in self.page_errors:
            raise self.page_errors[page]
        if page > len(self.pages):
            return OrdersPage(data=[], has_more=False, total=0)
        return OrdersPage(data=self.pages[page - 1], has_more=page < len(self.pages))

    async def get_order(self, external_order_id: str) -> RawOrder:
        if external_order_id not in self.orders:
            raise self._error(f"order not found: {external_order_id}", status_code=404)
        return self.orders[external_order_id]

    async def update_stock(
        self,
        external_product_id: str,
        quantity: int,
        external_variant_id: str | None = None,
    ) -> StockUpdateResult:
        self.stock_calls.append((external_product_id, quantity, external_variant_id))
        if self.stock_gate is not None:
            await self.stock_gate.wait()
        if self.stock_error is not None:
            raise self.stock_error
        return StockUpdateResult(
            success=True,
            external_product_id=external_product_id,
            external_variant_id=external_variant_id,
            quantity=quantity,
        )

    async def get_profile(self) -> dict[str, Any]:
        return {"shop_name": "fake"}

    def normalize_order(self, order: dict[str, Any]) -> RawOrder:
        return RawOrder.model_validate(order)


class FakeAdapters:
    """Adapter factory handing out one FakeAdapter per marketplace account."""

    def __init__(self) -> None:
        self.by_account: dict[uuid.UUID, FakeAdapter] = {}

    def for_account(self, account_id: uuid.UUID) -> FakeAdapter:
        return self.by_account.setdefault(account_id, FakeAdapter())

    def __call__(self, account: MarketplaceAccount) -> FakeAdapter:
        return self.for_account(account.id)


@pytest.fixture
def fake_adapters() -> FakeAdapters:
    return FakeAdapters()


@pytest_asyncio.fixture
async def engines(session_factory: async_sessionmaker[AsyncSession], fake_adapters: FakeAdapters) -> Engines:
    return build_engines(session_factory=session_factory, settings=get_settings(), adapter_factory=fake_adapters)


@pytest.fixture
def recorded_events(engines: Engines) -> list[Event]:
    events: list[Event] = []
    engines.bus.subscribe(ALL_EVENTS, events.append)
    return events


def make_raw_order(
    external_order_id: str,
    status: str,
    *,
    items: list[tuple[str | None, int, str]] | None = None,
    total: str = "0",
    email: str | None = None,
    **fields: Any,
) -> RawOrder:
    lines = [
        RawOrderItem(sku=sku, name=f"Item {sku}", quantity=qty, unit_price=Decimal(price), raw={"sku": sku})
        for sku, qty, price in (items or [])
    ]
    return RawOrder(
        external_order_id=external_order_id,
        status=status,
        total_amount=Decimal(total),
        customer_info={"name": "Buyer", "email": email},
        items=lines,
        **fields,
    )


@pytest.fixture
def raw_order():
    return make_raw_order


# --- seed data ---


class Seeder:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _save(self, *rows: Any) -> None:
        async with self._session_factory() as session:
            session.add_all(rows)
            await session.commit()

    async def user(self, username: str = "seller", *, is_active: bool = True) -> User:
        user = User(username=username, display_name=username.title(), is_active=is_active)
        await self._save(user)
        return user

    async def account(
        self,
        user: User,
        marketplace: MarketplaceCode = MarketplaceCode.SHOPEE,
        *,
        name: str | None = None,
        connected: bool = True,
    ) -> MarketplaceAccount:
        account = MarketplaceAccount(
            user_id=user.id,
            marketplace=marketplace,
            name=name or f"{marketplace.value.title()} store",
            is_connected=connected,
            credentials={},
        )
        await self._save(account)
        return account

    async def category(self, user: User, name: str = "Shoes") -> Category:
        category = Category(user_id=user.id, name=name)
        await self._save(category)
        return category

    async def product(
        self,
        user: User,
        sku: str,
        *,
        stock: int | None = None,
        category: Category | None = None,
    ) -> Product:
        product = Product(
            id=uuid.uuid4(),
            user_id=user.id,
            sku=sku,
            name=f"Product {sku}",
            category_id=category.id if category else None,
        )
        rows: list[Any] = [product]
        if stock is not None:
            rows.append(Inventory(product_id=product.id, variant_id=None, stock_quantity=stock))
        await self._save(*rows)
        return product

    async def variant(self, product: Product, sku: str, *, stock: int | None = None) -> ProductVariant:
        variant = ProductVariant(id=uuid.uuid4(), product_id=product.id, sku=sku, variant_name=f"Variant {sku}")
        await self._save(variant)
        if stock is not None:
            await self._save(Inventory(product_id=product.id, variant_id=variant.id, stock_quantity=stock))
        return variant

    async def listing(
        self,
        account: MarketplaceAccount,
        product: Product,
        external_product_id: str,
        *,
        variant: ProductVariant | None = None,
        external_variant_id: str | None = None,
    ) -> MarketplaceProduct:
        mapping = MarketplaceProduct(
            marketplace_account_id=account.id,
            product_id=product.id,
            variant_id=variant.id if variant else None,
            external_product_id=external_product_id,
            external_variant_id=external_variant_id,
        )
        await self._save(mapping)
        return mapping

    async def stock_rule(
        self,
        user: User,
        targets: list[MarketplaceAccount],
        *,
        name: str = "Sync all",
        scope: SyncScope = SyncScope.ALL_PRODUCTS,
        strategy: SyncStrategy = SyncStrategy.EXACT_MATCH,
        product_ids: list[uuid.UUID] | None = None,
        category_ids: list[uuid.UUID] | None = None,
        **params: Any,
    ) -> StockSyncRule:
        rule = StockSyncRule(
            user_id=user.id,
            name=name,
            scope=scope,
            strategy=strategy,
            product_ids=[str(p) for p in product_ids] if product_ids else None,
            category_ids=[str(c) for c in category_ids] if category_ids else None,
            targets=[
                StockSyncRuleTarget(marketplace_account_id=a.id, position=i) for i, a in enumerate(targets)
            ],
            **params,
        )
        await self._save(rule)
        return rule

    async def automation_rule(
        self,
        user: User,
        *,
        name: str = "Rule",
        priority: int = 0,
        conditions: list[tuple[str, str, str]] | None = None,
        actions: list[tuple[str, str | None]] | None = None,
        is_active: bool = True,
    ) -> AutomationRule:
        rule = AutomationRule(
            user_id=user.id,
            name=name,
            priority=priority,
            is_active=is_active,
            conditions=[
                AutomationCondition(position=i, field=f, operator=op, value=v)
                for i, (f, op, v) in enumerate(conditions or [])
            ],
            actions=[
                AutomationAction(position=i, action_type=t, action_value=v)
                for i, (t, v) in enumerate(actions or [])
            ],
        )
        await self._save(rule)
        return rule

    async def order(
        self,
        user: User,
        account: MarketplaceAccount,
        external_order_id: str = "EXT-1",
        *,
        status: OrderStatus = OrderStatus.PENDING,
        total: str = "0",
        email: str | None = None,
    ) -> Order:
        order = Order(
            id=uuid.uuid4(),
            user_id=user.id,
            marketplace_account_id=account.id,
            external_order_id=external_order_id,
            order_number=f"{account.marketplace.value}-{external_order_id}",
            status=status,
            total_amount=Decimal(total),
            customer_info={"email": email},
            tags=[],
        )
        history = OrderStatusHistory(order_id=order.id, sequence=1, status=status, actor=StatusActor.SYSTEM)
        await self._save(order, history)
        return order


@pytest.fixture
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(session_factory)
