from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from marketsync.core.config import Settings, get_settings
from marketsync.core.enums import EventType, MarketplaceCode, OrderStatus, StatusActor
from marketsync.core.errors import AdapterError, NotFoundError, SkippedDuplicate, ValidationError
from marketsync.integrations.base import MarketplaceAdapter
from marketsync.integrations.factory import create_adapter
from marketsync.models.base import utcnow
from marketsync.models.marketplace_account import MarketplaceAccount
from marketsync.models.marketplace_product import MarketplaceProduct
from marketsync.models.order import Order, OrderLineItem
from marketsync.models.product import Product, ProductVariant
from marketsync.models.user import User
from marketsync.schemas.marketplace import RawOrder, RawOrderItem
from marketsync.services.automation import AutomationEvaluator, OrderFacts
from marketsync.services.events import EventBus
from marketsync.services.guards import KeyedGuard
from marketsync.services.inventory import InventoryChange, decrement_for_order
from marketsync.services.orders import (
    StatusChange,
    add_tag_to_order,
    apply_status_change,
    assign_order_to_user,
    get_order_for_user,
    record_initial_status,
)
from marketsync.services.status_mapping import normalize_status
from marketsync.services.stock_sync import StockSyncEngine


logger = logging.getLogger(__name__)

AdapterFactory = Callable[[MarketplaceAccount], MarketplaceAdapter]

# First-page upstream answers that mean the account itself is unusable.
SETUP_FAILURE_STATUS_CODES = {401, 403}

MONITORED_STATUSES = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
)


def generate_order_number(marketplace: MarketplaceCode | str, external_order_id: str) -> str:
    """Display-only number; identity is (account, external order id)."""
    suffix = str(int(time.time() * 1000))[-6:]
    return f"{str(marketplace).upper()}-{external_order_id}-{suffix}"


@dataclass(slots=True)
class ItemResult:
    external_order_id: str
    ok: bool
    action: str | None = None
    order_id: uuid.UUID | None = None
    error: str | None = None


@dataclass(slots=True)
class ReconcileResult:
    marketplace_account_id: uuid.UUID
    synced: int = 0
    failed: int = 0
    skipped: bool = False
    pages_fetched: int = 0
    page_error: str | None = None
    items: list[ItemResult] = field(default_factory=list)


@dataclass(slots=True)
class StatusMonitorResult:
    checked: int = 0
    changed: int = 0
    failed: int = 0


@dataclass(slots=True)
class _AppliedOrder:
    action: str
    facts: OrderFacts
    status_changes: list[StatusChange] = field(default_factory=list)
    inventory_changes: list[InventoryChange] = field(default_factory=list)


class OrderReconciliationEngine:
    """
    Pulls marketplace order feeds into canonical orders.

    One run per marketplace account at a time; an overlapping trigger for the
    same account is skipped. Orders within a run are applied sequentially, each
    in its own transaction, so inventory decrements are deterministic.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession],
        bus: EventBus,
        automation: AutomationEvaluator | None = None,
        stock_sync: StockSyncEngine | None = None,
        adapter_factory: AdapterFactory | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._bus = bus
        self._automation = automation
        self._stock_sync = stock_sync
        self._settings = settings or get_settings()
        self._adapter_factory = adapter_factory or (lambda account: create_adapter(account, self._settings))
        self.guard = KeyedGuard("order-reconciliation")

    # --- feed reconciliation ---

    async def reconcile(
        self,
        account_id: uuid.UUID,
        *,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        status: str | None = None,
    ) -> ReconcileResult:
        try:
            async with self.guard.hold(account_id):
                return await self._reconcile(account_id, date_from=date_from, date_to=date_to, status=status)
        except SkippedDuplicate:
            logger.info("Order reconciliation already running for account %s; skipping", account_id)
            return ReconcileResult(marketplace_account_id=account_id, skipped=True)

    async def _load_account(self, account_id: uuid.UUID) -> MarketplaceAccount:
        async with self._session_factory() as session:
            account = await session.get(MarketplaceAccount, account_id)
        if account is None:
            raise NotFoundError(f"Marketplace account not found: {account_id}")
        return account

    async def _reconcile(
        self,
        account_id: uuid.UUID,
        *,
        date_from: datetime | None,
        date_to: datetime | None,
        status: str | None,
    ) -> ReconcileResult:
        account = await self._load_account(account_id)
        if not account.is_connected:
            err = ValidationError(f"Marketplace account is not connected: {account_id}")
            await self._emit_sync_failed(account, err)
            raise err

        try:
            adapter = self._adapter_factory(account)
        except Exception as e:
            await self._emit_sync_failed(account, e)
            raise

        date_to = date_to or utcnow()
        date_from = date_from or date_to - timedelta(hours=self._settings.order_sync_lookback_hours)
        result = ReconcileResult(marketplace_account_id=account.id)
        logger.info("Syncing %s orders for account %s", account.marketplace, account.id)

        page = 1
        while page <= self._settings.order_sync_max_pages:
            try:
                batch = await adapter.get_orders(
                    page=page,
                    limit=self._settings.order_sync_page_size,
                    date_from=date_from,
                    date_to=date_to,
                    status=status,
                )
            except AdapterError as e:
                if page == 1 and e.status_code in SETUP_FAILURE_STATUS_CODES:
                    await self._emit_sync_failed(account, e)
                    raise
                logger.warning("Fetching orders page %s for account %s failed: %s", page, account.id, e)
                result.page_error = str(e)
                break
            except Exception as e:
                logger.exception("Fetching orders page %s for account %s failed", page, account.id)
                result.page_error = str(e) or type(e).__name__
                break

            result.pages_fetched += 1
            for raw in batch.data:
                item = await self.reconcile_order(account, raw)
                result.items.append(item)
                if item.ok:
                    result.synced += 1
                else:
                    result.failed += 1

            if not batch.has_more or not batch.data:
                break
            page += 1

        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(MarketplaceAccount, account.id)
                if row is not None:
                    row.last_order_sync_at = utcnow()

        logger.info(
            "Order sync completed for account %s: %s synced, %s failed",
            account.id,
            result.synced,
            result.failed,
        )
        await self._bus.emit(
            EventType.ORDER_SYNC_COMPLETED,
            user_id=account.user_id,
            payload={
                "marketplaceAccountId": str(account.id),
                "marketplace": str(account.marketplace),
                "totalSynced": result.synced,
                "totalErrors": result.failed,
                "pagesFetched": result.pages_fetched,
                "pageError": result.page_error,
            },
        )
        return result

    async def _emit_sync_failed(self, account: MarketplaceAccount, error: Exception) -> None:
        logger.error("Order sync failed for account %s: %s", account.id, error)
        await self._bus.emit(
            EventType.ORDER_SYNC_FAILED,
            user_id=account.user_id,
            payload={
                "marketplaceAccountId": str(account.id),
                "marketplace": str(account.marketplace),
                "error": str(error),
            },
        )

    async def reconcile_order(self, account: MarketplaceAccount, raw: RawOrder) -> ItemResult:
        """Apply one raw order; a failure is reported in the result, never raised."""
        try:
            applied = await self._apply_raw_order(account, raw)
        except Exception as e:
            logger.exception("Failed to reconcile order %s for account %s", raw.external_order_id, account.id)
            return ItemResult(external_order_id=raw.external_order_id, ok=False, error=str(e) or type(e).__name__)

        for change in applied.status_changes:
            await self._bus.emit(EventType.ORDER_STATUS_CHANGED, user_id=change.user_id, payload=change.as_payload())

        if self._automation is not None:
            try:
                await self._automation.evaluate(applied.facts)
            except Exception:
                logger.exception("Automation failed for order %s", applied.facts.order_id)

        if self._stock_sync is not None:
            for inv_change in applied.inventory_changes:
                try:
                    await self._stock_sync.on_inventory_change(inv_change)
                except Exception:
                    logger.exception("Stock sync after order %s failed", applied.facts.order_id)

        return ItemResult(
            external_order_id=raw.external_order_id,
            ok=True,
            action=applied.action,
            order_id=applied.facts.order_id,
        )

    async def _apply_raw_order(self, account: MarketplaceAccount, raw: RawOrder) -> _AppliedOrder:
        external_id = raw.external_order_id.strip()
        if not external_id:
            raise ValidationError("Marketplace order has no external id")
        marketplace = MarketplaceCode(str(account.marketplace))
        new_status = normalize_status(marketplace, raw.status)

        async with self._session_factory() as session:
            async with session.begin():
                order = (
                    await session.execute(
                        select(Order)
                        .where(
                            Order.marketplace_account_id == account.id,
                            Order.external_order_id == external_id,
                        )
                        .with_for_update()
                    )
                ).scalar_one_or_none()

                if order is None:
                    applied = await self._create_order(session, account, raw, external_id, new_status)
                else:
                    applied = await self._update_order(session, order, raw, new_status, marketplace)
        return applied

    async def _create_order(
        self,
        session: AsyncSession,
        account: MarketplaceAccount,
        raw: RawOrder,
        external_id: str,
        status: OrderStatus,
    ) -> _AppliedOrder:
        marketplace = MarketplaceCode(str(account.marketplace))
        order = Order(
            id=uuid.uuid4(),
            user_id=account.user_id,
            marketplace_account_id=account.id,
            external_order_id=external_id,
            order_number=generate_order_number(marketplace, external_id),
            status=status,
            total_amount=raw.total_amount,
            shipping_cost=raw.shipping_cost,
            customer_info=raw.customer_info or {},
            shipping_address=raw.shipping_address,
            order_date=raw.order_date or utcnow(),
            notes=raw.notes,
            tags=[],
        )
        session.add(order)

        lines: list[OrderLineItem] = []
        for position, item in enumerate(raw.items):
            product_id, variant_id, variant_name = await self._resolve_item(session, account, item)
            if product_id is None:
                logger.info("Unresolved line item %r on order %s; keeping raw payload", item.sku, external_id)
            line = OrderLineItem(
                order_id=order.id,
                position=position,
                product_id=product_id,
                variant_id=variant_id,
                sku=item.sku,
                product_name=item.name,
                variant_name=variant_name or item.variant_name,
                external_product_id=item.external_product_id,
                external_variant_id=item.external_variant_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total_price=item.total_price if item.total_price is not None else item.unit_price * item.quantity,
                raw_payload=item.raw or item.model_dump(mode="json", exclude={"raw"}),
            )
            session.add(line)
            lines.append(line)

        await session.flush()
        initial = await record_initial_status(session, order=order, reason=f"Imported from {marketplace} ({raw.status})")

        applied = _AppliedOrder(action="created", facts=OrderFacts.from_order(order, marketplace))
        for line in lines:
            if line.product_id is None:
                continue
            change = await decrement_for_order(
                session,
                product_id=line.product_id,
                variant_id=line.variant_id,
                quantity=line.quantity,
                order_id=order.id,
                reason=f"Order {order.order_number}",
            )
            if change is not None:
                applied.inventory_changes.append(change)
        logger.debug("Created order %s with initial status %s", order.id, initial.status)
        return applied

    async def _update_order(
        self,
        session: AsyncSession,
        order: Order,
        raw: RawOrder,
        status: OrderStatus,
        marketplace: MarketplaceCode,
    ) -> _AppliedOrder:
        changes: list[StatusChange] = []
        change = await apply_status_change(
            session,
            order=order,
            new_status=status,
            actor=StatusActor.SYSTEM,
            reason=f"Marketplace status {raw.status}",
        )
        if change is not None:
            changes.append(change)

        # The marketplace is the source of truth for mutable order fields.
        order.total_amount = raw.total_amount
        order.shipping_cost = raw.shipping_cost
        if raw.customer_info:
            order.customer_info = raw.customer_info
        if raw.shipping_address:
            order.shipping_address = raw.shipping_address
        if raw.order_date is not None:
            order.order_date = raw.order_date
        if raw.notes is not None:
            order.notes = raw.notes
        await session.flush()

        return _AppliedOrder(
            action="updated",
            facts=OrderFacts.from_order(order, marketplace),
            status_changes=changes,
        )

    async def _resolve_item(
        self,
        session: AsyncSession,
        account: MarketplaceAccount,
        item: RawOrderItem,
    ) -> tuple[uuid.UUID | None, uuid.UUID | None, str | None]:
        """Best effort: marketplace listing mapping, then variant SKU, then product SKU."""
        if item.external_product_id:
            stmt = select(MarketplaceProduct).where(
                MarketplaceProduct.marketplace_account_id == account.id,
                MarketplaceProduct.external_product_id == item.external_product_id,
            )
            if item.external_variant_id:
                stmt = stmt.where(MarketplaceProduct.external_variant_id == item.external_variant_id)
            mapping = (await session.execute(stmt.limit(1))).scalars().first()
            if mapping is not None:
                variant_name = None
                if mapping.variant_id is not None:
                    variant = await session.get(ProductVariant, mapping.variant_id)
                    variant_name = variant.variant_name if variant else None
                return mapping.product_id, mapping.variant_id, variant_name

        if not item.sku:
            return None, None, None

        variant = (
            await session.execute(
                select(ProductVariant)
                .join(Product, Product.id == ProductVariant.product_id)
                .where(Product.user_id == account.user_id, ProductVariant.sku == item.sku)
                .limit(1)
            )
        ).scalars().first()
        if variant is not None:
            return variant.product_id, variant.id, variant.variant_name

        product_id = (
            await session.execute(
                select(Product.id).where(Product.user_id == account.user_id, Product.sku == item.sku).limit(1)
            )
        ).scalars().first()
        return product_id, None, None

    async def reconcile_all_accounts(self) -> dict[uuid.UUID, ReconcileResult | BaseException]:
        async with self._session_factory() as session:
            account_ids = (
                await session.execute(
                    select(MarketplaceAccount.id)
                    .join(User, User.id == MarketplaceAccount.user_id)
                    .where(MarketplaceAccount.is_connected.is_(True), User.is_active.is_(True))
                    .order_by(MarketplaceAccount.created_at.asc())
                )
            ).scalars().all()

        if not account_ids:
            return {}
        logger.info("Starting periodic order sync for %s accounts", len(account_ids))
        outcomes = await asyncio.gather(*(self.reconcile(a) for a in account_ids), return_exceptions=True)

        results: dict[uuid.UUID, ReconcileResult | BaseException] = {}
        for account_id, outcome in zip(account_ids, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("Order sync for account %s failed: %s", account_id, outcome)
            results[account_id] = outcome
        failed = sum(1 for r in results.values() if isinstance(r, BaseException))
        logger.info("Periodic order sync completed: %s successful, %s failed", len(results) - failed, failed)
        return results

    # --- status monitor ---

    async def refresh_order_statuses(self, *, batch_size: int | None = None) -> StatusMonitorResult:
        """Re-fetch recently active, non-terminal orders and apply marketplace status changes."""
        limit = batch_size or self._settings.order_status_monitor_batch_size
        since = utcnow() - timedelta(hours=24)
        async with self._session_factory() as session:
            orders = (
                await session.execute(
                    select(Order)
                    .join(MarketplaceAccount, MarketplaceAccount.id == Order.marketplace_account_id)
                    .where(
                        Order.status.in_(MONITORED_STATUSES),
                        Order.updated_at >= since,
                        MarketplaceAccount.is_connected.is_(True),
                    )
                    .options(selectinload(Order.marketplace_account))
                    .order_by(Order.updated_at.asc())
                    .limit(limit)
                )
            ).scalars().all()

        result = StatusMonitorResult()
        adapters: dict[uuid.UUID, MarketplaceAdapter] = {}
        for order in orders:
            result.checked += 1
            account = order.marketplace_account
            try:
                adapter = adapters.get(account.id)
                if adapter is None:
                    adapter = adapters[account.id] = self._adapter_factory(account)
                raw = await adapter.get_order(order.external_order_id)
                new_status = normalize_status(account.marketplace, raw.status)
                change = await self._apply_marketplace_status(order.id, new_status, raw.status)
            except Exception:
                result.failed += 1
                logger.exception("Failed to check status for order %s", order.id)
                continue
            if change is not None:
                result.changed += 1
                await self._bus.emit(EventType.ORDER_STATUS_CHANGED, user_id=change.user_id, payload=change.as_payload())
        return result

    async def _apply_marketplace_status(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        token: str | None,
    ) -> StatusChange | None:
        async with self._session_factory() as session:
            async with session.begin():
                order = (
                    await session.execute(select(Order).where(Order.id == order_id).with_for_update())
                ).scalar_one_or_none()
                if order is None:
                    return None
                return await apply_status_change(
                    session,
                    order=order,
                    new_status=new_status,
                    actor=StatusActor.SYSTEM,
                    reason=f"Marketplace status {token}",
                )

    # --- manual operations ---

    async def update_order_status(
        self,
        *,
        user_id: uuid.UUID,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        changed_by: str,
        reason: str | None = None,
    ) -> Order:
        async with self._session_factory() as session:
            async with session.begin():
                order = await get_order_for_user(session, order_id=order_id, user_id=user_id, for_update=True)
                change = await apply_status_change(
                    session,
                    order=order,
                    new_status=new_status,
                    actor=StatusActor.USER,
                    changed_by=changed_by,
                    reason=reason,
                )
        if change is not None:
            await self._bus.emit(EventType.ORDER_STATUS_CHANGED, user_id=change.user_id, payload=change.as_payload())
        return order

    async def assign_order(self, *, user_id: uuid.UUID, order_id: uuid.UUID, assignee_id: uuid.UUID | None) -> Order:
        async with self._session_factory() as session:
            async with session.begin():
                order = await get_order_for_user(session, order_id=order_id, user_id=user_id, for_update=True)
                await assign_order_to_user(session, order=order, assignee_id=assignee_id)
        return order

    async def add_tag(self, *, user_id: uuid.UUID, order_id: uuid.UUID, tag: str) -> Order:
        async with self._session_factory() as session:
            async with session.begin():
                order = await get_order_for_user(session, order_id=order_id, user_id=user_id, for_update=True)
                add_tag_to_order(order, tag)
        return order
