from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from marketsync.core.config import Settings, get_settings
from marketsync.core.enums import EventType, MarketplaceProductSyncStatus, SyncScope, SyncStrategy
from marketsync.core.errors import (
    AdapterError,
    FormulaEvaluationError,
    NotFoundError,
    SkippedDuplicate,
    ValidationError,
)
from marketsync.integrations.base import MarketplaceAdapter
from marketsync.integrations.factory import create_adapter
from marketsync.models.base import utcnow
from marketsync.models.inventory import Inventory
from marketsync.models.marketplace_account import MarketplaceAccount
from marketsync.models.marketplace_product import MarketplaceProduct
from marketsync.models.product import Category, Product
from marketsync.models.stock_sync import StockSyncLog, StockSyncRule, StockSyncRuleTarget
from marketsync.schemas.stock_sync import StockSyncRuleIn
from marketsync.services.audit import audit_log
from marketsync.services.events import EventBus
from marketsync.services.guards import KeyedGuard
from marketsync.services.inventory import InventoryChange
from marketsync.services.stock_formula import evaluate_formula, parse_formula


logger = logging.getLogger(__name__)

SYNC_TIME_RANGES: dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

AdapterFactory = Callable[[MarketplaceAccount], MarketplaceAdapter]


def compute_target_stock(
    strategy: SyncStrategy,
    source_stock: int,
    *,
    percentage: Decimal | float | int | None = None,
    offset: int | None = None,
    minimum: int | None = None,
    formula: str | None = None,
) -> int:
    """
    Pure mapping from source stock to the stock pushed to a marketplace.

    Missing parameters fall back to the neutral value (100%, offset 0, minimum 0).
    A custom formula that fails to parse or evaluate falls back to the source stock.
    """
    source = max(0, int(source_stock))

    if strategy == SyncStrategy.PERCENTAGE:
        pct = Decimal(str(percentage)) if percentage is not None else Decimal("100")
        value = (Decimal(source) * pct / Decimal("100")).to_integral_value(rounding=ROUND_FLOOR)
        return max(0, int(value))
    if strategy == SyncStrategy.FIXED_OFFSET:
        return max(0, source + int(offset or 0))
    if strategy == SyncStrategy.MINIMUM_THRESHOLD:
        return max(int(minimum or 0), source)
    if strategy == SyncStrategy.CUSTOM_FORMULA:
        try:
            return evaluate_formula(formula or "", stock=source)
        except FormulaEvaluationError as e:
            logger.warning("Custom stock formula %r failed (%s); using exact match", formula, e)
            return source
    return source


def compute_rule_target(rule: StockSyncRule, source_stock: int) -> int:
    return compute_target_stock(
        rule.strategy,
        source_stock,
        percentage=rule.sync_percentage,
        offset=rule.sync_offset,
        minimum=rule.minimum_stock,
        formula=rule.custom_formula,
    )


def rule_matches_product(rule: StockSyncRule, *, product_id: uuid.UUID, category_id: uuid.UUID | None) -> bool:
    if rule.scope == SyncScope.ALL_PRODUCTS:
        return True
    if rule.scope == SyncScope.SPECIFIC_PRODUCTS:
        return str(product_id) in {str(p) for p in rule.product_ids or []}
    if rule.scope == SyncScope.CATEGORY:
        return category_id is not None and str(category_id) in {str(c) for c in rule.category_ids or []}
    return False


@dataclass(slots=True)
class TargetResult:
    marketplace_account_id: uuid.UUID
    marketplace: str
    success: bool
    target_stock: int | None = None
    skipped: bool = False
    error: str | None = None
    mapping_id: uuid.UUID | None = None

    def as_json(self) -> dict[str, Any]:
        return {
            "marketplaceAccountId": str(self.marketplace_account_id),
            "marketplace": self.marketplace,
            "success": self.success,
            "newStock": self.target_stock,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass(slots=True)
class RuleSyncResult:
    rule_id: uuid.UUID
    product_id: uuid.UUID
    variant_id: uuid.UUID | None
    source_stock: int
    target_stock: int | None = None
    targets: list[TargetResult] = field(default_factory=list)
    skipped: bool = False
    error: str | None = None
    log_id: uuid.UUID | None = None

    @property
    def success_count(self) -> int:
        return sum(1 for t in self.targets if t.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for t in self.targets if not t.success and not t.skipped)


@dataclass(slots=True)
class ManualSyncItem:
    product_id: uuid.UUID
    variant_id: uuid.UUID | None
    results: list[RuleSyncResult] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class SyncStats:
    time_range: str
    total_syncs: int
    successful_syncs: int
    failed_syncs: int
    success_rate: float


class StockSyncEngine:
    """Propagates local stock levels to marketplace listings according to a user's sync rules."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession],
        bus: EventBus,
        adapter_factory: AdapterFactory | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._bus = bus
        self._settings = settings or get_settings()
        self._adapter_factory = adapter_factory or (lambda account: create_adapter(account, self._settings))
        self.guard = KeyedGuard("stock-sync")

    @staticmethod
    def sync_key(rule_id: uuid.UUID, product_id: uuid.UUID, variant_id: uuid.UUID | None) -> str:
        return f"{rule_id}-{product_id}-{variant_id or 'main'}"

    async def matching_rules(
        self,
        session: AsyncSession,
        *,
        user_id: uuid.UUID,
        product_id: uuid.UUID,
    ) -> list[StockSyncRule]:
        product = await session.get(Product, product_id)
        if product is None:
            return []
        rules = (
            await session.execute(
                select(StockSyncRule)
                .where(StockSyncRule.user_id == user_id, StockSyncRule.is_active.is_(True))
                .options(selectinload(StockSyncRule.targets).selectinload(StockSyncRuleTarget.marketplace_account))
                .order_by(StockSyncRule.created_at.asc())
            )
        ).scalars().all()
        return [r for r in rules if rule_matches_product(r, product_id=product.id, category_id=product.category_id)]

    async def on_inventory_change(self, change: InventoryChange) -> list[RuleSyncResult]:
        async with self._session_factory() as session:
            rules = await self.matching_rules(session, user_id=change.user_id, product_id=change.product_id)
        if not rules:
            logger.debug("No stock sync rules for product %s", change.product_id)
            return []

        results: list[RuleSyncResult] = []
        for rule in rules:
            results.append(
                await self.sync_rule(
                    rule,
                    product_id=change.product_id,
                    variant_id=change.variant_id,
                    source_stock=change.stock_after,
                    reason=change.reason,
                )
            )
        return results

    async def sync_rule(
        self,
        rule: StockSyncRule,
        *,
        product_id: uuid.UUID,
        variant_id: uuid.UUID | None,
        source_stock: int,
        reason: str,
    ) -> RuleSyncResult:
        key = self.sync_key(rule.id, product_id, variant_id)
        try:
            async with self.guard.hold(key):
                return await self._run_rule(
                    rule,
                    product_id=product_id,
                    variant_id=variant_id,
                    source_stock=source_stock,
                    reason=reason,
                )
        except SkippedDuplicate:
            logger.info("Stock sync already in flight for %s; skipping", key)
            return RuleSyncResult(
                rule_id=rule.id,
                product_id=product_id,
                variant_id=variant_id,
                source_stock=source_stock,
                skipped=True,
            )

    async def _load_mappings(
        self,
        *,
        product_id: uuid.UUID,
        variant_id: uuid.UUID | None,
        account_ids: Sequence[uuid.UUID],
    ) -> dict[uuid.UUID, MarketplaceProduct]:
        if not account_ids:
            return {}
        stmt = select(MarketplaceProduct).where(
            MarketplaceProduct.product_id == product_id,
            MarketplaceProduct.marketplace_account_id.in_(list(account_ids)),
        )
        if variant_id is None:
            stmt = stmt.where(MarketplaceProduct.variant_id.is_(None))
        else:
            stmt = stmt.where(MarketplaceProduct.variant_id == variant_id)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return {m.marketplace_account_id: m for m in rows}

    async def _push_target(self, account: MarketplaceAccount, mapping: MarketplaceProduct, target_stock: int) -> TargetResult:
        result = TargetResult(
            marketplace_account_id=account.id,
            marketplace=str(account.marketplace),
            success=False,
            target_stock=target_stock,
            mapping_id=mapping.id,
        )
        try:
            adapter = self._adapter_factory(account)
            pushed = await adapter.update_stock(mapping.external_product_id, target_stock, mapping.external_variant_id)
        except (AdapterError, ValidationError) as e:
            logger.warning("Stock push to account %s failed: %s", account.id, e)
            result.error = str(e)
            return result
        except Exception as e:
            logger.exception("Unexpected error pushing stock to account %s", account.id)
            result.error = str(e) or type(e).__name__
            return result

        result.success = bool(pushed.success)
        if not result.success:
            result.error = pushed.message or "Marketplace rejected the stock update"
        return result

    async def _run_rule(
        self,
        rule: StockSyncRule,
        *,
        product_id: uuid.UUID,
        variant_id: uuid.UUID | None,
        source_stock: int,
        reason: str,
    ) -> RuleSyncResult:
        outcome = RuleSyncResult(rule_id=rule.id, product_id=product_id, variant_id=variant_id, source_stock=source_stock)
        try:
            outcome.target_stock = compute_rule_target(rule, source_stock)
            accounts = [t.marketplace_account for t in rule.targets]
            mappings = await self._load_mappings(
                product_id=product_id,
                variant_id=variant_id,
                account_ids=[a.id for a in accounts],
            )

            for account in accounts:
                mapping = mappings.get(account.id)
                if mapping is None:
                    logger.warning("Product %s has no listing on account %s; skipping target", product_id, account.id)
                    outcome.targets.append(
                        TargetResult(
                            marketplace_account_id=account.id,
                            marketplace=str(account.marketplace),
                            success=False,
                            skipped=True,
                            error="No marketplace product mapping",
                        )
                    )
                    continue
                if not account.is_connected:
                    logger.warning("Account %s is disconnected; skipping target", account.id)
                    outcome.targets.append(
                        TargetResult(
                            marketplace_account_id=account.id,
                            marketplace=str(account.marketplace),
                            success=False,
                            skipped=True,
                            error="Marketplace account is not connected",
                        )
                    )
                    continue
                outcome.targets.append(await self._push_target(account, mapping, outcome.target_stock))

            outcome.log_id = await self._persist(rule, outcome, reason=reason)
        except Exception as e:
            logger.exception("Stock sync rule %s failed for product %s", rule.id, product_id)
            outcome.error = str(e) or type(e).__name__
            await self._bus.emit(
                EventType.STOCK_SYNC_FAILED,
                user_id=rule.user_id,
                payload={
                    "ruleId": str(rule.id),
                    "productId": str(product_id),
                    "variantId": str(variant_id) if variant_id else None,
                    "error": outcome.error,
                },
            )
            return outcome

        logger.info(
            "Stock sync rule %s completed with %s/%s successful targets",
            rule.id,
            outcome.success_count,
            len(outcome.targets),
        )
        await self._bus.emit(
            EventType.STOCK_SYNC_COMPLETED,
            user_id=rule.user_id,
            payload={
                "ruleId": str(rule.id),
                "productId": str(product_id),
                "variantId": str(variant_id) if variant_id else None,
                "targetStock": outcome.target_stock,
                "successCount": outcome.success_count,
                "failureCount": outcome.failure_count,
                "results": [t.as_json() for t in outcome.targets],
            },
        )
        return outcome

    async def _persist(self, rule: StockSyncRule, outcome: RuleSyncResult, *, reason: str) -> uuid.UUID:
        now = utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                for target in outcome.targets:
                    if target.skipped or target.mapping_id is None:
                        continue
                    mapping = await session.get(MarketplaceProduct, target.mapping_id)
                    if mapping is None:
                        continue
                    mapping.sync_status = (
                        MarketplaceProductSyncStatus.SUCCESS if target.success else MarketplaceProductSyncStatus.FAILED
                    )
                    mapping.last_synced_at = now

                log = StockSyncLog(
                    rule_id=rule.id,
                    user_id=rule.user_id,
                    product_id=outcome.product_id,
                    variant_id=outcome.variant_id,
                    source_stock=outcome.source_stock,
                    target_stock=outcome.target_stock or 0,
                    reason=reason[:500] if reason else None,
                    results=[t.as_json() for t in outcome.targets],
                    success_count=outcome.success_count,
                    failure_count=outcome.failure_count,
                    synced_at=now,
                )
                session.add(log)
                await session.flush()
                return log.id

    async def trigger_manual_sync(
        self,
        *,
        user_id: uuid.UUID,
        product_ids: Sequence[uuid.UUID],
        reason: str = "Manual sync",
    ) -> list[ManualSyncItem]:
        logger.info("Manual stock sync triggered by user %s for %s products", user_id, len(product_ids))
        async with self._session_factory() as session:
            owned = set(
                (
                    await session.execute(
                        select(Product.id).where(Product.user_id == user_id, Product.id.in_(list(product_ids)))
                    )
                ).scalars().all()
            )
            missing = [str(p) for p in product_ids if p not in owned]
            if missing:
                raise NotFoundError(f"Products not found: {', '.join(missing)}")
            rows = (
                await session.execute(
                    select(Inventory)
                    .where(Inventory.product_id.in_(list(product_ids)))
                    .order_by(Inventory.product_id, Inventory.created_at)
                )
            ).scalars().all()

        items: list[ManualSyncItem] = []
        for inv in rows:
            change = InventoryChange(
                user_id=user_id,
                inventory_id=inv.id,
                product_id=inv.product_id,
                variant_id=inv.variant_id,
                stock_before=inv.stock_quantity,
                stock_after=inv.stock_quantity,
                available=inv.available_quantity,
                reason=reason,
            )
            items.append(
                ManualSyncItem(
                    product_id=inv.product_id,
                    variant_id=inv.variant_id,
                    results=await self.on_inventory_change(change),
                )
            )
        return items

    async def sweep_recent_inventory(self, *, window_seconds: int | None = None, batch_size: int | None = None) -> int:
        """Re-run sync for inventory touched recently; backstop for missed change events."""
        window = window_seconds if window_seconds is not None else self._settings.stock_sync_sweep_window_seconds
        limit = batch_size if batch_size is not None else self._settings.stock_sync_sweep_batch_size
        since = utcnow() - timedelta(seconds=max(1, int(window)))

        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(Inventory, Product.user_id)
                    .join(Product, Product.id == Inventory.product_id)
                    .where(Inventory.last_updated >= since, Product.is_active.is_(True))
                    .order_by(Inventory.last_updated.asc())
                    .limit(max(1, int(limit)))
                )
            ).all()

        logger.info("Stock sync sweep found %s recently updated inventory rows", len(rows))
        for inv, owner_id in rows:
            await self.on_inventory_change(
                InventoryChange(
                    user_id=owner_id,
                    inventory_id=inv.id,
                    product_id=inv.product_id,
                    variant_id=inv.variant_id,
                    stock_before=inv.stock_quantity,
                    stock_after=inv.stock_quantity,
                    available=inv.available_quantity,
                    reason="Periodic sync check",
                )
            )
        return len(rows)


async def get_sync_stats(session: AsyncSession, *, user_id: uuid.UUID, time_range: str = "24h") -> SyncStats:
    span = SYNC_TIME_RANGES.get(time_range)
    if span is None:
        raise ValidationError(f"Unsupported time range: {time_range}")
    since = utcnow() - span

    total, ok, failed = (
        await session.execute(
            select(
                func.count(StockSyncLog.id),
                func.coalesce(func.sum(StockSyncLog.success_count), 0),
                func.coalesce(func.sum(StockSyncLog.failure_count), 0),
            ).where(StockSyncLog.user_id == user_id, StockSyncLog.synced_at >= since)
        )
    ).one()
    ok = int(ok or 0)
    failed = int(failed or 0)
    rate = round(ok / (ok + failed) * 100, 2) if ok > 0 else 0.0
    return SyncStats(
        time_range=time_range,
        total_syncs=int(total or 0),
        successful_syncs=ok,
        failed_syncs=failed,
        success_rate=rate,
    )


async def list_sync_logs(
    session: AsyncSession,
    *,
    user_id: uuid.UUID,
    rule_id: uuid.UUID | None = None,
    product_id: uuid.UUID | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[StockSyncLog]:
    stmt = select(StockSyncLog).where(StockSyncLog.user_id == user_id)
    if rule_id is not None:
        stmt = stmt.where(StockSyncLog.rule_id == rule_id)
    if product_id is not None:
        stmt = stmt.where(StockSyncLog.product_id == product_id)
    stmt = stmt.order_by(StockSyncLog.synced_at.desc()).limit(limit).offset(offset)
    return list((await session.execute(stmt)).scalars().all())


# --- rule management ---


async def _validate_rule_input(session: AsyncSession, *, user_id: uuid.UUID, data: StockSyncRuleIn) -> None:
    if data.scope == SyncScope.SPECIFIC_PRODUCTS:
        if not data.product_ids:
            raise ValidationError("SPECIFIC_PRODUCTS rules need at least one product id")
        found = set(
            (
                await session.execute(
                    select(Product.id).where(Product.user_id == user_id, Product.id.in_(data.product_ids))
                )
            ).scalars().all()
        )
        unknown = [str(p) for p in data.product_ids if p not in found]
        if unknown:
            raise ValidationError(f"Unknown products: {', '.join(unknown)}")
    elif data.scope == SyncScope.CATEGORY:
        if not data.category_ids:
            raise ValidationError("CATEGORY rules need at least one category id")
        found = set(
            (
                await session.execute(
                    select(Category.id).where(Category.user_id == user_id, Category.id.in_(data.category_ids))
                )
            ).scalars().all()
        )
        unknown = [str(c) for c in data.category_ids if c not in found]
        if unknown:
            raise ValidationError(f"Unknown categories: {', '.join(unknown)}")

    if data.strategy == SyncStrategy.PERCENTAGE:
        if data.sync_percentage is None or not (Decimal("0") <= data.sync_percentage <= Decimal("100")):
            raise ValidationError("PERCENTAGE rules need sync_percentage between 0 and 100")
    elif data.strategy == SyncStrategy.FIXED_OFFSET:
        if data.sync_offset is None:
            raise ValidationError("FIXED_OFFSET rules need sync_offset")
    elif data.strategy == SyncStrategy.MINIMUM_THRESHOLD:
        if data.minimum_stock is None or data.minimum_stock < 0:
            raise ValidationError("MINIMUM_THRESHOLD rules need a non-negative minimum_stock")
    elif data.strategy == SyncStrategy.CUSTOM_FORMULA:
        try:
            parse_formula(data.custom_formula or "")
        except FormulaEvaluationError as e:
            raise ValidationError(f"Invalid custom formula: {e}") from e

    if len(set(data.target_account_ids)) != len(data.target_account_ids):
        raise ValidationError("Duplicate target accounts")
    accounts = {
        a.id: a
        for a in (
            await session.execute(
                select(MarketplaceAccount).where(
                    MarketplaceAccount.user_id == user_id,
                    MarketplaceAccount.id.in_(data.target_account_ids),
                )
            )
        ).scalars().all()
    }
    for account_id in data.target_account_ids:
        account = accounts.get(account_id)
        if account is None:
            raise ValidationError(f"Unknown target account: {account_id}")
        if not account.is_connected:
            raise ValidationError(f"Target account is not connected: {account_id}")


def _apply_rule_fields(rule: StockSyncRule, data: StockSyncRuleIn) -> None:
    rule.name = data.name.strip()
    rule.description = data.description
    rule.scope = data.scope
    rule.product_ids = [str(p) for p in data.product_ids] if data.scope == SyncScope.SPECIFIC_PRODUCTS else None
    rule.category_ids = [str(c) for c in data.category_ids] if data.scope == SyncScope.CATEGORY else None
    rule.strategy = data.strategy
    rule.sync_percentage = data.sync_percentage
    rule.sync_offset = data.sync_offset
    rule.minimum_stock = data.minimum_stock
    rule.custom_formula = data.custom_formula.strip() if data.custom_formula else None
    rule.is_active = data.is_active


def _rule_snapshot(rule: StockSyncRule) -> dict[str, Any]:
    return {
        "name": rule.name,
        "scope": rule.scope,
        "product_ids": rule.product_ids,
        "category_ids": rule.category_ids,
        "strategy": rule.strategy,
        "sync_percentage": rule.sync_percentage,
        "sync_offset": rule.sync_offset,
        "minimum_stock": rule.minimum_stock,
        "custom_formula": rule.custom_formula,
        "is_active": rule.is_active,
        "targets": [t.marketplace_account_id for t in rule.targets],
    }


def _rule_query(user_id: uuid.UUID):
    return (
        select(StockSyncRule)
        .where(StockSyncRule.user_id == user_id)
        .options(selectinload(StockSyncRule.targets))
    )


async def list_stock_sync_rules(session: AsyncSession, *, user_id: uuid.UUID) -> list[StockSyncRule]:
    rows = await session.execute(_rule_query(user_id).order_by(StockSyncRule.created_at.asc()))
    return list(rows.scalars().all())


async def get_stock_sync_rule(session: AsyncSession, *, user_id: uuid.UUID, rule_id: uuid.UUID) -> StockSyncRule:
    rule = (await session.execute(_rule_query(user_id).where(StockSyncRule.id == rule_id))).scalar_one_or_none()
    if rule is None:
        raise NotFoundError("Stock sync rule not found")
    return rule


async def create_stock_sync_rule(
    session: AsyncSession,
    *,
    actor: str,
    user_id: uuid.UUID,
    data: StockSyncRuleIn,
) -> StockSyncRule:
    await _validate_rule_input(session, user_id=user_id, data=data)
    rule = StockSyncRule(user_id=user_id, targets=[])
    _apply_rule_fields(rule, data)
    rule.targets = [
        StockSyncRuleTarget(marketplace_account_id=account_id, position=i)
        for i, account_id in enumerate(data.target_account_ids)
    ]
    session.add(rule)
    await session.flush()
    await audit_log(
        session,
        actor=actor,
        entity_type="stock_sync_rule",
        entity_id=rule.id,
        action="create",
        after=_rule_snapshot(rule),
    )
    return rule


async def update_stock_sync_rule(
    session: AsyncSession,
    *,
    actor: str,
    user_id: uuid.UUID,
    rule_id: uuid.UUID,
    data: StockSyncRuleIn,
) -> StockSyncRule:
    rule = await get_stock_sync_rule(session, user_id=user_id, rule_id=rule_id)
    await _validate_rule_input(session, user_id=user_id, data=data)
    before = _rule_snapshot(rule)

    _apply_rule_fields(rule, data)
    # Keep rows for accounts that stay targeted; (rule, account) is unique.
    existing = {t.marketplace_account_id: t for t in rule.targets}
    targets: list[StockSyncRuleTarget] = []
    for i, account_id in enumerate(data.target_account_ids):
        target = existing.get(account_id) or StockSyncRuleTarget(marketplace_account_id=account_id)
        target.position = i
        targets.append(target)
    rule.targets = targets
    await session.flush()

    await audit_log(
        session,
        actor=actor,
        entity_type="stock_sync_rule",
        entity_id=rule.id,
        action="update",
        before=before,
        after=_rule_snapshot(rule),
    )
    return rule


async def delete_stock_sync_rule(
    session: AsyncSession,
    *,
    actor: str,
    user_id: uuid.UUID,
    rule_id: uuid.UUID,
) -> None:
    rule = await get_stock_sync_rule(session, user_id=user_id, rule_id=rule_id)
    before = _rule_snapshot(rule)
    await session.delete(rule)
    await audit_log(
        session,
        actor=actor,
        entity_type="stock_sync_rule",
        entity_id=rule_id,
        action="delete",
        before=before,
    )
