from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.api.v1.deps import begin_tx, get_engines, http_error
from marketsync.core.db import get_session
from marketsync.core.errors import NotFoundError
from marketsync.core.security import get_current_user
from marketsync.models.stock_sync import StockSyncRule
from marketsync.models.user import User
from marketsync.schemas.stock_sync import (
    StockSyncLogOut,
    StockSyncRuleIn,
    StockSyncRuleOut,
    StockSyncStatsOut,
    StockSyncTriggerIn,
    StockSyncTriggerItemOut,
    StockSyncTriggerOut,
    TimeRange,
)
from marketsync.services.runtime import Engines
from marketsync.services.stock_sync import (
    create_stock_sync_rule,
    delete_stock_sync_rule,
    get_stock_sync_rule,
    get_sync_stats,
    list_stock_sync_rules,
    list_sync_logs,
    update_stock_sync_rule,
)


router = APIRouter()


def _rule_out(rule: StockSyncRule) -> StockSyncRuleOut:
    return StockSyncRuleOut(
        id=rule.id,
        name=rule.name,
        description=rule.description,
        scope=rule.scope,
        product_ids=rule.product_ids,
        category_ids=rule.category_ids,
        strategy=rule.strategy,
        sync_percentage=rule.sync_percentage,
        sync_offset=rule.sync_offset,
        minimum_stock=rule.minimum_stock,
        custom_formula=rule.custom_formula,
        is_active=rule.is_active,
        target_account_ids=[t.marketplace_account_id for t in rule.targets],
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


@router.get("/rules", response_model=list[StockSyncRuleOut])
async def list_rules(
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> list[StockSyncRuleOut]:
    return [_rule_out(r) for r in await list_stock_sync_rules(session, user_id=user.id)]


@router.post("/rules", response_model=StockSyncRuleOut)
async def create_rule(
    data: StockSyncRuleIn,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> StockSyncRuleOut:
    try:
        async with begin_tx(session):
            rule = await create_stock_sync_rule(session, actor=user.username, user_id=user.id, data=data)
    except ValueError as e:
        raise http_error(e) from e
    return _rule_out(rule)


@router.get("/rules/{rule_id}", response_model=StockSyncRuleOut)
async def get_rule(
    rule_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> StockSyncRuleOut:
    try:
        rule = await get_stock_sync_rule(session, user_id=user.id, rule_id=rule_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Not found") from None
    return _rule_out(rule)


@router.put("/rules/{rule_id}", response_model=StockSyncRuleOut)
async def update_rule(
    rule_id: UUID,
    data: StockSyncRuleIn,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> StockSyncRuleOut:
    try:
        async with begin_tx(session):
            rule = await update_stock_sync_rule(
                session,
                actor=user.username,
                user_id=user.id,
                rule_id=rule_id,
                data=data,
            )
    except ValueError as e:
        raise http_error(e) from e
    return _rule_out(rule)


@router.delete("/rules/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> None:
    try:
        async with begin_tx(session):
            await delete_stock_sync_rule(session, actor=user.username, user_id=user.id, rule_id=rule_id)
    except ValueError as e:
        raise http_error(e) from e


@router.post("/trigger", response_model=StockSyncTriggerOut)
async def trigger_sync(
    data: StockSyncTriggerIn,
    user: User = Depends(get_current_user),
    engines: Engines = Depends(get_engines),
) -> StockSyncTriggerOut:
    try:
        items = await engines.stock_sync.trigger_manual_sync(
            user_id=user.id,
            product_ids=data.product_ids,
            reason=data.reason,
        )
    except ValueError as e:
        raise http_error(e) from e

    out = [
        StockSyncTriggerItemOut(
            product_id=item.product_id,
            variant_id=item.variant_id,
            rules_matched=len(item.results),
            rules_skipped=sum(1 for r in item.results if r.skipped),
            success_count=sum(r.success_count for r in item.results),
            failure_count=sum(r.failure_count for r in item.results),
        )
        for item in items
    ]
    return StockSyncTriggerOut(message=f"Stock sync completed for {len(data.product_ids)} products", items=out)


@router.get("/logs", response_model=list[StockSyncLogOut])
async def list_logs(
    rule_id: UUID | None = None,
    product_id: UUID | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> list[StockSyncLogOut]:
    rows = await list_sync_logs(
        session,
        user_id=user.id,
        rule_id=rule_id,
        product_id=product_id,
        limit=limit,
        offset=offset,
    )
    return [StockSyncLogOut.model_validate(r) for r in rows]


@router.get("/stats", response_model=StockSyncStatsOut)
async def sync_stats(
    time_range: TimeRange = "24h",
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> StockSyncStatsOut:
    try:
        stats = await get_sync_stats(session, user_id=user.id, time_range=time_range)
    except ValueError as e:
        raise http_error(e) from e
    return StockSyncStatsOut(
        time_range=stats.time_range,
        total_syncs=stats.total_syncs,
        successful_syncs=stats.successful_syncs,
        failed_syncs=stats.failed_syncs,
        success_rate=stats.success_rate,
    )
