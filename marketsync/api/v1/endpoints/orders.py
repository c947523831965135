from __future__ import annotations

from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.api.v1.deps import get_engines, http_error
from marketsync.core.db import get_session
from marketsync.core.enums import OrderStatus
from marketsync.core.errors import AdapterError, NotFoundError
from marketsync.core.security import get_current_user
from marketsync.models.marketplace_account import MarketplaceAccount
from marketsync.models.user import User
from marketsync.schemas.orders import (
    OrderAssignIn,
    OrderDetailOut,
    OrderOut,
    OrderStatusUpdateIn,
    OrderSyncIn,
    OrderTagIn,
    ReconcileItemResultOut,
    ReconcileResultOut,
)
from marketsync.services.orders import get_order_for_user, list_orders
from marketsync.services.runtime import Engines


router = APIRouter()


@router.post("/sync", response_model=ReconcileResultOut)
async def run_order_sync(
    data: OrderSyncIn,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    engines: Engines = Depends(get_engines),
) -> ReconcileResultOut:
    account = await session.get(MarketplaceAccount, data.marketplace_account_id)
    if account is None or account.user_id != user.id:
        raise HTTPException(status_code=404, detail="Marketplace account not found")
    try:
        result = await engines.orders.reconcile(
            account.id,
            date_from=data.date_from,
            date_to=data.date_to,
            status=data.status,
        )
    except (ValueError, AdapterError) as e:
        raise http_error(e) from e

    return ReconcileResultOut(
        marketplace_account_id=result.marketplace_account_id,
        synced=result.synced,
        failed=result.failed,
        skipped=result.skipped,
        pages_fetched=result.pages_fetched,
        page_error=result.page_error,
        items=[ReconcileItemResultOut(**asdict(i)) for i in result.items],
    )


@router.get("", response_model=list[OrderOut])
async def list_orders_endpoint(
    status: OrderStatus | None = None,
    marketplace_account_id: UUID | None = None,
    q: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> list[OrderOut]:
    rows = await list_orders(
        session,
        user_id=user.id,
        status=status,
        marketplace_account_id=marketplace_account_id,
        q=q,
        limit=limit,
        offset=offset,
    )
    return [OrderOut.model_validate(r) for r in rows]


@router.get("/{order_id}", response_model=OrderDetailOut)
async def get_order(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> OrderDetailOut:
    try:
        order = await get_order_for_user(session, order_id=order_id, user_id=user.id, with_details=True)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Not found") from None
    return OrderDetailOut.model_validate(order)


@router.patch("/{order_id}/status", response_model=OrderOut)
async def update_order_status(
    order_id: UUID,
    data: OrderStatusUpdateIn,
    user: User = Depends(get_current_user),
    engines: Engines = Depends(get_engines),
) -> OrderOut:
    try:
        order = await engines.orders.update_order_status(
            user_id=user.id,
            order_id=order_id,
            new_status=data.status,
            changed_by=user.username,
            reason=data.reason,
        )
    except ValueError as e:
        raise http_error(e) from e
    return OrderOut.model_validate(order)


@router.patch("/{order_id}/assign", response_model=OrderOut)
async def assign_order(
    order_id: UUID,
    data: OrderAssignIn,
    user: User = Depends(get_current_user),
    engines: Engines = Depends(get_engines),
) -> OrderOut:
    try:
        order = await engines.orders.assign_order(user_id=user.id, order_id=order_id, assignee_id=data.user_id)
    except ValueError as e:
        raise http_error(e) from e
    return OrderOut.model_validate(order)


@router.post("/{order_id}/tags", response_model=OrderOut)
async def add_order_tag(
    order_id: UUID,
    data: OrderTagIn,
    user: User = Depends(get_current_user),
    engines: Engines = Depends(get_engines),
) -> OrderOut:
    try:
        order = await engines.orders.add_tag(user_id=user.id, order_id=order_id, tag=data.tag)
    except ValueError as e:
        raise http_error(e) from e
    return OrderOut.model_validate(order)
