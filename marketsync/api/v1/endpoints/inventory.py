from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.api.v1.deps import begin_tx, get_engines, http_error
from marketsync.core.db import get_session
from marketsync.core.security import get_current_user
from marketsync.models.user import User
from marketsync.schemas.inventory import InventoryAdjustIn, InventoryChangeOut
from marketsync.services.inventory import adjust_inventory
from marketsync.services.runtime import Engines


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/adjust", response_model=InventoryChangeOut)
async def adjust_stock(
    data: InventoryAdjustIn,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    engines: Engines = Depends(get_engines),
) -> InventoryChangeOut:
    try:
        async with begin_tx(session):
            change = await adjust_inventory(
                session,
                actor=user.username,
                user_id=user.id,
                product_id=data.product_id,
                variant_id=data.variant_id,
                quantity=data.quantity,
                delta=data.delta,
                reason=data.reason,
            )
    except ValueError as e:
        raise http_error(e) from e

    # Pushes to marketplaces run after the adjustment is committed.
    try:
        await engines.stock_sync.on_inventory_change(change)
    except Exception:
        logger.exception("Stock sync after manual adjustment of %s failed", change.inventory_id)

    return InventoryChangeOut(
        inventory_id=change.inventory_id,
        product_id=change.product_id,
        variant_id=change.variant_id,
        stock_before=change.stock_before,
        stock_after=change.stock_after,
        available=change.available,
    )
