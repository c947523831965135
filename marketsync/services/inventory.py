from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from marketsync.core.enums import StockMovementType
from marketsync.core.errors import NotFoundError, ValidationError
from marketsync.models.base import utcnow
from marketsync.models.inventory import Inventory, StockMovement
from marketsync.services.audit import audit_log


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InventoryChange:
    """What the stock sync engine consumes after an inventory row was mutated."""

    user_id: uuid.UUID
    inventory_id: uuid.UUID
    product_id: uuid.UUID
    variant_id: uuid.UUID | None
    stock_before: int
    stock_after: int
    available: int
    reason: str


async def _lock_inventory(
    session: AsyncSession,
    *,
    product_id: uuid.UUID,
    variant_id: uuid.UUID | None,
) -> Inventory | None:
    stmt = (
        select(Inventory)
        .where(Inventory.product_id == product_id)
        .options(selectinload(Inventory.product))
        .with_for_update()
    )
    if variant_id is None:
        stmt = stmt.where(Inventory.variant_id.is_(None))
    else:
        stmt = stmt.where(Inventory.variant_id == variant_id)
    return (await session.execute(stmt)).scalar_one_or_none()


def _record_movement(
    session: AsyncSession,
    *,
    inv: Inventory,
    movement_type: StockMovementType,
    quantity: int,
    stock_before: int,
    actor: str,
    reason: str,
    order_id: uuid.UUID | None,
) -> InventoryChange:
    inv.last_updated = utcnow()
    session.add(
        StockMovement(
            inventory_id=inv.id,
            product_id=inv.product_id,
            variant_id=inv.variant_id,
            order_id=order_id,
            movement_type=movement_type,
            quantity=quantity,
            stock_before=stock_before,
            stock_after=inv.stock_quantity,
            actor=actor,
            reason=reason,
        )
    )
    return InventoryChange(
        user_id=inv.product.user_id,
        inventory_id=inv.id,
        product_id=inv.product_id,
        variant_id=inv.variant_id,
        stock_before=stock_before,
        stock_after=inv.stock_quantity,
        available=inv.available_quantity,
        reason=reason,
    )


async def decrement_for_order(
    session: AsyncSession,
    *,
    product_id: uuid.UUID,
    variant_id: uuid.UUID | None,
    quantity: int,
    order_id: uuid.UUID,
    reason: str,
) -> InventoryChange | None:
    """
    Decrement stock for one resolved order line inside the caller's transaction.

    Returns None when no inventory row exists for the product/variant. Stock is
    floored at zero; an oversell is logged but does not fail the order.
    """
    if quantity <= 0:
        return None
    inv = await _lock_inventory(session, product_id=product_id, variant_id=variant_id)
    if inv is None:
        logger.warning("No inventory row for product %s variant %s; skipping decrement", product_id, variant_id)
        return None

    before = int(inv.stock_quantity)
    if quantity > before:
        logger.warning(
            "Oversell on inventory %s: ordered %s, stock %s",
            inv.id,
            quantity,
            before,
        )
    inv.stock_quantity = max(0, before - quantity)
    return _record_movement(
        session,
        inv=inv,
        movement_type=StockMovementType.OUT,
        quantity=quantity,
        stock_before=before,
        actor="system",
        reason=reason,
        order_id=order_id,
    )


async def adjust_inventory(
    session: AsyncSession,
    *,
    actor: str,
    user_id: uuid.UUID,
    product_id: uuid.UUID,
    variant_id: uuid.UUID | None,
    quantity: int | None = None,
    delta: int | None = None,
    reason: str,
) -> InventoryChange:
    """Manual stock update: either an absolute `quantity` or a signed `delta`."""
    if (quantity is None) == (delta is None):
        raise ValidationError("Provide exactly one of quantity or delta")

    inv = await _lock_inventory(session, product_id=product_id, variant_id=variant_id)
    if inv is None or inv.product.user_id != user_id:
        raise NotFoundError("Inventory not found")

    before = int(inv.stock_quantity)
    new_stock = int(quantity) if quantity is not None else before + int(delta or 0)
    if new_stock < 0:
        raise ValidationError(f"Stock cannot go below zero (current {before}, requested {new_stock})")

    if new_stock > before:
        movement_type = StockMovementType.IN
    elif new_stock < before:
        movement_type = StockMovementType.OUT
    else:
        movement_type = StockMovementType.ADJUSTMENT
    inv.stock_quantity = new_stock

    change = _record_movement(
        session,
        inv=inv,
        movement_type=movement_type,
        quantity=abs(new_stock - before),
        stock_before=before,
        actor=actor,
        reason=reason,
        order_id=None,
    )
    await audit_log(
        session,
        actor=actor,
        entity_type="inventory",
        entity_id=inv.id,
        action="stock_adjust",
        before={"stock_quantity": before},
        after={"stock_quantity": new_stock, "reason": reason},
    )
    return change
