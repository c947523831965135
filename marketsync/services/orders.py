from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from marketsync.core.enums import OrderStatus, StatusActor
from marketsync.core.errors import NotFoundError, ValidationError
from marketsync.models.order import Order, OrderStatusHistory
from marketsync.models.user import User
from marketsync.services.status_mapping import validate_manual_transition


MAX_TAGS_PER_ORDER = 50


@dataclass(frozen=True, slots=True)
class StatusChange:
    order_id: uuid.UUID
    user_id: uuid.UUID
    previous_status: OrderStatus | None
    status: OrderStatus
    actor: StatusActor

    def as_payload(self) -> dict[str, str | None]:
        return {
            "orderId": str(self.order_id),
            "oldStatus": self.previous_status.value if self.previous_status else None,
            "newStatus": self.status.value,
            "actor": self.actor.value,
        }


async def _next_sequence(session: AsyncSession, order_id: uuid.UUID) -> int:
    current = (
        await session.execute(
            select(func.max(OrderStatusHistory.sequence)).where(OrderStatusHistory.order_id == order_id)
        )
    ).scalar_one_or_none()
    return int(current or 0) + 1


async def record_initial_status(
    session: AsyncSession,
    *,
    order: Order,
    actor: StatusActor = StatusActor.SYSTEM,
    reason: str | None = None,
) -> StatusChange:
    session.add(
        OrderStatusHistory(
            order_id=order.id,
            sequence=1,
            status=order.status,
            previous_status=None,
            actor=actor,
            changed_by=actor.value.lower(),
            reason=reason or f"Order imported with status {order.status}",
        )
    )
    return StatusChange(
        order_id=order.id,
        user_id=order.user_id,
        previous_status=None,
        status=order.status,
        actor=actor,
    )


async def apply_status_change(
    session: AsyncSession,
    *,
    order: Order,
    new_status: OrderStatus,
    actor: StatusActor,
    changed_by: str | None = None,
    reason: str | None = None,
) -> StatusChange | None:
    """
    Set `order.status` and append one history entry, or do nothing if unchanged.

    SYSTEM changes are marketplace-driven and bypass the manual transition graph;
    USER and AUTOMATION changes must follow it.
    """
    old = order.status
    if new_status == old:
        return None
    if actor != StatusActor.SYSTEM:
        validate_manual_transition(old, new_status)

    order.status = new_status
    session.add(
        OrderStatusHistory(
            order_id=order.id,
            sequence=await _next_sequence(session, order.id),
            status=new_status,
            previous_status=old,
            actor=actor,
            changed_by=changed_by or actor.value.lower(),
            reason=reason or f"Status changed from {old} to {new_status}",
        )
    )
    return StatusChange(
        order_id=order.id,
        user_id=order.user_id,
        previous_status=old,
        status=new_status,
        actor=actor,
    )


async def get_order_for_user(
    session: AsyncSession,
    *,
    order_id: uuid.UUID,
    user_id: uuid.UUID,
    with_details: bool = False,
    for_update: bool = False,
) -> Order:
    stmt = select(Order).where(Order.id == order_id, Order.user_id == user_id)
    if with_details:
        stmt = stmt.options(selectinload(Order.items), selectinload(Order.status_history))
    if for_update:
        stmt = stmt.with_for_update()
    order = (await session.execute(stmt)).scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def list_orders(
    session: AsyncSession,
    *,
    user_id: uuid.UUID,
    status: OrderStatus | None = None,
    marketplace_account_id: uuid.UUID | None = None,
    q: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Order]:
    stmt = select(Order).where(Order.user_id == user_id)
    if status is not None:
        stmt = stmt.where(Order.status == status)
    if marketplace_account_id is not None:
        stmt = stmt.where(Order.marketplace_account_id == marketplace_account_id)
    if q and q.strip():
        like = f"%{q.strip()}%"
        stmt = stmt.where(Order.order_number.ilike(like) | Order.external_order_id.ilike(like))
    stmt = stmt.order_by(Order.order_date.desc().nullslast(), Order.created_at.desc()).limit(limit).offset(offset)
    return list((await session.execute(stmt)).scalars().all())


def add_tag_to_order(order: Order, tag: str) -> bool:
    tag = tag.strip()
    if not tag:
        raise ValidationError("Tag must not be empty")
    tags = list(order.tags or [])
    if tag in tags:
        return False
    if len(tags) >= MAX_TAGS_PER_ORDER:
        raise ValidationError(f"Order already has {MAX_TAGS_PER_ORDER} tags")
    # Reassign rather than mutate so the JSON column is flagged dirty.
    order.tags = [*tags, tag]
    return True


async def assign_order_to_user(session: AsyncSession, *, order: Order, assignee_id: uuid.UUID | None) -> None:
    if assignee_id is not None:
        assignee = await session.get(User, assignee_id)
        if assignee is None or not assignee.is_active:
            raise NotFoundError("Assignee not found")
    order.assigned_user_id = assignee_id
