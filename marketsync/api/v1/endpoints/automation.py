from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.api.v1.deps import begin_tx, http_error
from marketsync.core.db import get_session
from marketsync.core.errors import NotFoundError
from marketsync.core.security import get_current_user
from marketsync.models.user import User
from marketsync.schemas.automation import AutomationRuleIn, AutomationRuleOut
from marketsync.services.automation import (
    create_automation_rule,
    delete_automation_rule,
    get_automation_rule,
    list_automation_rules,
    update_automation_rule,
)


router = APIRouter()


@router.get("/rules", response_model=list[AutomationRuleOut])
async def list_rules(
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> list[AutomationRuleOut]:
    rows = await list_automation_rules(session, user_id=user.id)
    return [AutomationRuleOut.model_validate(r) for r in rows]


@router.post("/rules", response_model=AutomationRuleOut)
async def create_rule(
    data: AutomationRuleIn,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> AutomationRuleOut:
    try:
        async with begin_tx(session):
            rule = await create_automation_rule(session, actor=user.username, user_id=user.id, data=data)
    except ValueError as e:
        raise http_error(e) from e
    return AutomationRuleOut.model_validate(rule)


@router.get("/rules/{rule_id}", response_model=AutomationRuleOut)
async def get_rule(
    rule_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> AutomationRuleOut:
    try:
        rule = await get_automation_rule(session, user_id=user.id, rule_id=rule_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Not found") from None
    return AutomationRuleOut.model_validate(rule)


@router.put("/rules/{rule_id}", response_model=AutomationRuleOut)
async def update_rule(
    rule_id: UUID,
    data: AutomationRuleIn,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> AutomationRuleOut:
    try:
        async with begin_tx(session):
            rule = await update_automation_rule(
                session,
                actor=user.username,
                user_id=user.id,
                rule_id=rule_id,
                data=data,
            )
    except ValueError as e:
        raise http_error(e) from e
    return AutomationRuleOut.model_validate(rule)


@router.delete("/rules/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> None:
    try:
        async with begin_tx(session):
            await delete_automation_rule(session, actor=user.username, user_id=user.id, rule_id=rule_id)
    except ValueError as e:
        raise http_error(e) from e
