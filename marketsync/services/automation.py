from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from marketsync.core.enums import (
    AutomationActionType,
    ConditionField,
    ConditionOperator,
    EventType,
    MarketplaceCode,
    OrderStatus,
    StatusActor,
)
from marketsync.core.errors import NotFoundError, ValidationError
from marketsync.models.automation import AutomationAction, AutomationCondition, AutomationRule
from marketsync.models.order import Order
from marketsync.schemas.automation import AutomationRuleIn
from marketsync.services.audit import audit_log
from marketsync.services.events import EventBus
from marketsync.services.orders import (
    StatusChange,
    add_tag_to_order,
    apply_status_change,
    assign_order_to_user,
)


logger = logging.getLogger(__name__)

NUMERIC_FIELDS = {ConditionField.TOTAL_AMOUNT}
ORDERING_OPERATORS = {ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN}


@dataclass(frozen=True, slots=True)
class OrderFacts:
    """The order attributes automation conditions can see."""

    order_id: uuid.UUID
    user_id: uuid.UUID
    status: OrderStatus
    total_amount: Decimal
    marketplace: MarketplaceCode
    customer_email: str | None = None

    @classmethod
    def from_order(cls, order: Order, marketplace: MarketplaceCode) -> "OrderFacts":
        info = order.customer_info or {}
        email = info.get("email") if isinstance(info, dict) else None
        return cls(
            order_id=order.id,
            user_id=order.user_id,
            status=order.status,
            total_amount=Decimal(order.total_amount or 0),
            marketplace=marketplace,
            customer_email=str(email) if email else None,
        )

    def value_of(self, condition_field: ConditionField) -> Any:
        if condition_field == ConditionField.STATUS:
            return self.status
        if condition_field == ConditionField.TOTAL_AMOUNT:
            return self.total_amount
        if condition_field == ConditionField.MARKETPLACE:
            return self.marketplace
        if condition_field == ConditionField.CUSTOMER_EMAIL:
            return self.customer_email
        return None


@dataclass(slots=True)
class AutomationOutcome:
    rules_fired: list[uuid.UUID] = field(default_factory=list)
    actions_applied: int = 0
    actions_failed: int = 0
    status_changes: list[StatusChange] = field(default_factory=list)


def _as_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None


def evaluate_condition(field_name: str, operator: str, value: str, facts: OrderFacts) -> bool:
    try:
        cond_field = ConditionField(field_name)
        op = ConditionOperator(operator)
    except ValueError:
        logger.warning("Unknown automation condition %s %s; treating as false", field_name, operator)
        return False

    actual = facts.value_of(cond_field)
    if actual is None:
        return op == ConditionOperator.NOT_EQUALS and value != ""

    if op in ORDERING_OPERATORS or (cond_field in NUMERIC_FIELDS and op in {ConditionOperator.EQUALS, ConditionOperator.NOT_EQUALS}):
        left = _as_decimal(actual)
        right = _as_decimal(value)
        if left is None or right is None:
            return False
        if op == ConditionOperator.GREATER_THAN:
            return left > right
        if op == ConditionOperator.LESS_THAN:
            return left < right
        if op == ConditionOperator.EQUALS:
            return left == right
        return left != right

    actual_text = str(actual)
    if op == ConditionOperator.EQUALS:
        return actual_text == value
    if op == ConditionOperator.NOT_EQUALS:
        return actual_text != value
    if op == ConditionOperator.CONTAINS:
        return value in actual_text
    return False


def rule_matches(rule: AutomationRule, facts: OrderFacts) -> bool:
    return all(evaluate_condition(c.field, c.operator, c.value, facts) for c in rule.conditions)


def validate_rule_input(data: AutomationRuleIn) -> None:
    for cond in data.conditions:
        if cond.operator in ORDERING_OPERATORS and cond.field not in NUMERIC_FIELDS:
            raise ValidationError(f"Operator {cond.operator} requires a numeric field, got {cond.field}")
        if cond.field in NUMERIC_FIELDS and _as_decimal(cond.value) is None:
            raise ValidationError(f"Condition value for {cond.field} must be numeric: {cond.value!r}")

    for action in data.actions:
        value = (action.action_value or "").strip()
        if action.action_type == AutomationActionType.UPDATE_STATUS:
            try:
                OrderStatus(value)
            except ValueError as e:
                raise ValidationError(f"update_status needs a canonical status, got {value!r}") from e
        elif action.action_type == AutomationActionType.ADD_TAG:
            if not value:
                raise ValidationError("add_tag needs a tag value")
        elif action.action_type == AutomationActionType.ASSIGN_TO_USER:
            try:
                uuid.UUID(value)
            except ValueError as e:
                raise ValidationError(f"assign_to_user needs a user id, got {value!r}") from e


def _rule_snapshot(rule: AutomationRule) -> dict[str, Any]:
    return {
        "name": rule.name,
        "priority": rule.priority,
        "is_active": rule.is_active,
        "conditions": [{"field": c.field, "operator": c.operator, "value": c.value} for c in rule.conditions],
        "actions": [{"action_type": a.action_type, "action_value": a.action_value} for a in rule.actions],
    }


def _build_children(data: AutomationRuleIn) -> tuple[list[AutomationCondition], list[AutomationAction]]:
    conditions = [
        AutomationCondition(position=i, field=c.field.value, operator=c.operator.value, value=c.value)
        for i, c in enumerate(data.conditions)
    ]
    actions = [
        AutomationAction(
            position=i,
            action_type=a.action_type.value,
            action_value=(a.action_value.strip() if a.action_value else None),
        )
        for i, a in enumerate(data.actions)
    ]
    return conditions, actions


async def list_automation_rules(session: AsyncSession, *, user_id: uuid.UUID) -> list[AutomationRule]:
    stmt = (
        select(AutomationRule)
        .where(AutomationRule.user_id == user_id)
        .options(selectinload(AutomationRule.conditions), selectinload(AutomationRule.actions))
        .order_by(AutomationRule.priority.asc(), AutomationRule.created_at.asc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def get_automation_rule(session: AsyncSession, *, user_id: uuid.UUID, rule_id: uuid.UUID) -> AutomationRule:
    stmt = (
        select(AutomationRule)
        .where(AutomationRule.id == rule_id, AutomationRule.user_id == user_id)
        .options(selectinload(AutomationRule.conditions), selectinload(AutomationRule.actions))
    )
    rule = (await session.execute(stmt)).scalar_one_or_none()
    if rule is None:
        raise NotFoundError("Automation rule not found")
    return rule


async def create_automation_rule(
    session: AsyncSession,
    *,
    actor: str,
    user_id: uuid.UUID,
    data: AutomationRuleIn,
) -> AutomationRule:
    validate_rule_input(data)
    conditions, actions = _build_children(data)
    rule = AutomationRule(
        user_id=user_id,
        name=data.name.strip(),
        priority=data.priority,
        is_active=data.is_active,
        conditions=conditions,
        actions=actions,
    )
    session.add(rule)
    await session.flush()
    await audit_log(
        session,
        actor=actor,
        entity_type="automation_rule",
        entity_id=rule.id,
        action="create",
        after=_rule_snapshot(rule),
    )
    return rule


async def update_automation_rule(
    session: AsyncSession,
    *,
    actor: str,
    user_id: uuid.UUID,
    rule_id: uuid.UUID,
    data: AutomationRuleIn,
) -> AutomationRule:
    validate_rule_input(data)
    rule = await get_automation_rule(session, user_id=user_id, rule_id=rule_id)
    before = _rule_snapshot(rule)

    conditions, actions = _build_children(data)
    rule.name = data.name.strip()
    rule.priority = data.priority
    rule.is_active = data.is_active
    rule.conditions = conditions
    rule.actions = actions
    await session.flush()

    await audit_log(
        session,
        actor=actor,
        entity_type="automation_rule",
        entity_id=rule.id,
        action="update",
        before=before,
        after=_rule_snapshot(rule),
    )
    return rule


async def delete_automation_rule(
    session: AsyncSession,
    *,
    actor: str,
    user_id: uuid.UUID,
    rule_id: uuid.UUID,
) -> None:
    rule = await get_automation_rule(session, user_id=user_id, rule_id=rule_id)
    before = _rule_snapshot(rule)
    await session.delete(rule)
    await audit_log(
        session,
        actor=actor,
        entity_type="automation_rule",
        entity_id=rule_id,
        action="delete",
        before=before,
    )


class AutomationEvaluator:
    """
    Runs a user's active rules against one reconciled order.

    Rules apply in ascending (priority, created_at) order, so on contradictory
    actions the highest-priority rule, applied last, wins. Every action runs in
    its own transaction: a failing action is logged and skipped.
    """

    def __init__(self, *, session_factory: Callable[[], AsyncSession], bus: EventBus) -> None:
        self._session_factory = session_factory
        self._bus = bus

    async def load_rules(self, user_id: uuid.UUID) -> list[AutomationRule]:
        async with self._session_factory() as session:
            rules = await list_automation_rules(session, user_id=user_id)
        return [r for r in rules if r.is_active]

    async def evaluate(self, facts: OrderFacts) -> AutomationOutcome:
        outcome = AutomationOutcome()
        rules = await self.load_rules(facts.user_id)
        for rule in rules:
            if not rule_matches(rule, facts):
                continue
            outcome.rules_fired.append(rule.id)
            logger.info("Automation rule %s fired for order %s", rule.id, facts.order_id)

            for action in rule.actions:
                try:
                    change = await self._execute(rule, action, facts)
                except Exception:
                    outcome.actions_failed += 1
                    logger.exception(
                        "Automation action %s of rule %s failed for order %s",
                        action.action_type,
                        rule.id,
                        facts.order_id,
                    )
                    continue
                outcome.actions_applied += 1
                if change is not None:
                    outcome.status_changes.append(change)
                    # Later rules see the status this rule produced.
                    facts = replace(facts, status=change.status)
        return outcome

    async def _execute(
        self,
        rule: AutomationRule,
        action: AutomationAction,
        facts: OrderFacts,
    ) -> StatusChange | None:
        try:
            action_type = AutomationActionType(action.action_type)
        except ValueError:
            logger.warning("Unknown automation action type %r on rule %s", action.action_type, rule.id)
            return None
        value = (action.action_value or "").strip()

        if action_type == AutomationActionType.SEND_NOTIFICATION:
            await self._bus.emit(
                EventType.ORDER_NOTIFICATION,
                user_id=facts.user_id,
                payload={"orderId": str(facts.order_id), "ruleId": str(rule.id), "message": value or rule.name},
            )
            return None

        change: StatusChange | None = None
        async with self._session_factory() as session:
            async with session.begin():
                order = (
                    await session.execute(select(Order).where(Order.id == facts.order_id).with_for_update())
                ).scalar_one_or_none()
                if order is None:
                    raise NotFoundError(f"Order {facts.order_id} not found")

                if action_type == AutomationActionType.UPDATE_STATUS:
                    change = await apply_status_change(
                        session,
                        order=order,
                        new_status=OrderStatus(value),
                        actor=StatusActor.AUTOMATION,
                        changed_by=f"rule:{rule.id}",
                        reason=f"Automation rule '{rule.name}'",
                    )
                elif action_type == AutomationActionType.ADD_TAG:
                    add_tag_to_order(order, value)
                elif action_type == AutomationActionType.ASSIGN_TO_USER:
                    await assign_order_to_user(session, order=order, assignee_id=uuid.UUID(value))

        if change is not None:
            await self._bus.emit(EventType.ORDER_STATUS_CHANGED, user_id=change.user_id, payload=change.as_payload())
        return change
