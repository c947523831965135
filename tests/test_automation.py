from __future__ import annotations

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

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
from marketsync.models.audit_log import AuditLog
from marketsync.models.order import Order, OrderStatusHistory
from marketsync.schemas.automation import AutomationActionIn, AutomationConditionIn, AutomationRuleIn
from marketsync.services.automation import (
    OrderFacts,
    create_automation_rule,
    delete_automation_rule,
    evaluate_condition,
    get_automation_rule,
    update_automation_rule,
    validate_rule_input,
)


def _facts(**overrides) -> OrderFacts:
    values = {
        "order_id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "status": OrderStatus.PENDING,
        "total_amount": Decimal("75000"),
        "marketplace": MarketplaceCode.SHOPEE,
        "customer_email": "buyer@corp.example",
    }
    values.update(overrides)
    return OrderFacts(**values)


@pytest.mark.parametrize(
    ("field", "operator", "value", "expected"),
    [
        ("totalAmount", "greater_than", "50000", True),
        ("totalAmount", "greater_than", "75000", False),
        ("totalAmount", "less_than", "100000.50", True),
        ("totalAmount", "equals", "75000.00", True),
        ("totalAmount", "not_equals", "75000", False),
        ("totalAmount", "greater_than", "lots", False),
        ("status", "equals", "PENDING", True),
        ("status", "not_equals", "PENDING", False),
        ("marketplace", "equals", "SHOPEE", True),
        ("marketplace", "equals", "shopee", False),
        ("customerEmail", "contains", "@corp", True),
        ("customerEmail", "equals", "someone@else", False),
        ("shippingCountry", "equals", "ID", False),
        ("status", "matches", "PEND.*", False),
    ],
)
def test_evaluate_condition(field: str, operator: str, value: str, expected: bool) -> None:
    assert evaluate_condition(field, operator, value, _facts()) is expected


def test_missing_email_only_satisfies_not_equals() -> None:
    facts = _facts(customer_email=None)
    assert evaluate_condition("customerEmail", "equals", "a@b.c", facts) is False
    assert evaluate_condition("customerEmail", "contains", "@", facts) is False
    assert evaluate_condition("customerEmail", "not_equals", "a@b.c", facts) is True


def test_validate_rule_input_rejects_bad_rules() -> None:
    ordering_on_text = AutomationRuleIn(
        name="bad",
        conditions=[AutomationConditionIn(field=ConditionField.STATUS, operator=ConditionOperator.GREATER_THAN, value="1")],
        actions=[AutomationActionIn(action_type=AutomationActionType.ADD_TAG, action_value="x")],
    )
    with pytest.raises(ValidationError):
        validate_rule_input(ordering_on_text)

    unknown_status = AutomationRuleIn(
        name="bad",
        actions=[AutomationActionIn(action_type=AutomationActionType.UPDATE_STATUS, action_value="SHIPPING")],
    )
    with pytest.raises(ValidationError):
        validate_rule_input(unknown_status)

    bad_assignee = AutomationRuleIn(
        name="bad",
        actions=[AutomationActionIn(action_type=AutomationActionType.ASSIGN_TO_USER, action_value="bob")],
    )
    with pytest.raises(ValidationError):
        validate_rule_input(bad_assignee)


async def _facts_for(session_factory, order: Order) -> OrderFacts:
    async with session_factory() as session:
        row = await session.get(Order, order.id)
        return OrderFacts.from_order(row, MarketplaceCode.SHOPEE)


@pytest.mark.asyncio
async def test_high_value_rule_confirms_pending_order(session_factory, seed, engines, recorded_events) -> None:
    user = await seed.user()
    account = await seed.account(user)
    big = await seed.order(user, account, "BIG", total="100000")
    small = await seed.order(user, account, "SMALL", total="10000")
    rule = await seed.automation_rule(
        user,
        name="Auto confirm",
        conditions=[("totalAmount", "greater_than", "50000")],
        actions=[("update_status", "CONFIRMED")],
    )

    outcome = await engines.automation.evaluate(await _facts_for(session_factory, big))
    await engines.automation.evaluate(await _facts_for(session_factory, small))

    assert outcome.rules_fired == [rule.id]
    assert outcome.actions_applied == 1
    async with session_factory() as session:
        assert (await session.get(Order, big.id)).status == OrderStatus.CONFIRMED
        assert (await session.get(Order, small.id)).status == OrderStatus.PENDING
        history = (
            await session.execute(
                select(OrderStatusHistory)
                .where(OrderStatusHistory.order_id == big.id)
                .order_by(OrderStatusHistory.sequence)
            )
        ).scalars().all()
    assert history[-1].actor == StatusActor.AUTOMATION
    assert history[-1].changed_by == f"rule:{rule.id}"

    changed = [e for e in recorded_events if e.type == EventType.ORDER_STATUS_CHANGED]
    assert [e.payload["newStatus"] for e in changed] == ["CONFIRMED"]


@pytest.mark.asyncio
async def test_failing_action_does_not_stop_remaining_actions(session_factory, seed, engines) -> None:
    user = await seed.user()
    account = await seed.account(user)
    order = await seed.order(user, account, status=OrderStatus.PENDING)
    await seed.automation_rule(
        user,
        actions=[("update_status", "DELIVERED"), ("add_tag", "checked")],
    )

    outcome = await engines.automation.evaluate(await _facts_for(session_factory, order))

    assert (outcome.actions_applied, outcome.actions_failed) == (1, 1)
    async with session_factory() as session:
        row = await session.get(Order, order.id)
    assert row.status == OrderStatus.PENDING
    assert row.tags == ["checked"]


@pytest.mark.asyncio
async def test_rules_apply_in_priority_order_and_see_earlier_changes(session_factory, seed, engines) -> None:
    user = await seed.user()
    assignee = await seed.user("packer")
    account = await seed.account(user)
    order = await seed.order(user, account, status=OrderStatus.PENDING)
    await seed.automation_rule(
        user,
        name="late",
        priority=10,
        conditions=[("status", "equals", "CONFIRMED")],
        actions=[("add_tag", "second"), ("assign_to_user", str(assignee.id))],
    )
    await seed.automation_rule(
        user,
        name="early",
        priority=1,
        actions=[("update_status", "CONFIRMED"), ("add_tag", "first")],
    )
    await seed.automation_rule(user, name="off", is_active=False, actions=[("add_tag", "never")])

    outcome = await engines.automation.evaluate(await _facts_for(session_factory, order))

    assert len(outcome.rules_fired) == 2
    async with session_factory() as session:
        row = await session.get(Order, order.id)
    assert row.status == OrderStatus.CONFIRMED
    assert row.tags == ["first", "second"]
    assert row.assigned_user_id == assignee.id


@pytest.mark.asyncio
async def test_send_notification_emits_event(session_factory, seed, engines, recorded_events) -> None:
    user = await seed.user()
    account = await seed.account(user)
    order = await seed.order(user, account, email="vip@corp.example")
    await seed.automation_rule(
        user,
        conditions=[("customerEmail", "contains", "vip@")],
        actions=[("send_notification", "VIP order")],
    )

    await engines.automation.evaluate(await _facts_for(session_factory, order))

    notes = [e for e in recorded_events if e.type == EventType.ORDER_NOTIFICATION]
    assert len(notes) == 1
    assert notes[0].payload["message"] == "VIP order"
    assert notes[0].user_id == user.id


@pytest.mark.asyncio
async def test_rule_crud_writes_audit_log(session_factory, seed) -> None:
    user = await seed.user()
    data = AutomationRuleIn(
        name="  Tag big  ",
        priority=3,
        conditions=[
            AutomationConditionIn(field=ConditionField.TOTAL_AMOUNT, operator=ConditionOperator.GREATER_THAN, value="10")
        ],
        actions=[AutomationActionIn(action_type=AutomationActionType.ADD_TAG, action_value="big")],
    )
    async with session_factory() as session:
        async with session.begin():
            rule = await create_automation_rule(session, actor="seller", user_id=user.id, data=data)
    assert rule.name == "Tag big"

    update = data.model_copy(update={"name": "Tag huge", "priority": 5})
    async with session_factory() as session:
        async with session.begin():
            updated = await update_automation_rule(session, actor="seller", user_id=user.id, rule_id=rule.id, data=update)
            assert (updated.name, updated.priority) == ("Tag huge", 5)
            assert len(updated.conditions) == 1

    async with session_factory() as session:
        async with session.begin():
            await delete_automation_rule(session, actor="seller", user_id=user.id, rule_id=rule.id)

    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await get_automation_rule(session, user_id=user.id, rule_id=rule.id)
        actions = (
            await session.execute(
                select(AuditLog.action).where(AuditLog.entity_id == rule.id)
            )
        ).scalars().all()
    assert sorted(actions) == ["create", "delete", "update"]
