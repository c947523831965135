from __future__ import annotations

import logging

import pytest

from marketsync.core.enums import MarketplaceCode, OrderStatus
from marketsync.core.errors import ValidationError
from marketsync.services.status_mapping import (
    MANUAL_TRANSITIONS,
    MARKETPLACE_STATUS_TABLE,
    TERMINAL_STATUSES,
    normalize_status,
    validate_manual_transition,
    validate_status_table,
)


@pytest.mark.parametrize(
    ("marketplace", "token", "expected"),
    [
        (MarketplaceCode.SHOPEE, "UNPAID", OrderStatus.PENDING),
        (MarketplaceCode.SHOPEE, "TO_SHIP", OrderStatus.CONFIRMED),
        (MarketplaceCode.SHOPEE, "COMPLETED", OrderStatus.DELIVERED),
        (MarketplaceCode.TOKOPEDIA, "SENT", OrderStatus.SHIPPED),
        (MarketplaceCode.TOKOPEDIA, "REFUNDED", OrderStatus.REFUNDED),
        (MarketplaceCode.LAZADA, "PACKED", OrderStatus.PROCESSING),
        (MarketplaceCode.LAZADA, "CANCELED", OrderStatus.CANCELLED),
    ],
)
def test_known_tokens(marketplace: MarketplaceCode, token: str, expected: OrderStatus) -> None:
    assert normalize_status(marketplace, token) == expected


def test_tokens_are_case_and_whitespace_insensitive() -> None:
    assert normalize_status("shopee", "  to_ship ") == OrderStatus.CONFIRMED


@pytest.mark.parametrize("token", ["MYSTERY", "", None])
def test_unknown_tokens_default_to_pending(token, caplog) -> None:
    with caplog.at_level(logging.WARNING):
        assert normalize_status(MarketplaceCode.LAZADA, token) == OrderStatus.PENDING
    assert "defaulting to PENDING" in caplog.text


def test_unknown_marketplace_is_rejected() -> None:
    with pytest.raises(ValueError):
        normalize_status("EBAY", "SHIPPED")


def test_status_table_rejects_duplicate_tokens() -> None:
    table = dict(MARKETPLACE_STATUS_TABLE)
    table[MarketplaceCode.SHOPEE] = {"SHIPPED": OrderStatus.SHIPPED, "shipped ": OrderStatus.DELIVERED}
    with pytest.raises(ValidationError, match="Duplicate"):
        validate_status_table(table, MANUAL_TRANSITIONS)


def test_status_table_rejects_empty_token_and_missing_marketplace() -> None:
    table = dict(MARKETPLACE_STATUS_TABLE)
    table[MarketplaceCode.TOKOPEDIA] = {"  ": OrderStatus.PENDING}
    with pytest.raises(ValidationError, match="Empty"):
        validate_status_table(table, MANUAL_TRANSITIONS)

    partial = {MarketplaceCode.SHOPEE: MARKETPLACE_STATUS_TABLE[MarketplaceCode.SHOPEE]}
    with pytest.raises(ValidationError, match="missing marketplaces"):
        validate_status_table(partial, MANUAL_TRANSITIONS)


def test_manual_graph() -> None:
    validate_manual_transition(OrderStatus.PENDING, OrderStatus.CONFIRMED)
    validate_manual_transition(OrderStatus.SHIPPED, OrderStatus.DELIVERED)
    with pytest.raises(ValidationError):
        validate_manual_transition(OrderStatus.CONFIRMED, OrderStatus.DELIVERED)
    with pytest.raises(ValidationError):
        validate_manual_transition(OrderStatus.PENDING, OrderStatus.PENDING)
    assert TERMINAL_STATUSES == {OrderStatus.CANCELLED, OrderStatus.REFUNDED}
