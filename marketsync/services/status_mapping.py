from __future__ import annotations

import logging
from collections.abc import Mapping

from marketsync.core.enums import MarketplaceCode, OrderStatus
from marketsync.core.errors import ValidationError


logger = logging.getLogger(__name__)

# Unknown tokens normalize to PENDING. That is policy: a marketplace adding a new
# status must not break reconciliation, and PENDING is the least committal state.
UNKNOWN_STATUS_DEFAULT = OrderStatus.PENDING

MARKETPLACE_STATUS_TABLE: dict[MarketplaceCode, dict[str, OrderStatus]] = {
    MarketplaceCode.SHOPEE: {
        "UNPAID": OrderStatus.PENDING,
        "INVOICE_PENDING": OrderStatus.PENDING,
        "READY_TO_SHIP": OrderStatus.CONFIRMED,
        "TO_SHIP": OrderStatus.CONFIRMED,
        "PROCESSED": OrderStatus.PROCESSING,
        "RETRY_SHIP": OrderStatus.PROCESSING,
        "SHIPPED": OrderStatus.SHIPPED,
        "TO_CONFIRM_RECEIVE": OrderStatus.SHIPPED,
        "COMPLETED": OrderStatus.DELIVERED,
        "IN_CANCEL": OrderStatus.CANCELLED,
        "CANCELLED": OrderStatus.CANCELLED,
        "TO_RETURN": OrderStatus.REFUNDED,
    },
    MarketplaceCode.TOKOPEDIA: {
        "NEW": OrderStatus.PENDING,
        "ACCEPTED": OrderStatus.CONFIRMED,
        "PROCESSED": OrderStatus.PROCESSING,
        "SENT": OrderStatus.SHIPPED,
        "DELIVERED": OrderStatus.DELIVERED,
        "CANCELLED": OrderStatus.CANCELLED,
        "REFUNDED": OrderStatus.REFUNDED,
    },
    MarketplaceCode.LAZADA: {
        "UNPAID": OrderStatus.PENDING,
        "PENDING": OrderStatus.PENDING,
        "READY_TO_SHIP": OrderStatus.CONFIRMED,
        "PACKED": OrderStatus.PROCESSING,
        "SHIPPED": OrderStatus.SHIPPED,
        "DELIVERED": OrderStatus.DELIVERED,
        "CANCELED": OrderStatus.CANCELLED,
        "CANCELLED": OrderStatus.CANCELLED,
        "RETURNED": OrderStatus.REFUNDED,
    },
}

# Manual (user-driven) transitions. Marketplace-driven updates bypass this graph.
MANUAL_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(s for s, nxt in MANUAL_TRANSITIONS.items() if not nxt)


def _token_key(token: str) -> str:
    return token.strip().upper()


def validate_status_table(
    table: Mapping[MarketplaceCode, Mapping[str, OrderStatus]],
    transitions: Mapping[OrderStatus, set[OrderStatus]],
) -> None:
    missing = [code.value for code in MarketplaceCode if code not in table]
    if missing:
        raise ValidationError(f"Status table missing marketplaces: {', '.join(missing)}")

    for code, mapping in table.items():
        if not mapping:
            raise ValidationError(f"Status table for {code} is empty")
        seen: set[str] = set()
        for token, status in mapping.items():
            key = _token_key(token)
            if not key:
                raise ValidationError(f"Empty status token for {code}")
            if key in seen:
                raise ValidationError(f"Duplicate status token for {code}: {token}")
            seen.add(key)
            if not isinstance(status, OrderStatus):
                raise ValidationError(f"Non-canonical status for {code}/{token}: {status!r}")

    missing_states = [s.value for s in OrderStatus if s not in transitions]
    if missing_states:
        raise ValidationError(f"Transition graph missing states: {', '.join(missing_states)}")
    for source, targets in transitions.items():
        if source in targets:
            raise ValidationError(f"Transition graph has a self-loop on {source}")


validate_status_table(MARKETPLACE_STATUS_TABLE, MANUAL_TRANSITIONS)

_LOOKUP: dict[MarketplaceCode, dict[str, OrderStatus]] = {
    code: {_token_key(token): status for token, status in mapping.items()}
    for code, mapping in MARKETPLACE_STATUS_TABLE.items()
}


def normalize_status(marketplace: MarketplaceCode | str, token: str | None) -> OrderStatus:
    code = MarketplaceCode(str(marketplace).upper())
    if token is None or not str(token).strip():
        logger.warning("Empty %s order status; defaulting to %s", code.value, UNKNOWN_STATUS_DEFAULT.value)
        return UNKNOWN_STATUS_DEFAULT
    status = _LOOKUP[code].get(_token_key(str(token)))
    if status is None:
        logger.warning("Unknown %s order status %r; defaulting to %s", code.value, token, UNKNOWN_STATUS_DEFAULT.value)
        return UNKNOWN_STATUS_DEFAULT
    return status


def validate_manual_transition(current: OrderStatus, new: OrderStatus) -> None:
    allowed = MANUAL_TRANSITIONS.get(current, set())
    if new not in allowed:
        raise ValidationError(f"Invalid status transition: {current} -> {new}")
