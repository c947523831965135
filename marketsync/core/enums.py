from __future__ import annotations

from enum import StrEnum


class MarketplaceCode(StrEnum):
    SHOPEE = "SHOPEE"
    TOKOPEDIA = "TOKOPEDIA"
    LAZADA = "LAZADA"


class OrderStatus(StrEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class StatusActor(StrEnum):
    SYSTEM = "SYSTEM"
    AUTOMATION = "AUTOMATION"
    USER = "USER"


class StockMovementType(StrEnum):
    IN = "IN"
    OUT = "OUT"
    ADJUSTMENT = "ADJUSTMENT"


class MarketplaceProductSyncStatus(StrEnum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class SyncScope(StrEnum):
    ALL_PRODUCTS = "ALL_PRODUCTS"
    SPECIFIC_PRODUCTS = "SPECIFIC_PRODUCTS"
    CATEGORY = "CATEGORY"


class SyncStrategy(StrEnum):
    EXACT_MATCH = "EXACT_MATCH"
    PERCENTAGE = "PERCENTAGE"
    FIXED_OFFSET = "FIXED_OFFSET"
    MINIMUM_THRESHOLD = "MINIMUM_THRESHOLD"
    CUSTOM_FORMULA = "CUSTOM_FORMULA"


class ConditionField(StrEnum):
    STATUS = "status"
    TOTAL_AMOUNT = "totalAmount"
    MARKETPLACE = "marketplace"
    CUSTOMER_EMAIL = "customerEmail"


class ConditionOperator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"


class AutomationActionType(StrEnum):
    UPDATE_STATUS = "update_status"
    ADD_TAG = "add_tag"
    ASSIGN_TO_USER = "assign_to_user"
    SEND_NOTIFICATION = "send_notification"


class EventType(StrEnum):
    ORDER_SYNC_COMPLETED = "order-sync-completed"
    ORDER_SYNC_FAILED = "order-sync-failed"
    ORDER_STATUS_CHANGED = "order-status-changed"
    ORDER_NOTIFICATION = "order-notification"
    STOCK_SYNC_COMPLETED = "stock-sync-completed"
    STOCK_SYNC_FAILED = "stock-sync-failed"
