from marketsync.models.audit_log import AuditLog
from marketsync.models.automation import AutomationAction, AutomationCondition, AutomationRule
from marketsync.models.inventory import Inventory, StockMovement
from marketsync.models.job_lock import JobLock
from marketsync.models.marketplace_account import MarketplaceAccount
from marketsync.models.marketplace_product import MarketplaceProduct
from marketsync.models.order import Order, OrderLineItem, OrderStatusHistory
from marketsync.models.product import Category, Product, ProductVariant
from marketsync.models.stock_sync import StockSyncLog, StockSyncRule, StockSyncRuleTarget
from marketsync.models.user import User

__all__ = [
    "AuditLog",
    "AutomationAction",
    "AutomationCondition",
    "AutomationRule",
    "Category",
    "Inventory",
    "JobLock",
    "MarketplaceAccount",
    "MarketplaceProduct",
    "Order",
    "OrderLineItem",
    "OrderStatusHistory",
    "Product",
    "ProductVariant",
    "StockMovement",
    "StockSyncLog",
    "StockSyncRule",
    "StockSyncRuleTarget",
    "User",
]
