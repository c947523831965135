from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketsync.core.enums import SyncScope, SyncStrategy
from marketsync.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow
from marketsync.models.marketplace_account import MarketplaceAccount
from marketsync.models.sql_enums import sync_scope_enum, sync_strategy_enum


class StockSyncRule(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "stock_sync_rules"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    scope: Mapped[SyncScope] = mapped_column(sync_scope_enum, nullable=False, default=SyncScope.ALL_PRODUCTS)
    # Stored as lists of UUID strings; only the list matching `scope` is populated.
    product_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    category_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)

    strategy: Mapped[SyncStrategy] = mapped_column(sync_strategy_enum, nullable=False, default=SyncStrategy.EXACT_MATCH)
    sync_percentage: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    sync_offset: Mapped[int | None] = mapped_column(Integer, nullable=True)
    minimum_stock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    custom_formula: Mapped[str | None] = mapped_column(String(500), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    targets: Mapped[list["StockSyncRuleTarget"]] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="StockSyncRuleTarget.position.asc()",
    )


class StockSyncRuleTarget(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "stock_sync_rule_targets"
    __table_args__ = (
        UniqueConstraint("rule_id", "marketplace_account_id", name="uq_stock_sync_rule_target_account"),
    )

    rule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("stock_sync_rules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    marketplace_account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("marketplace_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    rule: Mapped[StockSyncRule] = relationship(back_populates="targets")
    marketplace_account: Mapped[MarketplaceAccount] = relationship()


class StockSyncLog(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "stock_sync_logs"

    rule_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("stock_sync_rules.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    variant_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    source_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    target_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    results: Mapped[list | None] = mapped_column(JSON, nullable=True)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
