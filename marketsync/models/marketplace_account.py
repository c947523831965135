from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, JSON, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from marketsync.core.enums import MarketplaceCode
from marketsync.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from marketsync.models.sql_enums import marketplace_code_enum


class MarketplaceAccount(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One connected external store. Credentials are opaque to everything but the adapter."""

    __tablename__ = "marketplace_accounts"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    marketplace: Mapped[MarketplaceCode] = mapped_column(marketplace_code_enum, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    shop_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    is_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    credentials: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    last_order_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
