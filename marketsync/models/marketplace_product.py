from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from marketsync.core.enums import MarketplaceProductSyncStatus
from marketsync.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from marketsync.models.sql_enums import marketplace_product_sync_status_enum


class MarketplaceProduct(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Mapping of a local product/variant to its listing on one marketplace account."""

    __tablename__ = "marketplace_products"
    __table_args__ = (
        UniqueConstraint(
            "marketplace_account_id",
            "product_id",
            "variant_id",
            name="uq_marketplace_product_identity",
        ),
    )

    marketplace_account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("marketplace_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    variant_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("product_variants.id", ondelete="CASCADE"),
        nullable=True,
    )

    external_product_id: Mapped[str] = mapped_column(String(120), nullable=False)
    external_variant_id: Mapped[str | None] = mapped_column(String(120), nullable=True)

    sync_status: Mapped[MarketplaceProductSyncStatus] = mapped_column(
        marketplace_product_sync_status_enum,
        nullable=False,
        default=MarketplaceProductSyncStatus.PENDING,
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
