from __future__ import annotations

import uuid

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketsync.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class AutomationRule(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "automation_rules"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Ascending application order; the highest priority is applied last and wins conflicts.
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    conditions: Mapped[list["AutomationCondition"]] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="AutomationCondition.position.asc()",
    )
    actions: Mapped[list["AutomationAction"]] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="AutomationAction.position.asc()",
    )


class AutomationCondition(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "automation_conditions"

    rule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("automation_rules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    field: Mapped[str] = mapped_column(String(40), nullable=False)
    operator: Mapped[str] = mapped_column(String(40), nullable=False)
    value: Mapped[str] = mapped_column(String(500), nullable=False)

    rule: Mapped[AutomationRule] = relationship(back_populates="conditions")


class AutomationAction(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "automation_actions"

    rule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("automation_rules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    action_type: Mapped[str] = mapped_column(String(40), nullable=False)
    action_value: Mapped[str | None] = mapped_column(String(500), nullable=True)

    rule: Mapped[AutomationRule] = relationship(back_populates="actions")
