from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from marketsync.core.enums import AutomationActionType, ConditionField, ConditionOperator


class AutomationConditionIn(BaseModel):
    field: ConditionField
    operator: ConditionOperator
    value: str = Field(max_length=500)


class AutomationActionIn(BaseModel):
    action_type: AutomationActionType
    action_value: str | None = Field(default=None, max_length=500)


class AutomationRuleIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    priority: int = 0
    is_active: bool = True
    conditions: list[AutomationConditionIn] = Field(default_factory=list)
    actions: list[AutomationActionIn] = Field(min_length=1)


class AutomationConditionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    field: str
    operator: str
    value: str


class AutomationActionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action_type: str
    action_value: str | None


class AutomationRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    priority: int
    is_active: bool
    conditions: list[AutomationConditionOut] = Field(default_factory=list)
    actions: list[AutomationActionOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
