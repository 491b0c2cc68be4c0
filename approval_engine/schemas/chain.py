from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from approval_engine.domain import ApproverType, EntityType
from approval_engine.schemas.common import PageQuery


class LevelSpec(BaseModel):
    level: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=200)
    approver_type: ApproverType
    approver_role_id: Optional[str] = None
    approver_user_id: Optional[str] = None
    min_approvers: int = Field(1, ge=1)
    allow_delegation: bool = False
    threshold_min: Optional[Decimal] = Field(None, max_digits=15, decimal_places=2)
    threshold_max: Optional[Decimal] = Field(None, max_digits=15, decimal_places=2)
    timeout_hours: Optional[int] = Field(None, ge=1)
    escalation_level: Optional[int] = Field(None, ge=1)


class ChainCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    entity_type: EntityType
    is_active: bool = True
    is_default: bool = False
    conditions: dict[str, Any] = Field(default_factory=dict)
    levels: list[LevelSpec] = Field(default_factory=list)


class ChainUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None
    conditions: Optional[dict[str, Any]] = None
    # When present, replaces the chain's levels wholesale
    levels: Optional[list[LevelSpec]] = None


class ChainQuery(PageQuery):
    entity_type: Optional[EntityType] = None
    is_active: Optional[bool] = None


class LevelResponse(BaseModel):
    id: str
    level: int
    name: str
    approver_type: ApproverType
    approver_role_id: Optional[str] = None
    approver_user_id: Optional[str] = None
    min_approvers: int
    allow_delegation: bool
    threshold_min: Optional[Decimal] = None
    threshold_max: Optional[Decimal] = None
    timeout_hours: Optional[int] = None
    escalation_level: Optional[int] = None

    model_config = {"from_attributes": True}


class ChainResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    entity_type: EntityType
    is_active: bool
    is_default: bool
    conditions: dict[str, Any] = Field(default_factory=dict)
    levels: list[LevelResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
