from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from approval_engine.domain import EntityType


class SubmitApproval(BaseModel):
    entity_type: EntityType
    entity_id: str = Field(..., min_length=1)
    entity_value: Optional[Decimal] = Field(None, max_digits=15, decimal_places=2)
    chain_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
