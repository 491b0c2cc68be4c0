"""
Approval domain types: chain/level definitions and the request/step aggregate.

Requests reference their chain by id and their levels by number only; the
engine reads the chain's current level definitions whenever it evaluates a
request.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class EntityType(str, Enum):
    CONTRACT = "CONTRACT"
    QUOTE = "QUOTE"


class ApproverType(str, Enum):
    USER = "USER"
    ROLE = "ROLE"
    MANAGER = "MANAGER"
    ORGANIZATION_HEAD = "ORGANIZATION_HEAD"


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


OPEN_REQUEST_STATUSES = frozenset({RequestStatus.PENDING, RequestStatus.IN_PROGRESS})
TERMINAL_REQUEST_STATUSES = frozenset(
    {
        RequestStatus.APPROVED,
        RequestStatus.REJECTED,
        RequestStatus.CANCELLED,
        RequestStatus.EXPIRED,
    }
)


class StepStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class StepAction(str, Enum):
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    DELEGATE = "DELEGATE"
    ESCALATE = "ESCALATE"


@dataclass
class ApprovalChainLevel:
    level: int
    name: str
    approver_type: ApproverType
    approver_role_id: Optional[str] = None
    approver_user_id: Optional[str] = None
    min_approvers: int = 1
    allow_delegation: bool = False
    threshold_min: Optional[Decimal] = None
    threshold_max: Optional[Decimal] = None
    timeout_hours: Optional[int] = None
    escalation_level: Optional[int] = None
    id: str = field(default_factory=new_id)

    @property
    def has_threshold(self) -> bool:
        return self.threshold_min is not None or self.threshold_max is not None

    def applies_to(self, value: Optional[Decimal]) -> bool:
        """Half-open range check [threshold_min, threshold_max); missing bounds are unbounded."""
        if not self.has_threshold:
            return True
        if value is None:
            return False
        if self.threshold_min is not None and value < self.threshold_min:
            return False
        if self.threshold_max is not None and value >= self.threshold_max:
            return False
        return True


@dataclass
class ApprovalChain:
    tenant_id: str
    name: str
    entity_type: EntityType
    description: Optional[str] = None
    is_active: bool = True
    is_default: bool = False
    conditions: dict[str, Any] = field(default_factory=dict)
    levels: list[ApprovalChainLevel] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def level(self, number: int) -> Optional[ApprovalChainLevel]:
        for lvl in self.levels:
            if lvl.level == number:
                return lvl
        return None

    @property
    def declares_thresholds(self) -> bool:
        return any(lvl.has_threshold for lvl in self.levels)


@dataclass
class ApprovalStep:
    request_id: str
    level: int
    approver_id: str
    status: StepStatus = StepStatus.PENDING
    action: StepAction = StepAction.SUBMIT
    delegated_from: Optional[str] = None
    comments: Optional[str] = None
    requested_at: datetime = field(default_factory=utcnow)
    responded_at: Optional[datetime] = None
    # Set the first time the escalation scan acts on this step (escalated or flagged overdue)
    escalated_at: Optional[datetime] = None
    is_overdue: bool = False
    # Id of the step this one replaced through escalation
    escalated_from: Optional[str] = None
    id: str = field(default_factory=new_id)

    @property
    def is_pending(self) -> bool:
        return self.status == StepStatus.PENDING


@dataclass
class ApprovalRequest:
    tenant_id: str
    chain_id: str
    entity_type: EntityType
    entity_id: str
    requester_id: str
    entity_value: Optional[Decimal] = None
    current_level: int = 1
    status: RequestStatus = RequestStatus.PENDING
    metadata: dict[str, Any] = field(default_factory=dict)
    requested_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    steps: list[ApprovalStep] = field(default_factory=list)
    # Optimistic concurrency token; bumped by the store on every successful save
    version: int = 1
    id: str = field(default_factory=new_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES

    def find_step(self, step_id: str) -> Optional[ApprovalStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def steps_at(self, level: int) -> list[ApprovalStep]:
        return [s for s in self.steps if s.level == level]

    def pending_steps(self) -> list[ApprovalStep]:
        return [s for s in self.steps if s.is_pending]


@dataclass
class PendingApproval:
    """Read model for an approver's inbox."""

    request_id: str
    step_id: str
    entity_type: EntityType
    entity_id: str
    requester_id: str
    level: int
    level_name: str
    current_level: int
    allow_delegation: bool
    delegated_from: Optional[str]
    requested_at: datetime
    expires_at: Optional[datetime]
    is_overdue: bool = False
