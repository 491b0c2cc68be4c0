"""
Domain events emitted by the approval engine.

Events are published only after the aggregate write they describe has
committed. Notification and audit collaborators subscribe through an
EventSink; the engine itself never delivers anything.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Protocol

import structlog

from approval_engine.domain import EntityType, RequestStatus

logger = structlog.get_logger()


@dataclass(frozen=True, kw_only=True)
class ApprovalEvent:
    name = "approval_event"

    request_id: str
    tenant_id: str
    occurred_at: datetime

    def as_dict(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
            elif isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


@dataclass(frozen=True, kw_only=True)
class RequestSubmitted(ApprovalEvent):
    name = "request_submitted"

    chain_id: str
    entity_type: EntityType
    entity_id: str
    requester_id: str
    level: int


@dataclass(frozen=True, kw_only=True)
class StepAssigned(ApprovalEvent):
    name = "step_assigned"

    step_id: str
    level: int
    approver_id: str


@dataclass(frozen=True, kw_only=True)
class StepApproved(ApprovalEvent):
    name = "step_approved"

    step_id: str
    level: int
    approver_id: str


@dataclass(frozen=True, kw_only=True)
class StepRejected(ApprovalEvent):
    name = "step_rejected"

    step_id: str
    level: int
    approver_id: str
    comments: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class LevelAdvanced(ApprovalEvent):
    name = "level_advanced"

    from_level: int
    to_level: int


@dataclass(frozen=True, kw_only=True)
class RequestCompleted(ApprovalEvent):
    name = "request_completed"

    outcome: RequestStatus
    entity_type: EntityType
    entity_id: str
    requester_id: str


@dataclass(frozen=True, kw_only=True)
class StepDelegated(ApprovalEvent):
    name = "step_delegated"

    step_id: str
    new_step_ids: tuple[str, ...]
    level: int
    from_approver_id: str
    to_approver_ids: tuple[str, ...]
    system_initiated: bool = False


@dataclass(frozen=True, kw_only=True)
class StepEscalated(ApprovalEvent):
    name = "step_escalated"

    step_id: str
    level: int
    escalation_level: int
    from_approver_id: str
    to_approver_ids: tuple[str, ...]


@dataclass(frozen=True, kw_only=True)
class StepOverdue(ApprovalEvent):
    name = "step_overdue"

    step_id: str
    level: int
    approver_id: str
    hours_pending: float


@dataclass(frozen=True, kw_only=True)
class RequestCancelled(ApprovalEvent):
    name = "request_cancelled"

    requester_id: str
    cancelled_steps: int


# ---------- Sinks ----------


class EventSink(Protocol):
    async def emit(self, event: ApprovalEvent) -> None: ...


class LoggingEventSink:
    """Writes every event to the structured log."""

    async def emit(self, event: ApprovalEvent) -> None:
        logger.info(f"approval_event.{event.name}", **event.as_dict())


class RecordingEventSink:
    """Keeps events in memory, in emission order."""

    def __init__(self):
        self.events: list[ApprovalEvent] = []

    async def emit(self, event: ApprovalEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]

    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def clear(self) -> None:
        self.events.clear()


@dataclass
class CompositeEventSink:
    sinks: list = field(default_factory=list)

    async def emit(self, event: ApprovalEvent) -> None:
        for sink in self.sinks:
            await sink.emit(event)


async def publish(sink: EventSink, events: Iterable[ApprovalEvent]) -> None:
    """
    Deliver events to the sink one by one.

    State is already committed when this runs, so a failing subscriber is
    logged and skipped instead of failing the operation.
    """
    for event in events:
        try:
            await sink.emit(event)
        except Exception as e:
            logger.error(
                "approval_event_emit_failed",
                event_name=event.name,
                request_id=event.request_id,
                error=str(e),
            )
