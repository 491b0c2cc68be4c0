"""
Delegation and escalation: reassignment of a PENDING step.

Both paths cancel the original step (CANCELLED, never a rejection) and open
new PENDING steps at the same level, so quorum keeps counting at that level
and the request status never changes here.

  delegate  : approver-initiated, one target user, level must allow it
  escalate  : system-initiated by the escalation scan once the level's
              timeout has elapsed; targets the approvers of the level's
              escalation_level, or flags the step overdue when there is none
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Optional

import structlog

from approval_engine.config import Settings, get_settings
from approval_engine.domain import (
    ApprovalRequest,
    ApprovalStep,
    StepAction,
    StepStatus,
    utcnow,
)
from approval_engine.errors import (
    DelegationNotAllowedError,
    InvalidChainStructureError,
    InvalidDelegationTargetError,
    NoEligibleApproversError,
    NotFoundError,
)
from approval_engine.events import (
    ApprovalEvent,
    EventSink,
    StepDelegated,
    StepEscalated,
    StepOverdue,
    publish,
)
from approval_engine.services.approver_resolver import ApproverResolver
from approval_engine.services.chain_registry import ChainRegistry
from approval_engine.services.lifecycle import (
    assigned_events,
    create_level_steps,
    locate_pending_step,
)
from approval_engine.services.mutation import mutate_request
from approval_engine.services.role_resolver import RoleResolver
from approval_engine.store.base import ApprovalStore

logger = structlog.get_logger()


class EscalationOutcome(str, Enum):
    ESCALATED = "ESCALATED"
    MARKED_OVERDUE = "MARKED_OVERDUE"
    SKIPPED = "SKIPPED"


def step_deadline(step: ApprovalStep, timeout_hours: Optional[int]) -> Optional[datetime]:
    if timeout_hours is None:
        return None
    return step.requested_at + timedelta(hours=timeout_hours)


def _holders(request: ApprovalRequest, level: int) -> set[str]:
    """Approvers with a PENDING or APPROVED step at the level; none of them may get another."""
    return {
        s.approver_id
        for s in request.steps_at(level)
        if s.status in (StepStatus.PENDING, StepStatus.APPROVED)
    }


def _reassign(
    request: ApprovalRequest,
    step: ApprovalStep,
    approver_ids: Iterable[str],
    action: StepAction,
    now: datetime,
    comments: Optional[str] = None,
    escalated_from: Optional[str] = None,
) -> list[ApprovalStep]:
    step.status = StepStatus.CANCELLED
    step.action = action
    step.responded_at = now
    if comments is not None:
        step.comments = comments
    return create_level_steps(
        request,
        step.level,
        approver_ids,
        now,
        delegated_from=step.approver_id,
        escalated_from=escalated_from,
    )


class DelegationHandler:
    def __init__(
        self,
        store: ApprovalStore,
        registry: ChainRegistry,
        resolver: ApproverResolver,
        role_resolver: RoleResolver,
        event_sink: EventSink,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._registry = registry
        self._resolver = resolver
        self._roles = role_resolver
        self._events = event_sink
        self._settings = settings or get_settings()
        self._clock = clock

    async def _level_definition(self, request: ApprovalRequest, level_number: int):
        chain = await self._registry.get_definition(request.chain_id)
        if chain is None:
            raise NotFoundError("Approval chain not found", {"chain_id": request.chain_id})
        level = chain.level(level_number)
        if level is None:
            raise InvalidChainStructureError(
                f"Level {level_number} is no longer defined on the chain",
                {"chain_id": chain.id, "level": level_number},
            )
        return chain, level

    async def delegate(
        self,
        request_id: str,
        step_id: str,
        tenant_id: str,
        from_approver_id: str,
        to_user_id: str,
        comments: Optional[str] = None,
    ) -> ApprovalRequest:
        async def apply(request: ApprovalRequest) -> list[ApprovalEvent]:
            step = locate_pending_step(request, step_id, tenant_id, from_approver_id)
            _, level = await self._level_definition(request, step.level)
            if not level.allow_delegation:
                raise DelegationNotAllowedError(step.level)
            if to_user_id == from_approver_id:
                raise InvalidDelegationTargetError(
                    "Cannot delegate a step to its current approver",
                    {"step_id": step.id},
                )
            if not await self._roles.is_active_tenant_user(tenant_id, to_user_id):
                raise NotFoundError(
                    "Delegate user not found", {"user_id": to_user_id}
                )
            if to_user_id in _holders(request, step.level):
                raise InvalidDelegationTargetError(
                    "User already holds a pending or approved step at this level",
                    {"user_id": to_user_id, "level": step.level},
                )

            now = self._clock()
            new_steps = _reassign(
                request, step, [to_user_id], StepAction.DELEGATE, now, comments=comments
            )
            logger.info(
                "approval_step_delegated",
                request_id=request.id,
                step_id=step.id,
                level=step.level,
                from_approver_id=from_approver_id,
                to_user_id=to_user_id,
            )
            events: list[ApprovalEvent] = [
                StepDelegated(
                    request_id=request.id,
                    tenant_id=request.tenant_id,
                    occurred_at=now,
                    step_id=step.id,
                    new_step_ids=tuple(s.id for s in new_steps),
                    level=step.level,
                    from_approver_id=from_approver_id,
                    to_approver_ids=(to_user_id,),
                )
            ]
            events.extend(assigned_events(request, new_steps, now))
            return events

        request, events = await mutate_request(
            self._store, request_id, apply, max_retries=self._settings.MAX_CONFLICT_RETRIES
        )
        await publish(self._events, events)
        return request

    async def escalate(
        self, request_id: str, step_id: str, now: Optional[datetime] = None
    ) -> EscalationOutcome:
        """
        Act on one timed-out step. A step that is no longer PENDING, no longer
        on the current level, already handled by an earlier scan, or not yet
        due is skipped silently: those are the benign races with approvers.
        Steps that were themselves created by escalation are only flagged
        overdue, never escalated again.
        """
        now = now or self._clock()
        outcome = EscalationOutcome.SKIPPED

        async def apply(request: ApprovalRequest) -> Optional[list[ApprovalEvent]]:
            nonlocal outcome
            outcome = EscalationOutcome.SKIPPED
            if request.is_terminal:
                return None
            step = request.find_step(step_id)
            if (
                step is None
                or not step.is_pending
                or step.escalated_at is not None
                or step.level != request.current_level
            ):
                return None

            chain, level = await self._level_definition(request, step.level)
            deadline = step_deadline(step, level.timeout_hours)
            if deadline is None or now < deadline:
                return None

            if level.escalation_level is not None and step.escalated_from is None:
                target = chain.level(level.escalation_level)
                if target is None:
                    raise InvalidChainStructureError(
                        "Escalation level is not defined on the chain",
                        {"level": level.level, "escalation_level": level.escalation_level},
                    )
                approvers = await self._resolver.resolve(target, request.tenant_id) - _holders(
                    request, step.level
                )
                if not approvers:
                    raise NoEligibleApproversError(target.level, request.tenant_id)

                new_steps = _reassign(
                    request, step, approvers, StepAction.ESCALATE, now, escalated_from=step.id
                )
                step.escalated_at = now
                outcome = EscalationOutcome.ESCALATED
                logger.info(
                    "approval_step_escalated",
                    request_id=request.id,
                    step_id=step.id,
                    level=step.level,
                    escalation_level=target.level,
                    approvers=len(new_steps),
                )
                to_ids = tuple(s.approver_id for s in new_steps)
                events: list[ApprovalEvent] = [
                    StepEscalated(
                        request_id=request.id,
                        tenant_id=request.tenant_id,
                        occurred_at=now,
                        step_id=step.id,
                        level=step.level,
                        escalation_level=target.level,
                        from_approver_id=step.approver_id,
                        to_approver_ids=to_ids,
                    ),
                    StepDelegated(
                        request_id=request.id,
                        tenant_id=request.tenant_id,
                        occurred_at=now,
                        step_id=step.id,
                        new_step_ids=tuple(s.id for s in new_steps),
                        level=step.level,
                        from_approver_id=step.approver_id,
                        to_approver_ids=to_ids,
                        system_initiated=True,
                    ),
                ]
                events.extend(assigned_events(request, new_steps, now))
                return events

            step.is_overdue = True
            step.escalated_at = now
            outcome = EscalationOutcome.MARKED_OVERDUE
            hours_pending = round((now - step.requested_at).total_seconds() / 3600, 2)
            logger.warning(
                "approval_step_overdue",
                request_id=request.id,
                step_id=step.id,
                level=step.level,
                approver_id=step.approver_id,
                hours_pending=hours_pending,
            )
            return [
                StepOverdue(
                    request_id=request.id,
                    tenant_id=request.tenant_id,
                    occurred_at=now,
                    step_id=step.id,
                    level=step.level,
                    approver_id=step.approver_id,
                    hours_pending=hours_pending,
                )
            ]

        _, events = await mutate_request(
            self._store, request_id, apply, max_retries=self._settings.MAX_CONFLICT_RETRIES
        )
        await publish(self._events, events)
        return outcome
