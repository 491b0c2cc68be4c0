"""
Request lifecycle: submission, approve/reject, level advancement,
completion, cancellation and expiry.

State machine:
  PENDING → IN_PROGRESS → {APPROVED, REJECTED, CANCELLED, EXPIRED}

PENDING only exists while the first level's steps are being created.

Rules:
  - a level closes once min_approvers of its steps are APPROVED; remaining
    PENDING steps of that level stay PENDING but no longer affect the outcome
  - one REJECTED step on the current level rejects the whole request; other
    steps are left untouched for audit
  - decisions on steps of an already-closed level are recorded but inert
  - level definitions are read from the chain at evaluation time, so edits
    reach requests that have not yet arrived at the edited level
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

import structlog

from approval_engine.config import Settings, get_settings
from approval_engine.domain import (
    ApprovalChain,
    ApprovalRequest,
    ApprovalStep,
    EntityType,
    PendingApproval,
    RequestStatus,
    StepAction,
    StepStatus,
    utcnow,
)
from approval_engine.errors import (
    DuplicateApprovalRequestError,
    ForbiddenError,
    InvalidChainStructureError,
    NoApplicableLevelError,
    NoDefaultChainError,
    NoLevelsDefinedError,
    NotFoundError,
    RequestAlreadyFinalizedError,
    StepAlreadyProcessedError,
    TenantMismatchError,
)
from approval_engine.events import (
    ApprovalEvent,
    EventSink,
    LevelAdvanced,
    RequestCancelled,
    RequestCompleted,
    RequestSubmitted,
    StepApproved,
    StepAssigned,
    StepRejected,
    publish,
)
from approval_engine.services.approver_resolver import ApproverResolver
from approval_engine.services.chain_registry import ChainRegistry
from approval_engine.services.mutation import mutate_request
from approval_engine.services.quorum import QuorumEvaluator
from approval_engine.store.base import ApprovalStore

logger = structlog.get_logger()


def create_level_steps(
    request: ApprovalRequest,
    level: int,
    approver_ids: Iterable[str],
    now: datetime,
    delegated_from: Optional[str] = None,
    escalated_from: Optional[str] = None,
) -> list[ApprovalStep]:
    """One PENDING step per approver, appended to the request."""
    steps = [
        ApprovalStep(
            request_id=request.id,
            level=level,
            approver_id=approver_id,
            delegated_from=delegated_from,
            escalated_from=escalated_from,
            requested_at=now,
        )
        for approver_id in sorted(approver_ids)
    ]
    request.steps.extend(steps)
    return steps


def assigned_events(request: ApprovalRequest, steps: list[ApprovalStep], now: datetime) -> list[ApprovalEvent]:
    return [
        StepAssigned(
            request_id=request.id,
            tenant_id=request.tenant_id,
            occurred_at=now,
            step_id=s.id,
            level=s.level,
            approver_id=s.approver_id,
        )
        for s in steps
    ]


def ensure_tenant(request: ApprovalRequest, tenant_id: str) -> None:
    if request.tenant_id != tenant_id:
        raise TenantMismatchError("approval_request", request.id)


def locate_pending_step(
    request: ApprovalRequest, step_id: str, tenant_id: str, approver_id: str
) -> ApprovalStep:
    """Tenant, ownership and status preconditions shared by approve/reject/delegate."""
    ensure_tenant(request, tenant_id)
    step = request.find_step(step_id)
    if step is None or step.approver_id != approver_id:
        raise NotFoundError("Approval step not found", {"step_id": step_id})
    if not step.is_pending:
        raise StepAlreadyProcessedError(step.id, step.status.value)
    if request.is_terminal:
        raise RequestAlreadyFinalizedError(request.id, request.status.value)
    return step


class RequestLifecycleManager:
    def __init__(
        self,
        store: ApprovalStore,
        registry: ChainRegistry,
        resolver: ApproverResolver,
        event_sink: EventSink,
        quorum: Optional[QuorumEvaluator] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._registry = registry
        self._resolver = resolver
        self._events = event_sink
        self._quorum = quorum or QuorumEvaluator()
        self._settings = settings or get_settings()
        self._clock = clock

    async def _mutate(self, request_id: str, apply) -> ApprovalRequest:
        request, events = await mutate_request(
            self._store,
            request_id,
            apply,
            max_retries=self._settings.MAX_CONFLICT_RETRIES,
        )
        await publish(self._events, events)
        return request

    # ---------- Submission ----------

    async def submit_for_approval(
        self,
        entity_type: EntityType,
        entity_id: str,
        entity_value: Optional[Decimal],
        tenant_id: str,
        requester_id: str,
        chain_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
    ) -> ApprovalRequest:
        entity_type = EntityType(entity_type)
        chain = await self._registry.resolve_chain_for_submission(
            tenant_id, entity_type, chain_id
        )
        if chain is None:
            raise NoDefaultChainError(entity_type.value)
        if not chain.levels:
            raise NoLevelsDefinedError(chain.id)

        if await self._store.find_open_request(tenant_id, entity_type, entity_id):
            raise DuplicateApprovalRequestError(entity_type.value, entity_id)

        value = Decimal(str(entity_value)) if entity_value is not None else None
        levels = self._registry.select_applicable_levels(chain, value)
        if not levels:
            raise NoApplicableLevelError(chain.id, value)
        first = levels[0]
        approvers = await self._resolver.resolve(first, tenant_id)

        now = self._clock()
        request = ApprovalRequest(
            tenant_id=tenant_id,
            chain_id=chain.id,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_value=value,
            requester_id=requester_id,
            current_level=first.level,
            status=RequestStatus.PENDING,
            metadata=dict(metadata or {}),
            requested_at=now,
            expires_at=expires_at,
        )
        steps = create_level_steps(request, first.level, approvers, now)
        request.status = RequestStatus.IN_PROGRESS

        await self._store.create_request(request)

        logger.info(
            "approval_request_submitted",
            request_id=request.id,
            tenant_id=tenant_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            chain_id=chain.id,
            level=first.level,
            approvers=len(steps),
        )
        events: list[ApprovalEvent] = [
            RequestSubmitted(
                request_id=request.id,
                tenant_id=tenant_id,
                occurred_at=now,
                chain_id=chain.id,
                entity_type=entity_type,
                entity_id=entity_id,
                requester_id=requester_id,
                level=first.level,
            )
        ]
        events.extend(assigned_events(request, steps, now))
        await publish(self._events, events)
        return request

    # ---------- Decisions ----------

    async def _close_level_if_satisfied(
        self, request: ApprovalRequest, level_number: int, now: datetime
    ) -> list[ApprovalEvent]:
        chain = await self._registry.get_definition(request.chain_id)
        if chain is None:
            raise NotFoundError("Approval chain not found", {"chain_id": request.chain_id})
        level = chain.level(level_number)
        if level is None:
            raise InvalidChainStructureError(
                f"Level {level_number} is no longer defined on the chain",
                {"chain_id": chain.id, "level": level_number},
            )

        result = self._quorum.evaluate(level, request.steps)
        if not result.is_satisfied:
            logger.info(
                "approval_level_awaiting_quorum",
                request_id=request.id,
                level=level_number,
                approved=result.approved,
                required=result.required,
            )
            return []

        next_level = self._next_applicable_level(chain, request, level_number)
        if next_level is None:
            request.status = RequestStatus.APPROVED
            request.completed_at = now
            logger.info(
                "approval_request_approved",
                request_id=request.id,
                tenant_id=request.tenant_id,
                final_level=level_number,
            )
            return [self._completed(request, now)]

        approvers = await self._resolver.resolve(next_level, request.tenant_id)
        request.current_level = next_level.level
        new_steps = create_level_steps(request, next_level.level, approvers, now)
        logger.info(
            "approval_level_advanced",
            request_id=request.id,
            from_level=level_number,
            to_level=next_level.level,
            approvers=len(new_steps),
        )
        events: list[ApprovalEvent] = [
            LevelAdvanced(
                request_id=request.id,
                tenant_id=request.tenant_id,
                occurred_at=now,
                from_level=level_number,
                to_level=next_level.level,
            )
        ]
        events.extend(assigned_events(request, new_steps, now))
        return events

    def _next_applicable_level(
        self, chain: ApprovalChain, request: ApprovalRequest, after: int
    ):
        for lvl in self._registry.select_applicable_levels(chain, request.entity_value):
            if lvl.level > after:
                return lvl
        return None

    def _completed(self, request: ApprovalRequest, now: datetime) -> RequestCompleted:
        return RequestCompleted(
            request_id=request.id,
            tenant_id=request.tenant_id,
            occurred_at=now,
            outcome=request.status,
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            requester_id=request.requester_id,
        )

    async def approve(
        self,
        request_id: str,
        step_id: str,
        tenant_id: str,
        approver_id: str,
        comments: Optional[str] = None,
    ) -> ApprovalRequest:
        async def apply(request: ApprovalRequest) -> list[ApprovalEvent]:
            step = locate_pending_step(request, step_id, tenant_id, approver_id)
            now = self._clock()
            step.status = StepStatus.APPROVED
            step.action = StepAction.APPROVE
            step.comments = comments
            step.responded_at = now
            events: list[ApprovalEvent] = [
                StepApproved(
                    request_id=request.id,
                    tenant_id=request.tenant_id,
                    occurred_at=now,
                    step_id=step.id,
                    level=step.level,
                    approver_id=approver_id,
                )
            ]
            if step.level != request.current_level:
                logger.info(
                    "approval_step_inert",
                    request_id=request.id,
                    step_id=step.id,
                    step_level=step.level,
                    current_level=request.current_level,
                )
                return events
            events.extend(await self._close_level_if_satisfied(request, step.level, now))
            return events

        return await self._mutate(request_id, apply)

    async def reject(
        self,
        request_id: str,
        step_id: str,
        tenant_id: str,
        approver_id: str,
        comments: Optional[str] = None,
    ) -> ApprovalRequest:
        async def apply(request: ApprovalRequest) -> list[ApprovalEvent]:
            step = locate_pending_step(request, step_id, tenant_id, approver_id)
            now = self._clock()
            step.status = StepStatus.REJECTED
            step.action = StepAction.REJECT
            step.comments = comments
            step.responded_at = now
            events: list[ApprovalEvent] = [
                StepRejected(
                    request_id=request.id,
                    tenant_id=request.tenant_id,
                    occurred_at=now,
                    step_id=step.id,
                    level=step.level,
                    approver_id=approver_id,
                    comments=comments,
                )
            ]
            if step.level != request.current_level:
                logger.info(
                    "approval_step_inert",
                    request_id=request.id,
                    step_id=step.id,
                    step_level=step.level,
                    current_level=request.current_level,
                )
                return events

            request.status = RequestStatus.REJECTED
            request.completed_at = now
            logger.info(
                "approval_request_rejected",
                request_id=request.id,
                tenant_id=request.tenant_id,
                level=step.level,
                approver_id=approver_id,
            )
            events.append(self._completed(request, now))
            return events

        return await self._mutate(request_id, apply)

    # ---------- Cancellation / expiry ----------

    async def cancel_request(
        self, request_id: str, tenant_id: str, requester_id: str
    ) -> ApprovalRequest:
        async def apply(request: ApprovalRequest) -> list[ApprovalEvent]:
            ensure_tenant(request, tenant_id)
            if request.requester_id != requester_id:
                raise ForbiddenError(
                    "Only the requester can cancel the request",
                    {"request_id": request.id},
                )
            if request.is_terminal:
                raise RequestAlreadyFinalizedError(request.id, request.status.value)

            now = self._clock()
            cancelled = 0
            for step in request.pending_steps():
                step.status = StepStatus.CANCELLED
                step.responded_at = now
                cancelled += 1
            request.status = RequestStatus.CANCELLED
            request.completed_at = now
            logger.info(
                "approval_request_cancelled",
                request_id=request.id,
                tenant_id=tenant_id,
                cancelled_steps=cancelled,
            )
            return [
                RequestCancelled(
                    request_id=request.id,
                    tenant_id=request.tenant_id,
                    occurred_at=now,
                    requester_id=requester_id,
                    cancelled_steps=cancelled,
                )
            ]

        return await self._mutate(request_id, apply)

    async def expire_request(self, request_id: str, now: Optional[datetime] = None) -> bool:
        """Move an open request past its expires_at to EXPIRED. Returns False when nothing changed."""
        now = now or self._clock()
        expired = False

        async def apply(request: ApprovalRequest) -> Optional[list[ApprovalEvent]]:
            nonlocal expired
            if request.is_terminal or request.expires_at is None or request.expires_at > now:
                return None
            for step in request.pending_steps():
                step.status = StepStatus.CANCELLED
                step.responded_at = now
            request.status = RequestStatus.EXPIRED
            request.completed_at = now
            expired = True
            logger.info(
                "approval_request_expired",
                request_id=request.id,
                tenant_id=request.tenant_id,
                expires_at=request.expires_at.isoformat(),
            )
            return [self._completed(request, now)]

        await self._mutate(request_id, apply)
        return expired

    # ---------- Reads ----------

    async def get_request(self, request_id: str, tenant_id: str) -> ApprovalRequest:
        request = await self._store.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Approval request with ID '{request_id}' not found")
        ensure_tenant(request, tenant_id)
        return request

    async def get_request_by_entity(
        self, entity_type: EntityType, entity_id: str, tenant_id: str
    ) -> Optional[ApprovalRequest]:
        return await self._store.find_open_request(
            tenant_id, EntityType(entity_type), entity_id
        )

    async def get_pending_approvals(
        self, tenant_id: str, user_id: str
    ) -> list[PendingApproval]:
        requests = await self._store.list_requests_pending_for(tenant_id, user_id)
        chains: dict[str, Optional[ApprovalChain]] = {}
        items: list[PendingApproval] = []

        for request in requests:
            if request.is_terminal:
                continue
            if request.chain_id not in chains:
                chains[request.chain_id] = await self._registry.get_definition(request.chain_id)
            chain = chains[request.chain_id]

            for step in request.steps:
                if step.approver_id != user_id or not step.is_pending:
                    continue
                level = chain.level(step.level) if chain else None
                items.append(
                    PendingApproval(
                        request_id=request.id,
                        step_id=step.id,
                        entity_type=request.entity_type,
                        entity_id=request.entity_id,
                        requester_id=request.requester_id,
                        level=step.level,
                        level_name=level.name if level else f"Level {step.level}",
                        current_level=request.current_level,
                        allow_delegation=level.allow_delegation if level else False,
                        delegated_from=step.delegated_from,
                        requested_at=step.requested_at,
                        expires_at=request.expires_at,
                        is_overdue=step.is_overdue,
                    )
                )

        items.sort(key=lambda item: item.requested_at)
        return items
