"""
Composition root: wires the store, directory and event sink into the five
engine components and exposes their operations behind one facade.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

import structlog

from approval_engine.config import Settings, get_settings
from approval_engine.domain import (
    ApprovalChain,
    ApprovalRequest,
    EntityType,
    PendingApproval,
    utcnow,
)
from approval_engine.events import EventSink, LoggingEventSink
from approval_engine.schemas.chain import ChainCreate, ChainQuery, ChainResponse, ChainUpdate
from approval_engine.schemas.common import PaginatedResponse
from approval_engine.schemas.request import SubmitApproval
from approval_engine.services.approver_resolver import ApproverResolver
from approval_engine.services.chain_registry import ChainRegistry
from approval_engine.services.delegation import DelegationHandler, EscalationOutcome
from approval_engine.services.escalation import EscalationReport, EscalationScheduler
from approval_engine.services.lifecycle import RequestLifecycleManager
from approval_engine.services.quorum import QuorumEvaluator
from approval_engine.services.role_resolver import RoleResolver
from approval_engine.store.base import ApprovalStore

logger = structlog.get_logger()


class ApprovalEngine:
    def __init__(
        self,
        registry: ChainRegistry,
        lifecycle: RequestLifecycleManager,
        delegation: DelegationHandler,
        scheduler: EscalationScheduler,
    ):
        self.registry = registry
        self.lifecycle = lifecycle
        self.delegation = delegation
        self.scheduler = scheduler

    # ---------- Chains ----------

    async def create_chain(self, tenant_id: str, data: ChainCreate) -> ApprovalChain:
        return await self.registry.create_chain(tenant_id, data)

    async def update_chain(self, chain_id: str, tenant_id: str, patch: ChainUpdate) -> ApprovalChain:
        return await self.registry.update_chain(chain_id, tenant_id, patch)

    async def delete_chain(self, chain_id: str, tenant_id: str) -> None:
        await self.registry.delete_chain(chain_id, tenant_id)

    async def set_default_chain(self, chain_id: str, tenant_id: str) -> ApprovalChain:
        return await self.registry.set_default_chain(chain_id, tenant_id)

    async def get_chain(self, chain_id: str, tenant_id: str) -> ApprovalChain:
        return await self.registry.get_chain(chain_id, tenant_id)

    async def list_chains(
        self, tenant_id: str, query: Optional[ChainQuery] = None
    ) -> PaginatedResponse[ChainResponse]:
        return await self.registry.list_chains(tenant_id, query)

    # ---------- Requests ----------

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
        return await self.lifecycle.submit_for_approval(
            entity_type,
            entity_id,
            entity_value,
            tenant_id,
            requester_id,
            chain_id=chain_id,
            metadata=metadata,
            expires_at=expires_at,
        )

    async def submit(
        self, data: SubmitApproval, tenant_id: str, requester_id: str
    ) -> ApprovalRequest:
        return await self.submit_for_approval(
            data.entity_type,
            data.entity_id,
            data.entity_value,
            tenant_id,
            requester_id,
            chain_id=data.chain_id,
            metadata=data.metadata,
            expires_at=data.expires_at,
        )

    async def approve(
        self,
        request_id: str,
        step_id: str,
        tenant_id: str,
        approver_id: str,
        comments: Optional[str] = None,
    ) -> ApprovalRequest:
        return await self.lifecycle.approve(request_id, step_id, tenant_id, approver_id, comments)

    async def reject(
        self,
        request_id: str,
        step_id: str,
        tenant_id: str,
        approver_id: str,
        comments: Optional[str] = None,
    ) -> ApprovalRequest:
        return await self.lifecycle.reject(request_id, step_id, tenant_id, approver_id, comments)

    async def delegate(
        self,
        request_id: str,
        step_id: str,
        tenant_id: str,
        from_approver_id: str,
        to_user_id: str,
        comments: Optional[str] = None,
    ) -> ApprovalRequest:
        return await self.delegation.delegate(
            request_id, step_id, tenant_id, from_approver_id, to_user_id, comments
        )

    async def cancel_request(
        self, request_id: str, tenant_id: str, requester_id: str
    ) -> ApprovalRequest:
        return await self.lifecycle.cancel_request(request_id, tenant_id, requester_id)

    async def get_request(self, request_id: str, tenant_id: str) -> ApprovalRequest:
        return await self.lifecycle.get_request(request_id, tenant_id)

    async def get_request_by_entity(
        self, entity_type: EntityType, entity_id: str, tenant_id: str
    ) -> Optional[ApprovalRequest]:
        return await self.lifecycle.get_request_by_entity(entity_type, entity_id, tenant_id)

    async def get_pending_approvals(self, tenant_id: str, user_id: str) -> list[PendingApproval]:
        return await self.lifecycle.get_pending_approvals(tenant_id, user_id)

    # ---------- Escalation ----------

    async def escalate_step(
        self, request_id: str, step_id: str, now: Optional[datetime] = None
    ) -> EscalationOutcome:
        return await self.delegation.escalate(request_id, step_id, now)

    async def run_escalation_scan(self, now: Optional[datetime] = None) -> EscalationReport:
        return await self.scheduler.scan(now)


def build_engine(
    store: ApprovalStore,
    role_resolver: RoleResolver,
    event_sink: Optional[EventSink] = None,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
) -> ApprovalEngine:
    settings = settings or get_settings()
    sink = event_sink or LoggingEventSink()

    registry = ChainRegistry(store)
    resolver = ApproverResolver(role_resolver, settings)
    lifecycle = RequestLifecycleManager(
        store,
        registry,
        resolver,
        sink,
        quorum=QuorumEvaluator(),
        settings=settings,
        clock=clock,
    )
    delegation = DelegationHandler(
        store, registry, resolver, role_resolver, sink, settings=settings, clock=clock
    )
    scheduler = EscalationScheduler(
        store, registry, lifecycle, delegation, settings=settings, clock=clock
    )
    logger.debug("approval_engine_built", store=type(store).__name__)
    return ApprovalEngine(registry, lifecycle, delegation, scheduler)
