"""
In-process ApprovalStore.

Everything is kept in dicts behind one asyncio.Lock; aggregates are deep
copied on the way in and out so callers only ever mutate private copies.
Useful for embedding the engine without a database and for tests.
"""

import asyncio
import copy
from typing import Optional

import structlog

from approval_engine.domain import (
    OPEN_REQUEST_STATUSES,
    ApprovalChain,
    ApprovalRequest,
    EntityType,
    StepStatus,
    utcnow,
)
from approval_engine.errors import (
    ChainInUseError,
    ConcurrentModificationError,
    DuplicateApprovalRequestError,
    NotFoundError,
)
from approval_engine.store.base import ApprovalStore

logger = structlog.get_logger()


class InMemoryApprovalStore(ApprovalStore):
    def __init__(self):
        self._lock = asyncio.Lock()
        self._chains: dict[str, ApprovalChain] = {}
        self._requests: dict[str, ApprovalRequest] = {}

    # ---------- Chains ----------

    def _clear_default_siblings(self, chain: ApprovalChain) -> None:
        for other in self._chains.values():
            if (
                other.id != chain.id
                and other.tenant_id == chain.tenant_id
                and other.entity_type == chain.entity_type
                and other.is_default
            ):
                other.is_default = False
                other.updated_at = utcnow()

    async def create_chain(self, chain: ApprovalChain) -> ApprovalChain:
        async with self._lock:
            if chain.is_default:
                self._clear_default_siblings(chain)
            self._chains[chain.id] = copy.deepcopy(chain)
            return copy.deepcopy(chain)

    async def update_chain(
        self, chain: ApprovalChain, replace_levels: bool = False
    ) -> ApprovalChain:
        async with self._lock:
            stored = self._chains.get(chain.id)
            if stored is None:
                raise NotFoundError(f"Approval chain with ID '{chain.id}' not found")
            if chain.is_default:
                self._clear_default_siblings(chain)
            updated = copy.deepcopy(chain)
            if not replace_levels:
                updated.levels = copy.deepcopy(stored.levels)
            updated.updated_at = utcnow()
            self._chains[chain.id] = updated
            return copy.deepcopy(updated)

    async def delete_chain(self, chain_id: str) -> None:
        async with self._lock:
            active = sum(
                1
                for r in self._requests.values()
                if r.chain_id == chain_id and r.status in OPEN_REQUEST_STATUSES
            )
            if active:
                raise ChainInUseError(chain_id, active)
            self._chains.pop(chain_id, None)

    async def set_default_chain(self, chain_id: str) -> ApprovalChain:
        async with self._lock:
            chain = self._chains.get(chain_id)
            if chain is None:
                raise NotFoundError(f"Approval chain with ID '{chain_id}' not found")
            self._clear_default_siblings(chain)
            chain.is_default = True
            chain.updated_at = utcnow()
            return copy.deepcopy(chain)

    async def get_chain(self, chain_id: str) -> Optional[ApprovalChain]:
        chain = self._chains.get(chain_id)
        return copy.deepcopy(chain) if chain else None

    async def find_default_chain(
        self, tenant_id: str, entity_type: EntityType
    ) -> Optional[ApprovalChain]:
        for chain in self._chains.values():
            if (
                chain.tenant_id == tenant_id
                and chain.entity_type == entity_type
                and chain.is_active
                and chain.is_default
            ):
                return copy.deepcopy(chain)
        return None

    async def list_chains(
        self,
        tenant_id: str,
        entity_type: Optional[EntityType] = None,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[ApprovalChain], int]:
        matches = [
            c
            for c in self._chains.values()
            if c.tenant_id == tenant_id
            and (entity_type is None or c.entity_type == entity_type)
            and (is_active is None or c.is_active == is_active)
        ]
        matches.sort(key=lambda c: c.created_at, reverse=True)
        page = matches[offset:offset + limit]
        return [copy.deepcopy(c) for c in page], len(matches)

    # ---------- Requests ----------

    def _open_for_entity(
        self, tenant_id: str, entity_type: EntityType, entity_id: str
    ) -> Optional[ApprovalRequest]:
        for r in self._requests.values():
            if (
                r.tenant_id == tenant_id
                and r.entity_type == entity_type
                and r.entity_id == entity_id
                and r.status in OPEN_REQUEST_STATUSES
            ):
                return r
        return None

    async def create_request(self, request: ApprovalRequest) -> ApprovalRequest:
        async with self._lock:
            if self._open_for_entity(
                request.tenant_id, request.entity_type, request.entity_id
            ):
                raise DuplicateApprovalRequestError(
                    request.entity_type.value, request.entity_id
                )
            self._requests[request.id] = copy.deepcopy(request)
            return copy.deepcopy(request)

    async def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        request = self._requests.get(request_id)
        return copy.deepcopy(request) if request else None

    async def find_open_request(
        self, tenant_id: str, entity_type: EntityType, entity_id: str
    ) -> Optional[ApprovalRequest]:
        request = self._open_for_entity(tenant_id, entity_type, entity_id)
        return copy.deepcopy(request) if request else None

    async def save_request(self, request: ApprovalRequest) -> ApprovalRequest:
        async with self._lock:
            stored = self._requests.get(request.id)
            if stored is None:
                raise NotFoundError(f"Approval request with ID '{request.id}' not found")
            if stored.version != request.version:
                logger.warning(
                    "approval_request_version_conflict",
                    request_id=request.id,
                    expected_version=request.version,
                    stored_version=stored.version,
                )
                raise ConcurrentModificationError(request.id, request.version)
            request.version += 1
            self._requests[request.id] = copy.deepcopy(request)
            return request

    async def list_open_requests(
        self, tenant_id: Optional[str] = None
    ) -> list[ApprovalRequest]:
        return [
            copy.deepcopy(r)
            for r in sorted(self._requests.values(), key=lambda r: r.requested_at)
            if r.status in OPEN_REQUEST_STATUSES
            and (tenant_id is None or r.tenant_id == tenant_id)
        ]

    async def list_requests_pending_for(
        self, tenant_id: str, approver_id: str
    ) -> list[ApprovalRequest]:
        return [
            copy.deepcopy(r)
            for r in self._requests.values()
            if r.tenant_id == tenant_id
            and r.status in OPEN_REQUEST_STATUSES
            and any(
                s.approver_id == approver_id and s.status == StepStatus.PENDING
                for s in r.steps
            )
        ]
