"""
Storage interface consumed by the approval engine.

Implementations must provide:
  - atomic default-flag handling per (tenant, entity type),
  - at most one open request per (tenant, entity type, entity id),
  - a version check on save_request so concurrent writers to the same
    request serialize (the loser gets ConcurrentModificationError),
  - copies on read: mutating a returned aggregate never touches stored state
    until save_request succeeds.
"""

from abc import ABC, abstractmethod
from typing import Optional

from approval_engine.domain import ApprovalChain, ApprovalRequest, EntityType


class ApprovalStore(ABC):
    # ---------- Chains ----------

    @abstractmethod
    async def create_chain(self, chain: ApprovalChain) -> ApprovalChain:
        """Persist a new chain. If chain.is_default, clear the flag on its siblings first."""

    @abstractmethod
    async def update_chain(
        self, chain: ApprovalChain, replace_levels: bool = False
    ) -> ApprovalChain:
        """Persist chain attributes (and levels when replace_levels). Same default handling as create."""

    @abstractmethod
    async def delete_chain(self, chain_id: str) -> None:
        """Delete the chain. Raises ChainInUseError while an open request references it."""

    @abstractmethod
    async def set_default_chain(self, chain_id: str) -> ApprovalChain:
        """Make chain_id the only default for its (tenant, entity type)."""

    @abstractmethod
    async def get_chain(self, chain_id: str) -> Optional[ApprovalChain]: ...

    @abstractmethod
    async def find_default_chain(
        self, tenant_id: str, entity_type: EntityType
    ) -> Optional[ApprovalChain]:
        """Active default chain for the tenant + entity type, if any."""

    @abstractmethod
    async def list_chains(
        self,
        tenant_id: str,
        entity_type: Optional[EntityType] = None,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[ApprovalChain], int]:
        """Page of chains (newest first) and the total count."""

    # ---------- Requests ----------

    @abstractmethod
    async def create_request(self, request: ApprovalRequest) -> ApprovalRequest:
        """Insert request + steps. Raises DuplicateApprovalRequestError if the entity already has an open request."""

    @abstractmethod
    async def get_request(self, request_id: str) -> Optional[ApprovalRequest]: ...

    @abstractmethod
    async def find_open_request(
        self, tenant_id: str, entity_type: EntityType, entity_id: str
    ) -> Optional[ApprovalRequest]: ...

    @abstractmethod
    async def save_request(self, request: ApprovalRequest) -> ApprovalRequest:
        """
        Write request + steps if the stored version equals request.version,
        then bump request.version. Raises ConcurrentModificationError otherwise.
        """

    @abstractmethod
    async def list_open_requests(
        self, tenant_id: Optional[str] = None
    ) -> list[ApprovalRequest]:
        """Open requests, across all tenants when tenant_id is None."""

    @abstractmethod
    async def list_requests_pending_for(
        self, tenant_id: str, approver_id: str
    ) -> list[ApprovalRequest]:
        """Open requests holding at least one PENDING step assigned to approver_id."""
