"""
Chain registry: owns approval chain definitions.

Structural rules checked on create and whenever levels are replaced:
  - level numbers are exactly 1..N (no gaps, no duplicates)
  - escalation_level points at a level of the same chain, other than itself
  - threshold_min < threshold_max when both are set
  - USER levels name a user, ROLE levels name a role

A chain may be saved with zero levels; submission refuses it later
(NoLevelsDefinedError).
"""

from decimal import Decimal
from typing import Optional

import structlog

from approval_engine.domain import (
    ApprovalChain,
    ApprovalChainLevel,
    ApproverType,
    EntityType,
    utcnow,
)
from approval_engine.errors import (
    InvalidChainStructureError,
    NoApplicableLevelError,
    NotFoundError,
    TenantMismatchError,
)
from approval_engine.schemas.chain import (
    ChainCreate,
    ChainQuery,
    ChainResponse,
    ChainUpdate,
    LevelSpec,
)
from approval_engine.schemas.common import PaginatedResponse, PaginationMeta
from approval_engine.store.base import ApprovalStore

logger = structlog.get_logger()


def validate_levels(levels: list[LevelSpec]) -> None:
    """Raise InvalidChainStructureError unless the levels form a well-formed 1..N ladder."""
    numbers = sorted(spec.level for spec in levels)
    if numbers != list(range(1, len(numbers) + 1)):
        raise InvalidChainStructureError(
            "Levels must be sequential starting from 1",
            {"levels": numbers},
        )

    present = set(numbers)
    for spec in levels:
        if spec.escalation_level is not None:
            if spec.escalation_level not in present or spec.escalation_level == spec.level:
                raise InvalidChainStructureError(
                    "Escalation level must reference another level of the chain",
                    {"level": spec.level, "escalation_level": spec.escalation_level},
                )
        if (
            spec.threshold_min is not None
            and spec.threshold_max is not None
            and spec.threshold_min >= spec.threshold_max
        ):
            raise InvalidChainStructureError(
                "threshold_min must be lower than threshold_max",
                {"level": spec.level},
            )
        if spec.approver_type == ApproverType.USER and not spec.approver_user_id:
            raise InvalidChainStructureError(
                "User ID required for USER approver type", {"level": spec.level}
            )
        if spec.approver_type == ApproverType.ROLE and not spec.approver_role_id:
            raise InvalidChainStructureError(
                "Role ID required for ROLE approver type", {"level": spec.level}
            )


def _build_levels(levels: list[LevelSpec]) -> list[ApprovalChainLevel]:
    return [
        ApprovalChainLevel(
            level=spec.level,
            name=spec.name,
            approver_type=spec.approver_type,
            approver_role_id=spec.approver_role_id,
            approver_user_id=spec.approver_user_id,
            min_approvers=spec.min_approvers,
            allow_delegation=spec.allow_delegation,
            threshold_min=spec.threshold_min,
            threshold_max=spec.threshold_max,
            timeout_hours=spec.timeout_hours,
            escalation_level=spec.escalation_level,
        )
        for spec in sorted(levels, key=lambda s: s.level)
    ]


def select_applicable_levels(
    chain: ApprovalChain, entity_value: Optional[Decimal]
) -> list[ApprovalChainLevel]:
    """
    Levels whose [threshold_min, threshold_max) contains entity_value, in level
    order. Levels without thresholds always apply. An empty result on a chain
    that declares thresholds raises NoApplicableLevelError.
    """
    value = Decimal(str(entity_value)) if entity_value is not None else None
    levels = sorted(chain.levels, key=lambda lvl: lvl.level)
    applicable = [lvl for lvl in levels if lvl.applies_to(value)]
    if not applicable and chain.declares_thresholds:
        raise NoApplicableLevelError(chain.id, entity_value)
    return applicable


class ChainRegistry:
    def __init__(self, store: ApprovalStore):
        self._store = store

    async def _get_owned(self, chain_id: str, tenant_id: str) -> ApprovalChain:
        chain = await self._store.get_chain(chain_id)
        if chain is None:
            raise NotFoundError(f"Approval chain with ID '{chain_id}' not found")
        if chain.tenant_id != tenant_id:
            raise TenantMismatchError("approval_chain", chain_id)
        return chain

    async def create_chain(self, tenant_id: str, data: ChainCreate) -> ApprovalChain:
        validate_levels(data.levels)
        chain = ApprovalChain(
            tenant_id=tenant_id,
            name=data.name,
            description=data.description,
            entity_type=data.entity_type,
            is_active=data.is_active,
            is_default=data.is_default,
            conditions=dict(data.conditions),
            levels=_build_levels(data.levels),
        )
        chain = await self._store.create_chain(chain)
        logger.info(
            "approval_chain_created",
            chain_id=chain.id,
            tenant_id=tenant_id,
            entity_type=chain.entity_type.value,
            levels=len(chain.levels),
            is_default=chain.is_default,
        )
        return chain

    async def update_chain(
        self, chain_id: str, tenant_id: str, patch: ChainUpdate
    ) -> ApprovalChain:
        chain = await self._get_owned(chain_id, tenant_id)

        if patch.levels is not None:
            validate_levels(patch.levels)
            chain.levels = _build_levels(patch.levels)
        if patch.name is not None:
            chain.name = patch.name
        if "description" in patch.model_fields_set:
            chain.description = patch.description
        if patch.is_active is not None:
            chain.is_active = patch.is_active
        if patch.is_default is not None:
            chain.is_default = patch.is_default
        if patch.conditions is not None:
            chain.conditions = dict(patch.conditions)
        chain.updated_at = utcnow()

        chain = await self._store.update_chain(
            chain, replace_levels=patch.levels is not None
        )
        logger.info(
            "approval_chain_updated",
            chain_id=chain_id,
            tenant_id=tenant_id,
            levels_replaced=patch.levels is not None,
        )
        return chain

    async def delete_chain(self, chain_id: str, tenant_id: str) -> None:
        await self._get_owned(chain_id, tenant_id)
        await self._store.delete_chain(chain_id)
        logger.info("approval_chain_deleted", chain_id=chain_id, tenant_id=tenant_id)

    async def set_default_chain(self, chain_id: str, tenant_id: str) -> ApprovalChain:
        await self._get_owned(chain_id, tenant_id)
        chain = await self._store.set_default_chain(chain_id)
        logger.info(
            "approval_chain_default_set",
            chain_id=chain_id,
            tenant_id=tenant_id,
            entity_type=chain.entity_type.value,
        )
        return chain

    async def get_chain(self, chain_id: str, tenant_id: str) -> ApprovalChain:
        return await self._get_owned(chain_id, tenant_id)

    async def list_chains(
        self, tenant_id: str, query: Optional[ChainQuery] = None
    ) -> PaginatedResponse[ChainResponse]:
        query = query or ChainQuery()
        chains, total = await self._store.list_chains(
            tenant_id,
            entity_type=query.entity_type,
            is_active=query.is_active,
            offset=query.offset,
            limit=query.limit,
        )
        return PaginatedResponse[ChainResponse](
            data=[ChainResponse.model_validate(c) for c in chains],
            pagination=PaginationMeta.build(query, total),
        )

    async def get_definition(self, chain_id: str) -> Optional[ApprovalChain]:
        """Authoritative current definition, read at evaluation time (no tenant check)."""
        return await self._store.get_chain(chain_id)

    async def resolve_chain_for_submission(
        self,
        tenant_id: str,
        entity_type: EntityType,
        chain_id: Optional[str] = None,
    ) -> Optional[ApprovalChain]:
        """Explicit active chain when chain_id is given, otherwise the tenant's default."""
        if chain_id is None:
            return await self._store.find_default_chain(tenant_id, entity_type)
        chain = await self._store.get_chain(chain_id)
        if chain is None or chain.tenant_id != tenant_id or not chain.is_active:
            raise NotFoundError(f"Approval chain with ID '{chain_id}' not found")
        return chain

    def select_applicable_levels(
        self, chain: ApprovalChain, entity_value: Optional[Decimal]
    ) -> list[ApprovalChainLevel]:
        return select_applicable_levels(chain, entity_value)
