"""
SQLAlchemy-backed ApprovalStore.

Each method runs in its own transaction from the injected session factory.
Concurrency guarantees:
  - default chain flag: sibling rows locked FOR UPDATE before the flag moves,
    plus a partial unique index as the backstop;
  - one open request per entity: explicit check + partial unique index;
  - request writes: UPDATE ... WHERE version = :expected, zero rows means a
    concurrent writer won and ConcurrentModificationError is raised.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from approval_engine.domain import (
    OPEN_REQUEST_STATUSES,
    ApprovalChain,
    ApprovalChainLevel,
    ApprovalRequest,
    ApprovalStep,
    ApproverType,
    EntityType,
    RequestStatus,
    StepAction,
    StepStatus,
    utcnow,
)
from approval_engine.errors import (
    ChainInUseError,
    ConcurrentModificationError,
    DefaultChainConflictError,
    DuplicateApprovalRequestError,
    NotFoundError,
)
from approval_engine.models.approval_chain import (
    ApprovalChainLevelModel,
    ApprovalChainModel,
)
from approval_engine.models.approval_request import (
    ApprovalRequestModel,
    ApprovalStepModel,
)
from approval_engine.store.base import ApprovalStore

logger = structlog.get_logger()

_OPEN_STATUS_VALUES = [s.value for s in OPEN_REQUEST_STATUSES]


# ---------- Mapping ----------


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back naive; everything stored is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _level_from_model(m: ApprovalChainLevelModel) -> ApprovalChainLevel:
    return ApprovalChainLevel(
        id=m.id,
        level=m.level,
        name=m.name,
        approver_type=ApproverType(m.approver_type),
        approver_role_id=m.approver_role_id,
        approver_user_id=m.approver_user_id,
        min_approvers=m.min_approvers,
        allow_delegation=m.allow_delegation,
        threshold_min=m.threshold_min,
        threshold_max=m.threshold_max,
        timeout_hours=m.timeout_hours,
        escalation_level=m.escalation_level,
    )


def _level_to_model(level: ApprovalChainLevel, chain_id: str) -> ApprovalChainLevelModel:
    return ApprovalChainLevelModel(
        id=level.id,
        chain_id=chain_id,
        level=level.level,
        name=level.name,
        approver_type=level.approver_type.value,
        approver_role_id=level.approver_role_id,
        approver_user_id=level.approver_user_id,
        min_approvers=level.min_approvers,
        allow_delegation=level.allow_delegation,
        threshold_min=level.threshold_min,
        threshold_max=level.threshold_max,
        timeout_hours=level.timeout_hours,
        escalation_level=level.escalation_level,
    )


def _chain_from_model(m: ApprovalChainModel) -> ApprovalChain:
    return ApprovalChain(
        id=m.id,
        tenant_id=m.tenant_id,
        name=m.name,
        description=m.description,
        entity_type=EntityType(m.entity_type),
        is_active=m.is_active,
        is_default=m.is_default,
        conditions=dict(m.conditions or {}),
        levels=sorted((_level_from_model(lvl) for lvl in m.levels), key=lambda lvl: lvl.level),
        created_at=_aware(m.created_at),
        updated_at=_aware(m.updated_at),
    )


def _step_from_model(m: ApprovalStepModel) -> ApprovalStep:
    return ApprovalStep(
        id=m.id,
        request_id=m.request_id,
        level=m.level,
        approver_id=m.approver_id,
        status=StepStatus(m.status),
        action=StepAction(m.action),
        delegated_from=m.delegated_from,
        comments=m.comments,
        requested_at=_aware(m.requested_at),
        responded_at=_aware(m.responded_at),
        escalated_at=_aware(m.escalated_at),
        is_overdue=m.is_overdue,
        escalated_from=m.escalated_from,
    )


def _step_to_model(step: ApprovalStep) -> ApprovalStepModel:
    return ApprovalStepModel(
        id=step.id,
        request_id=step.request_id,
        level=step.level,
        approver_id=step.approver_id,
        status=step.status.value,
        action=step.action.value,
        delegated_from=step.delegated_from,
        comments=step.comments,
        requested_at=step.requested_at,
        responded_at=step.responded_at,
        escalated_at=step.escalated_at,
        is_overdue=step.is_overdue,
        escalated_from=step.escalated_from,
    )


def _request_from_model(m: ApprovalRequestModel) -> ApprovalRequest:
    return ApprovalRequest(
        id=m.id,
        tenant_id=m.tenant_id,
        chain_id=m.chain_id,
        entity_type=EntityType(m.entity_type),
        entity_id=m.entity_id,
        entity_value=m.entity_value,
        requester_id=m.requester_id,
        status=RequestStatus(m.status),
        current_level=m.current_level,
        metadata=dict(m.metadata_ or {}),
        requested_at=_aware(m.requested_at),
        completed_at=_aware(m.completed_at),
        expires_at=_aware(m.expires_at),
        version=m.version,
        steps=[_step_from_model(s) for s in m.steps],
    )


def _request_to_model(request: ApprovalRequest) -> ApprovalRequestModel:
    return ApprovalRequestModel(
        id=request.id,
        tenant_id=request.tenant_id,
        chain_id=request.chain_id,
        entity_type=request.entity_type.value,
        entity_id=request.entity_id,
        entity_value=request.entity_value,
        requester_id=request.requester_id,
        status=request.status.value,
        current_level=request.current_level,
        metadata_=request.metadata,
        requested_at=request.requested_at,
        completed_at=request.completed_at,
        expires_at=request.expires_at,
        version=request.version,
        steps=[_step_to_model(s) for s in request.steps],
    )


class SqlAlchemyApprovalStore(ApprovalStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ---------- Chains ----------

    async def _clear_default(
        self,
        session: AsyncSession,
        tenant_id: str,
        entity_type: EntityType,
        exclude_id: str,
    ) -> None:
        """Lock every chain of the (tenant, entity type) pair, then drop their default flag."""
        await session.execute(
            select(ApprovalChainModel.id)
            .where(
                ApprovalChainModel.tenant_id == tenant_id,
                ApprovalChainModel.entity_type == entity_type.value,
            )
            .with_for_update()
        )
        await session.execute(
            update(ApprovalChainModel)
            .where(
                ApprovalChainModel.tenant_id == tenant_id,
                ApprovalChainModel.entity_type == entity_type.value,
                ApprovalChainModel.is_default.is_(True),
                ApprovalChainModel.id != exclude_id,
            )
            .values({ApprovalChainModel.is_default: False, ApprovalChainModel.updated_at: utcnow()})
            .execution_options(synchronize_session=False)
        )

    async def create_chain(self, chain: ApprovalChain) -> ApprovalChain:
        async with self._session_factory() as session:
            async with session.begin():
                if chain.is_default:
                    await self._clear_default(
                        session, chain.tenant_id, chain.entity_type, chain.id
                    )
                session.add(
                    ApprovalChainModel(
                        id=chain.id,
                        tenant_id=chain.tenant_id,
                        name=chain.name,
                        description=chain.description,
                        entity_type=chain.entity_type.value,
                        is_active=chain.is_active,
                        is_default=chain.is_default,
                        conditions=chain.conditions,
                        created_at=chain.created_at,
                        updated_at=chain.updated_at,
                        levels=[_level_to_model(lvl, chain.id) for lvl in chain.levels],
                    )
                )
                try:
                    await session.flush()
                except IntegrityError:
                    if not chain.is_default:
                        raise
                    # No sibling rows existed to lock; the partial unique index caught the race
                    raise DefaultChainConflictError(
                        chain.tenant_id, chain.entity_type.value
                    ) from None
        logger.info(
            "approval_chain_persisted",
            chain_id=chain.id,
            tenant_id=chain.tenant_id,
            levels=len(chain.levels),
        )
        return chain

    async def update_chain(
        self, chain: ApprovalChain, replace_levels: bool = False
    ) -> ApprovalChain:
        async with self._session_factory() as session:
            async with session.begin():
                model = await session.get(
                    ApprovalChainModel, chain.id, with_for_update=True
                )
                if model is None:
                    raise NotFoundError(f"Approval chain with ID '{chain.id}' not found")
                if chain.is_default and not model.is_default:
                    await self._clear_default(
                        session, chain.tenant_id, chain.entity_type, chain.id
                    )
                model.name = chain.name
                model.description = chain.description
                model.is_active = chain.is_active
                model.is_default = chain.is_default
                model.conditions = chain.conditions
                if replace_levels:
                    # Old rows must be gone before new ones reuse (chain_id, level)
                    model.levels.clear()
                    await session.flush()
                    model.levels.extend(
                        _level_to_model(lvl, chain.id) for lvl in chain.levels
                    )
                await session.flush()
                return _chain_from_model(model)

    async def delete_chain(self, chain_id: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                model = await session.get(
                    ApprovalChainModel, chain_id, with_for_update=True
                )
                if model is None:
                    return
                active = await session.scalar(
                    select(func.count(ApprovalRequestModel.id)).where(
                        ApprovalRequestModel.chain_id == chain_id,
                        ApprovalRequestModel.status.in_(_OPEN_STATUS_VALUES),
                    )
                )
                if active:
                    raise ChainInUseError(chain_id, int(active))
                await session.delete(model)

    async def set_default_chain(self, chain_id: str) -> ApprovalChain:
        async with self._session_factory() as session:
            async with session.begin():
                model = await session.get(
                    ApprovalChainModel, chain_id, with_for_update=True
                )
                if model is None:
                    raise NotFoundError(f"Approval chain with ID '{chain_id}' not found")
                await self._clear_default(
                    session, model.tenant_id, EntityType(model.entity_type), chain_id
                )
                model.is_default = True
                await session.flush()
                return _chain_from_model(model)

    async def get_chain(self, chain_id: str) -> Optional[ApprovalChain]:
        async with self._session_factory() as session:
            model = await session.get(ApprovalChainModel, chain_id)
            return _chain_from_model(model) if model else None

    async def find_default_chain(
        self, tenant_id: str, entity_type: EntityType
    ) -> Optional[ApprovalChain]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ApprovalChainModel).where(
                    ApprovalChainModel.tenant_id == tenant_id,
                    ApprovalChainModel.entity_type == entity_type.value,
                    ApprovalChainModel.is_active.is_(True),
                    ApprovalChainModel.is_default.is_(True),
                )
            )
            model = result.scalars().first()
            return _chain_from_model(model) if model else None

    async def list_chains(
        self,
        tenant_id: str,
        entity_type: Optional[EntityType] = None,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[ApprovalChain], int]:
        filters = [ApprovalChainModel.tenant_id == tenant_id]
        if entity_type is not None:
            filters.append(ApprovalChainModel.entity_type == entity_type.value)
        if is_active is not None:
            filters.append(ApprovalChainModel.is_active.is_(is_active))

        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count(ApprovalChainModel.id)).where(*filters)
            )
            result = await session.execute(
                select(ApprovalChainModel)
                .where(*filters)
                .order_by(ApprovalChainModel.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            chains = [_chain_from_model(m) for m in result.scalars().all()]
        return chains, int(total or 0)

    # ---------- Requests ----------

    async def create_request(self, request: ApprovalRequest) -> ApprovalRequest:
        async with self._session_factory() as session:
            async with session.begin():
                # Shared lock on the chain row so delete_chain cannot interleave
                await session.execute(
                    select(ApprovalChainModel.id)
                    .where(ApprovalChainModel.id == request.chain_id)
                    .with_for_update(read=True)
                )
                existing = await session.scalar(
                    select(ApprovalRequestModel.id).where(
                        ApprovalRequestModel.tenant_id == request.tenant_id,
                        ApprovalRequestModel.entity_type == request.entity_type.value,
                        ApprovalRequestModel.entity_id == request.entity_id,
                        ApprovalRequestModel.status.in_(_OPEN_STATUS_VALUES),
                    )
                )
                if existing:
                    raise DuplicateApprovalRequestError(
                        request.entity_type.value, request.entity_id
                    )
                session.add(_request_to_model(request))
                try:
                    await session.flush()
                except IntegrityError:
                    # Lost the race against another submission for the same entity
                    raise DuplicateApprovalRequestError(
                        request.entity_type.value, request.entity_id
                    ) from None
        return request

    async def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        async with self._session_factory() as session:
            model = await session.get(ApprovalRequestModel, request_id)
            return _request_from_model(model) if model else None

    async def find_open_request(
        self, tenant_id: str, entity_type: EntityType, entity_id: str
    ) -> Optional[ApprovalRequest]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ApprovalRequestModel).where(
                    ApprovalRequestModel.tenant_id == tenant_id,
                    ApprovalRequestModel.entity_type == entity_type.value,
                    ApprovalRequestModel.entity_id == entity_id,
                    ApprovalRequestModel.status.in_(_OPEN_STATUS_VALUES),
                )
            )
            model = result.scalars().first()
            return _request_from_model(model) if model else None

    async def save_request(self, request: ApprovalRequest) -> ApprovalRequest:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(ApprovalRequestModel)
                    .where(
                        ApprovalRequestModel.id == request.id,
                        ApprovalRequestModel.version == request.version,
                    )
                    .values(
                        {
                            ApprovalRequestModel.status: request.status.value,
                            ApprovalRequestModel.current_level: request.current_level,
                            ApprovalRequestModel.completed_at: request.completed_at,
                            ApprovalRequestModel.expires_at: request.expires_at,
                            ApprovalRequestModel.metadata_: request.metadata,
                            ApprovalRequestModel.version: request.version + 1,
                        }
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.warning(
                        "approval_request_version_conflict",
                        request_id=request.id,
                        expected_version=request.version,
                    )
                    raise ConcurrentModificationError(request.id, request.version)
                for step in request.steps:
                    await session.merge(_step_to_model(step))
        request.version += 1
        return request

    async def list_open_requests(
        self, tenant_id: Optional[str] = None
    ) -> list[ApprovalRequest]:
        q = select(ApprovalRequestModel).where(
            ApprovalRequestModel.status.in_(_OPEN_STATUS_VALUES)
        )
        if tenant_id is not None:
            q = q.where(ApprovalRequestModel.tenant_id == tenant_id)
        async with self._session_factory() as session:
            result = await session.execute(q.order_by(ApprovalRequestModel.requested_at))
            return [_request_from_model(m) for m in result.scalars().all()]

    async def list_requests_pending_for(
        self, tenant_id: str, approver_id: str
    ) -> list[ApprovalRequest]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ApprovalRequestModel)
                .where(
                    ApprovalRequestModel.tenant_id == tenant_id,
                    ApprovalRequestModel.status.in_(_OPEN_STATUS_VALUES),
                    ApprovalRequestModel.steps.any(
                        and_(
                            ApprovalStepModel.approver_id == approver_id,
                            ApprovalStepModel.status == StepStatus.PENDING.value,
                        )
                    ),
                )
                .order_by(ApprovalRequestModel.requested_at)
            )
            return [_request_from_model(m) for m in result.scalars().all()]
