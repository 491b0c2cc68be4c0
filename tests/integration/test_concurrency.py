"""
Concurrency tests: approvers racing on the same request.

The store yields to the event loop between reading and returning a request,
so concurrent operations interleave their read-validate-write cycles and
collide on the version check.
"""

import asyncio
from decimal import Decimal

import pytest

from approval_engine.domain import ApproverType, EntityType, RequestStatus, StepStatus
from approval_engine.engine import build_engine
from approval_engine.errors import (
    ConcurrentModificationError,
    RequestAlreadyFinalizedError,
)
from approval_engine.events import LevelAdvanced, RequestCompleted
from approval_engine.schemas.chain import ChainCreate, ChainQuery, LevelSpec
from approval_engine.store.memory import InMemoryApprovalStore

TENANT = "tenant-1"
REQUESTER = "requester-1"


class InterleavingStore(InMemoryApprovalStore):
    """Suspends after every read so gathered operations all read before anyone writes."""

    async def get_request(self, request_id):
        request = await super().get_request(request_id)
        await asyncio.sleep(0)
        return request

    async def get_chain(self, chain_id):
        chain = await super().get_chain(chain_id)
        await asyncio.sleep(0)
        return chain


class AlwaysConflictingStore(InMemoryApprovalStore):
    async def save_request(self, request):
        self.save_attempts = getattr(self, "save_attempts", 0) + 1
        raise ConcurrentModificationError(request.id, request.version)


@pytest.fixture
def racing_engine(directory, sink, settings, clock):
    return build_engine(InterleavingStore(), directory, sink, settings=settings, clock=clock)


def _managers(**kwargs) -> LevelSpec:
    return LevelSpec(
        level=1,
        name="Managers",
        approver_type=ApproverType.ROLE,
        approver_role_id="MANAGER",
        **kwargs,
    )


def _admin(level: int = 2) -> LevelSpec:
    return LevelSpec(level=level, name="Admin", approver_type=ApproverType.USER, approver_user_id="admin-1")


async def _setup(engine, *levels):
    await engine.create_chain(
        TENANT,
        ChainCreate(name="Race", entity_type=EntityType.CONTRACT, is_default=True, levels=list(levels)),
    )
    request = await engine.submit_for_approval(
        EntityType.CONTRACT, "contract-1", Decimal("1000"), TENANT, REQUESTER
    )
    steps = {s.approver_id: s for s in request.steps}
    return request, steps


@pytest.mark.asyncio
async def test_concurrent_approvals_advance_level_once(racing_engine, sink):
    request, steps = await _setup(racing_engine, _managers(), _admin())

    results = await asyncio.gather(
        racing_engine.approve(request.id, steps["mgr-1"].id, TENANT, "mgr-1"),
        racing_engine.approve(request.id, steps["mgr-2"].id, TENANT, "mgr-2"),
        return_exceptions=True,
    )

    assert not [r for r in results if isinstance(r, Exception)]
    stored = await racing_engine.get_request(request.id, TENANT)
    assert stored.current_level == 2
    assert len(stored.steps_at(2)) == 1
    assert len(sink.of_type(LevelAdvanced)) == 1


@pytest.mark.asyncio
async def test_concurrent_approvals_meet_quorum_of_two_once(racing_engine, sink):
    request, steps = await _setup(racing_engine, _managers(min_approvers=2), _admin())

    await asyncio.gather(
        racing_engine.approve(request.id, steps["mgr-1"].id, TENANT, "mgr-1"),
        racing_engine.approve(request.id, steps["mgr-2"].id, TENANT, "mgr-2"),
    )

    stored = await racing_engine.get_request(request.id, TENANT)
    assert all(s.status == StepStatus.APPROVED for s in stored.steps_at(1))
    assert stored.current_level == 2
    assert len(stored.steps_at(2)) == 1
    assert len(sink.of_type(LevelAdvanced)) == 1


@pytest.mark.asyncio
async def test_approve_and_reject_race_has_one_winner(racing_engine, sink):
    request, steps = await _setup(racing_engine, _managers())

    results = await asyncio.gather(
        racing_engine.approve(request.id, steps["mgr-1"].id, TENANT, "mgr-1"),
        racing_engine.reject(request.id, steps["mgr-2"].id, TENANT, "mgr-2"),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], RequestAlreadyFinalizedError)

    stored = await racing_engine.get_request(request.id, TENANT)
    assert stored.status in (RequestStatus.APPROVED, RequestStatus.REJECTED)
    assert len(sink.of_type(RequestCompleted)) == 1
    assert sink.of_type(RequestCompleted)[0].outcome == stored.status


@pytest.mark.asyncio
async def test_approve_races_escalation(racing_engine, clock):
    request, steps = await _setup(
        racing_engine,
        LevelSpec(
            level=1,
            name="Manager",
            approver_type=ApproverType.USER,
            approver_user_id="mgr-1",
            timeout_hours=1,
            escalation_level=2,
        ),
        _admin(),
    )
    clock.advance(hours=2)

    approved, report = await asyncio.gather(
        racing_engine.approve(request.id, steps["mgr-1"].id, TENANT, "mgr-1"),
        racing_engine.run_escalation_scan(),
    )

    # The approval commits first; the scan re-reads and finds nothing to escalate
    assert report.failed == 0
    assert report.escalated == 0
    assert report.skipped == 1
    assert approved.current_level == 2

    stored = await racing_engine.get_request(request.id, TENANT)
    assert [s.status for s in stored.steps_at(1)] == [StepStatus.APPROVED]


@pytest.mark.asyncio
async def test_conflict_retries_are_bounded(directory, sink, settings, clock):
    store = AlwaysConflictingStore()
    engine = build_engine(store, directory, sink, settings=settings, clock=clock)
    request, steps = await _setup(engine, _managers())

    with pytest.raises(ConcurrentModificationError):
        await engine.approve(request.id, steps["mgr-1"].id, TENANT, "mgr-1")

    assert store.save_attempts == settings.MAX_CONFLICT_RETRIES + 1
    assert sink.of_type(RequestCompleted) == []


# ---------------------------------------------------------------------------
# Default chain flag
# ---------------------------------------------------------------------------


async def _defaults(engine) -> list[str]:
    page = await engine.list_chains(TENANT, ChainQuery(entity_type=EntityType.CONTRACT))
    return [c.id for c in page.data if c.is_default]


@pytest.mark.asyncio
async def test_concurrent_set_default_leaves_one_default(racing_engine):
    chains = [
        await racing_engine.create_chain(
            TENANT,
            ChainCreate(name=f"Chain {i}", entity_type=EntityType.CONTRACT, levels=[_admin(1)]),
        )
        for i in range(4)
    ]

    await asyncio.gather(*(racing_engine.set_default_chain(c.id, TENANT) for c in chains))

    defaults = await _defaults(racing_engine)
    assert len(defaults) == 1
    assert defaults[0] in {c.id for c in chains}


@pytest.mark.asyncio
async def test_concurrent_default_creations_leave_one_default(racing_engine):
    await asyncio.gather(
        *(
            racing_engine.create_chain(
                TENANT,
                ChainCreate(
                    name=f"Chain {i}",
                    entity_type=EntityType.CONTRACT,
                    is_default=True,
                    levels=[_admin(1)],
                ),
            )
            for i in range(4)
        )
    )

    assert len(await _defaults(racing_engine)) == 1
    default = await racing_engine.registry.resolve_chain_for_submission(
        TENANT, EntityType.CONTRACT, None
    )
    assert default is not None
