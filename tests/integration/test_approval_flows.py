"""
End-to-end approval flows through the engine facade with the in-memory store.
"""

from decimal import Decimal

import pytest

from approval_engine.domain import ApproverType, EntityType, RequestStatus, StepStatus
from approval_engine.events import RequestCompleted
from approval_engine.schemas.chain import LevelSpec
from approval_engine.schemas.request import SubmitApproval

TENANT = "tenant-1"
REQUESTER = "requester-1"


@pytest.mark.asyncio
async def test_high_value_contract_skips_manager_level(engine, create_chain, sink):
    """60000 falls in [50000, inf) only: level 1 never gets a step."""
    await create_chain(
        LevelSpec(
            level=1,
            name="Manager",
            approver_type=ApproverType.ROLE,
            approver_role_id="MANAGER",
            threshold_min=Decimal("0"),
            threshold_max=Decimal("50000"),
        ),
        LevelSpec(
            level=2,
            name="Admin",
            approver_type=ApproverType.ROLE,
            approver_role_id="ADMIN",
            threshold_min=Decimal("50000"),
        ),
    )

    request = await engine.submit(
        SubmitApproval(entity_type=EntityType.CONTRACT, entity_id="contract-9", entity_value=Decimal("60000")),
        TENANT,
        REQUESTER,
    )
    assert request.current_level == 2
    assert request.steps_at(1) == []
    [step] = request.steps

    result = await engine.approve(request.id, step.id, TENANT, "admin-1")

    assert result.status == RequestStatus.APPROVED
    assert result.steps_at(1) == []
    assert [e.outcome for e in sink.of_type(RequestCompleted)] == [RequestStatus.APPROVED]


@pytest.mark.asyncio
async def test_low_value_contract_runs_manager_level_only(engine, create_chain):
    await create_chain(
        LevelSpec(
            level=1,
            name="Manager",
            approver_type=ApproverType.ROLE,
            approver_role_id="MANAGER",
            threshold_max=Decimal("50000"),
        ),
        LevelSpec(
            level=2,
            name="Admin",
            approver_type=ApproverType.ROLE,
            approver_role_id="ADMIN",
            threshold_min=Decimal("50000"),
        ),
    )
    request = await engine.submit_for_approval(
        EntityType.CONTRACT, "contract-3", Decimal("1200"), TENANT, REQUESTER
    )
    step = next(s for s in request.steps if s.approver_id == "mgr-2")

    result = await engine.approve(request.id, step.id, TENANT, "mgr-2")

    assert result.status == RequestStatus.APPROVED
    assert result.steps_at(2) == []


@pytest.mark.asyncio
async def test_first_approval_leaves_sibling_inert(engine, create_chain):
    """Quorum 1 with approvers A and B: A advances the level, B's step stays PENDING with no effect."""
    await create_chain(
        LevelSpec(level=1, name="Managers", approver_type=ApproverType.ROLE, approver_role_id="MANAGER"),
        LevelSpec(level=2, name="Finance", approver_type=ApproverType.USER, approver_user_id="fin-1"),
    )
    request = await engine.submit_for_approval(
        EntityType.CONTRACT, "contract-1", Decimal("5000"), TENANT, REQUESTER
    )
    a = next(s for s in request.steps if s.approver_id == "mgr-1")
    b = next(s for s in request.steps if s.approver_id == "mgr-2")

    after_a = await engine.approve(request.id, a.id, TENANT, "mgr-1")
    assert after_a.current_level == 2
    assert after_a.find_step(b.id).status == StepStatus.PENDING

    after_b = await engine.approve(request.id, b.id, TENANT, "mgr-2")
    assert after_b.status == RequestStatus.IN_PROGRESS
    assert after_b.current_level == 2
    assert len(after_b.steps_at(2)) == 1

    [fin_step] = after_b.steps_at(2)
    final = await engine.approve(request.id, fin_step.id, TENANT, "fin-1")
    assert final.status == RequestStatus.APPROVED


@pytest.mark.asyncio
async def test_three_level_chain_with_quorum(engine, create_chain, sink):
    await create_chain(
        LevelSpec(level=1, name="Manager", approver_type=ApproverType.USER, approver_user_id="mgr-1"),
        LevelSpec(
            level=2,
            name="Finance board",
            approver_type=ApproverType.ROLE,
            approver_role_id="FINANCE",
            min_approvers=2,
        ),
        LevelSpec(level=3, name="Org head", approver_type=ApproverType.ORGANIZATION_HEAD),
    )
    request = await engine.submit_for_approval(
        EntityType.CONTRACT, "contract-7", Decimal("90000"), TENANT, REQUESTER
    )
    request = await engine.approve(request.id, request.steps[0].id, TENANT, "mgr-1")
    assert request.current_level == 2

    fin1, fin2 = sorted(request.steps_at(2), key=lambda s: s.approver_id)
    request = await engine.approve(request.id, fin1.id, TENANT, "fin-1")
    assert request.current_level == 2

    request = await engine.approve(request.id, fin2.id, TENANT, "fin-2")
    assert request.current_level == 3
    [head] = request.steps_at(3)
    assert head.approver_id == "admin-1"

    request = await engine.approve(request.id, head.id, TENANT, "admin-1")
    assert request.status == RequestStatus.APPROVED
    assert sink.names().count("level_advanced") == 2


@pytest.mark.asyncio
async def test_entities_of_different_types_are_independent(engine, create_chain):
    level = LevelSpec(level=1, name="Manager", approver_type=ApproverType.USER, approver_user_id="mgr-1")
    await create_chain(level)
    await create_chain(level, entity_type=EntityType.QUOTE, name="Quotes")

    contract = await engine.submit_for_approval(
        EntityType.CONTRACT, "shared-id", Decimal("10"), TENANT, REQUESTER
    )
    quote = await engine.submit_for_approval(
        EntityType.QUOTE, "shared-id", Decimal("10"), TENANT, REQUESTER
    )

    assert contract.id != quote.id
    pending = await engine.get_pending_approvals(TENANT, "mgr-1")
    assert {p.entity_type for p in pending} == {EntityType.CONTRACT, EntityType.QUOTE}
