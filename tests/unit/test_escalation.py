"""
Unit tests for approval_engine/services/escalation.py and DelegationHandler.escalate

Tests: timeout detection, escalation to the target level's approvers,
       overdue flagging, idempotency across scans, benign races,
       per-step failure isolation, expiry, scheduler loop start/stop.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from approval_engine.domain import ApproverType, EntityType, RequestStatus, StepAction, StepStatus
from approval_engine.events import StepDelegated, StepEscalated, StepOverdue
from approval_engine.schemas.chain import LevelSpec
from approval_engine.services.delegation import EscalationOutcome

TENANT = "tenant-1"
REQUESTER = "requester-1"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _level(n: int, *, user: str = None, role: str = None, **kwargs) -> LevelSpec:
    return LevelSpec(
        level=n,
        name=f"Level {n}",
        approver_type=ApproverType.USER if user else ApproverType.ROLE,
        approver_user_id=user,
        approver_role_id=role,
        **kwargs,
    )


async def _submit(engine, entity_id: str = "contract-1", entity_type=EntityType.CONTRACT, **kwargs):
    return await engine.submit_for_approval(
        entity_type, entity_id, Decimal("1000"), TENANT, REQUESTER, **kwargs
    )


@pytest.fixture
async def escalating_chain(create_chain):
    return await create_chain(
        _level(1, user="mgr-1", timeout_hours=24, escalation_level=2),
        _level(2, role="ADMIN"),
    )


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_nothing_happens_before_timeout(engine, escalating_chain, clock):
    await _submit(engine)
    clock.advance(hours=23)

    report = await engine.run_escalation_scan()

    assert report.scanned == 0
    assert report.escalated == 0


@pytest.mark.asyncio
async def test_timed_out_step_is_escalated(engine, escalating_chain, clock, sink):
    request = await _submit(engine)
    original_id = request.steps[0].id
    clock.advance(hours=25)

    report = await engine.run_escalation_scan()

    assert report.escalated == 1
    stored = await engine.get_request(request.id, TENANT)
    assert stored.status == RequestStatus.IN_PROGRESS
    assert stored.current_level == 1

    original = stored.find_step(original_id)
    assert original.status == StepStatus.CANCELLED
    assert original.action == StepAction.ESCALATE
    assert original.escalated_at == clock.now

    [replacement] = stored.pending_steps()
    assert replacement.approver_id == "admin-1"
    assert replacement.level == 1
    assert replacement.delegated_from == "mgr-1"
    assert replacement.escalated_from == original_id

    [escalated] = sink.of_type(StepEscalated)
    assert escalated.escalation_level == 2
    assert escalated.to_approver_ids == ("admin-1",)
    [delegated] = sink.of_type(StepDelegated)
    assert delegated.system_initiated is True


@pytest.mark.asyncio
async def test_escalation_is_idempotent(engine, escalating_chain, clock, sink):
    await _submit(engine)
    clock.advance(hours=25)

    first = await engine.run_escalation_scan()
    second = await engine.run_escalation_scan()

    assert first.escalated == 1
    assert second.escalated == 0
    assert len(sink.of_type(StepEscalated)) == 1


@pytest.mark.asyncio
async def test_escalated_step_is_only_flagged_overdue_later(engine, escalating_chain, clock):
    request = await _submit(engine)
    clock.advance(hours=25)
    await engine.run_escalation_scan()
    clock.advance(hours=25)

    report = await engine.run_escalation_scan()

    assert report.escalated == 0
    assert report.overdue == 1
    stored = await engine.get_request(request.id, TENANT)
    [replacement] = stored.pending_steps()
    assert replacement.is_overdue is True


@pytest.mark.asyncio
async def test_escalated_approver_can_close_the_level(engine, escalating_chain, clock):
    request = await _submit(engine)
    clock.advance(hours=25)
    await engine.run_escalation_scan()
    stored = await engine.get_request(request.id, TENANT)
    [replacement] = stored.pending_steps()

    result = await engine.approve(request.id, replacement.id, TENANT, "admin-1")

    assert result.current_level == 2


@pytest.mark.asyncio
async def test_step_without_escalation_level_is_marked_overdue(engine, create_chain, clock, sink):
    await create_chain(_level(1, user="mgr-1", timeout_hours=4))
    request = await _submit(engine)
    clock.advance(hours=5)

    report = await engine.run_escalation_scan()
    again = await engine.run_escalation_scan()

    assert (report.overdue, again.overdue) == (1, 0)
    stored = await engine.get_request(request.id, TENANT)
    step = stored.steps[0]
    assert step.status == StepStatus.PENDING
    assert step.is_overdue is True
    assert stored.status == RequestStatus.IN_PROGRESS

    [overdue] = sink.of_type(StepOverdue)
    assert overdue.approver_id == "mgr-1"
    assert overdue.hours_pending == 5.0

    [pending] = await engine.get_pending_approvals(TENANT, "mgr-1")
    assert pending.is_overdue is True


@pytest.mark.asyncio
async def test_escalate_after_approval_is_silently_skipped(engine, escalating_chain, clock):
    request = await _submit(engine)
    step_id = request.steps[0].id
    await engine.approve(request.id, step_id, TENANT, "mgr-1")
    clock.advance(hours=30)

    outcome = await engine.escalate_step(request.id, step_id)

    assert outcome == EscalationOutcome.SKIPPED


@pytest.mark.asyncio
async def test_steps_of_closed_levels_are_not_scanned(engine, create_chain, clock):
    await create_chain(
        _level(1, role="MANAGER", timeout_hours=24),
        _level(2, role="ADMIN"),
    )
    request = await _submit(engine)
    mgr1 = next(s for s in request.steps if s.approver_id == "mgr-1")
    await engine.approve(request.id, mgr1.id, TENANT, "mgr-1")
    clock.advance(hours=48)

    report = await engine.run_escalation_scan()

    assert report.scanned == 0
    assert report.overdue == 0


@pytest.mark.asyncio
async def test_failure_on_one_step_does_not_abort_scan(engine, create_chain, clock):
    # Contract chain escalates to a role nobody holds
    await create_chain(
        _level(1, user="mgr-1", timeout_hours=24, escalation_level=2),
        _level(2, role="LEGAL"),
    )
    await create_chain(
        _level(1, user="mgr-1", timeout_hours=24, escalation_level=2),
        _level(2, role="ADMIN"),
        entity_type=EntityType.QUOTE,
        name="Quotes",
    )
    await _submit(engine, "contract-1")
    await _submit(engine, "quote-1", entity_type=EntityType.QUOTE)
    clock.advance(hours=25)

    report = await engine.run_escalation_scan()

    assert report.failed == 1
    assert report.escalated == 1


@pytest.mark.asyncio
async def test_escalation_skips_users_who_already_approved_at_level(engine, create_chain, clock):
    await create_chain(
        _level(1, role="MANAGER", min_approvers=2, timeout_hours=24, escalation_level=2),
        _level(2, user="mgr-1"),
    )
    request = await _submit(engine)
    steps = {s.approver_id: s for s in request.steps}
    await engine.approve(request.id, steps["mgr-1"].id, TENANT, "mgr-1")
    clock.advance(hours=25)

    report = await engine.run_escalation_scan()

    # The only escalation target already approved this level
    assert report.failed == 1
    assert report.escalated == 0
    stored = await engine.get_request(request.id, TENANT)
    assert stored.status == RequestStatus.IN_PROGRESS
    assert stored.find_step(steps["mgr-2"].id).status == StepStatus.PENDING
    assert [s.approver_id for s in stored.steps_at(1)] == ["mgr-1", "mgr-2"]


@pytest.mark.asyncio
async def test_scan_expires_requests_past_deadline(engine, create_chain, clock):
    await create_chain(_level(1, user="mgr-1"))
    request = await _submit(engine, expires_at=clock.now + timedelta(hours=12))
    clock.advance(hours=13)

    report = await engine.run_escalation_scan()

    assert report.expired == 1
    stored = await engine.get_request(request.id, TENANT)
    assert stored.status == RequestStatus.EXPIRED


@pytest.mark.asyncio
async def test_level_timeout_never_expires_request(engine, create_chain, clock):
    await create_chain(_level(1, user="mgr-1", timeout_hours=1))
    request = await _submit(engine)
    clock.advance(days=30)

    await engine.run_escalation_scan()

    stored = await engine.get_request(request.id, TENANT)
    assert stored.status == RequestStatus.IN_PROGRESS


# ---------------------------------------------------------------------------
# Scheduler loop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_scheduler_start_and_stop(engine):
    scheduler = engine.scheduler
    scheduler.start()
    assert scheduler.running is True

    await asyncio.sleep(0)
    await scheduler.stop()

    assert scheduler.running is False
