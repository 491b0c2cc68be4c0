from datetime import datetime, timezone
from decimal import Decimal

import pytest

from approval_engine.domain import ApproverType, EntityType, RequestStatus
from approval_engine.engine import build_engine
from approval_engine.events import (
    CompositeEventSink,
    LoggingEventSink,
    RecordingEventSink,
    RequestCompleted,
    StepAssigned,
    publish,
)
from approval_engine.schemas.chain import ChainCreate, LevelSpec

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _completed() -> RequestCompleted:
    return RequestCompleted(
        request_id="r-1",
        tenant_id="tenant-1",
        occurred_at=NOW,
        outcome=RequestStatus.APPROVED,
        entity_type=EntityType.CONTRACT,
        entity_id="c-1",
        requester_id="u-1",
    )


class _FlakySink(RecordingEventSink):
    """Fails on completion events only."""

    async def emit(self, event):
        if isinstance(event, RequestCompleted):
            raise RuntimeError("smtp down")
        await super().emit(event)


def test_as_dict_serializes_enums_and_datetimes():
    data = _completed().as_dict()
    assert data["outcome"] == "APPROVED"
    assert data["entity_type"] == "CONTRACT"
    assert data["occurred_at"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_publish_skips_failing_subscriber():
    sink = _FlakySink()
    events = [
        _completed(),
        StepAssigned(request_id="r-1", tenant_id="tenant-1", occurred_at=NOW, step_id="s-1", level=1, approver_id="u-2"),
    ]

    await publish(sink, events)

    assert sink.names() == ["step_assigned"]


@pytest.mark.asyncio
async def test_composite_fans_out_in_order():
    first, second = RecordingEventSink(), RecordingEventSink()
    await publish(CompositeEventSink([first, second, LoggingEventSink()]), [_completed()])

    assert first.names() == ["request_completed"]
    assert second.names() == ["request_completed"]


class _BrokenSink(RecordingEventSink):
    async def emit(self, event):
        raise ConnectionError("broker unreachable")


@pytest.mark.asyncio
async def test_operations_succeed_when_every_emit_fails(store, directory, settings, clock):
    engine = build_engine(store, directory, _BrokenSink(), settings=settings, clock=clock)
    await engine.create_chain(
        "tenant-1",
        ChainCreate(
            name="Contracts",
            entity_type=EntityType.CONTRACT,
            is_default=True,
            levels=[
                LevelSpec(level=1, name="Manager", approver_type=ApproverType.USER, approver_user_id="mgr-1")
            ],
        ),
    )

    request = await engine.submit_for_approval(
        EntityType.CONTRACT, "contract-1", Decimal("100"), "tenant-1", "requester-1"
    )
    approved = await engine.approve(request.id, request.steps[0].id, "tenant-1", "mgr-1")

    assert approved.status == RequestStatus.APPROVED
    stored = await store.get_request(request.id)
    assert stored.status == RequestStatus.APPROVED
