"""
HTTP surface: internal job endpoint, health check, error envelope.
"""

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from approval_engine.config import get_settings
from approval_engine.domain import ApproverType, EntityType
from approval_engine.errors import NoDefaultChainError
from approval_engine.main import create_app
from approval_engine.schemas.chain import LevelSpec

TENANT = "tenant-1"
REQUESTER = "requester-1"
SECRET = "test-secret"


@pytest.fixture
def job_secret(monkeypatch):
    monkeypatch.setattr(get_settings(), "INTERNAL_JOB_SECRET", SECRET)
    return SECRET


@pytest.fixture
def app(engine):
    return create_app(engine)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_timeout_job_requires_secret(client, job_secret):
    resp = await client.post("/internal/jobs/check-approval-timeouts")

    assert resp.status_code == 403
    assert resp.json() == {"error": {"code": "HTTP_ERROR", "message": "Forbidden"}}


@pytest.mark.asyncio
async def test_timeout_job_rejects_wrong_secret(client, job_secret):
    resp = await client.post(
        "/internal/jobs/check-approval-timeouts", headers={"X-Internal-Secret": "nope"}
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_timeout_job_unconfigured_secret(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "INTERNAL_JOB_SECRET", None)
    monkeypatch.setattr(get_settings(), "DEBUG", False)

    resp = await client.post("/internal/jobs/check-approval-timeouts")

    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_timeout_job_runs_scan(client, job_secret, engine, create_chain, clock):
    await create_chain(
        LevelSpec(
            level=1,
            name="Manager",
            approver_type=ApproverType.USER,
            approver_user_id="mgr-1",
            timeout_hours=24,
            escalation_level=2,
        ),
        LevelSpec(level=2, name="Admin", approver_type=ApproverType.ROLE, approver_role_id="ADMIN"),
    )
    request = await engine.submit_for_approval(
        EntityType.CONTRACT, "contract-1", Decimal("100"), TENANT, REQUESTER
    )
    clock.advance(hours=30)

    resp = await client.post(
        "/internal/jobs/check-approval-timeouts", headers={"X-Internal-Secret": job_secret}
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["escalated"] == 1
    assert body["failed"] == 0
    stored = await engine.get_request(request.id, TENANT)
    assert [s.approver_id for s in stored.pending_steps()] == ["admin-1"]


@pytest.mark.asyncio
async def test_timeout_job_without_engine(job_secret):
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        resp = await c.post(
            "/internal/jobs/check-approval-timeouts", headers={"X-Internal-Secret": job_secret}
        )
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_health_reports_engine_and_scheduler(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"] == {"engine": "ok", "escalation_scheduler": "stopped"}


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"


@pytest.mark.asyncio
async def test_approval_errors_use_error_envelope(app, client):
    async def boom():
        raise NoDefaultChainError("CONTRACT")

    app.add_api_route("/boom", boom)

    resp = await client.get("/boom")

    assert resp.status_code == 400
    assert resp.json() == {
        "error": {
            "code": "NO_DEFAULT_CHAIN",
            "message": "No default approval chain found for CONTRACT",
            "details": {"entity_type": "CONTRACT"},
        }
    }
