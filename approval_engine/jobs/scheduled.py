# approval_engine/jobs/scheduled.py
"""
Internal job endpoints, for an external scheduler (cron, Cloud Scheduler)
when the in-process escalation loop is disabled.

Jobs:
  - check-approval-timeouts: one escalation/expiry scan over all open requests
"""

from datetime import datetime, timezone
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
import structlog

from approval_engine.config import get_settings
from approval_engine.engine import ApprovalEngine

logger = structlog.get_logger()
router = APIRouter()


async def _require_internal_auth(request: Request):
    """Validates the X-Internal-Secret header against INTERNAL_JOB_SECRET."""
    settings = get_settings()
    secret = settings.INTERNAL_JOB_SECRET
    if not secret:
        # In development (DEBUG=True), allow unauthenticated internal calls
        if settings.DEBUG:
            return
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="INTERNAL_JOB_SECRET is not configured",
        )
    provided = request.headers.get("X-Internal-Secret")
    if not provided or not secrets.compare_digest(provided, secret):
        logger.warning("internal_auth_failed", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )


def get_approval_engine(request: Request) -> ApprovalEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Approval engine is not initialised",
        )
    return engine


@router.post("/check-approval-timeouts")
async def check_approval_timeouts(
    now: Optional[datetime] = None,
    engine: ApprovalEngine = Depends(get_approval_engine),
    _auth: None = Depends(_require_internal_auth),
):
    """Escalate or flag timed-out steps and expire requests past their deadline."""
    if now is not None and now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    report = await engine.run_escalation_scan(now)
    logger.info("approval_timeout_job_completed", **report.as_dict())
    return {"status": "ok", **report.as_dict()}
