"""
Escalation scheduler: one periodic scan over every open request.

Each tick:
  1. requests whose explicit expires_at has passed → EXPIRED
  2. PENDING steps on the current level whose timeout elapsed and that no
     earlier scan has handled → DelegationHandler.escalate()

A failure on one step is logged and counted; the scan always continues.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from approval_engine.config import Settings, get_settings
from approval_engine.domain import ApprovalChain, RequestStatus, utcnow
from approval_engine.services.chain_registry import ChainRegistry
from approval_engine.services.delegation import (
    DelegationHandler,
    EscalationOutcome,
    step_deadline,
)
from approval_engine.services.lifecycle import RequestLifecycleManager
from approval_engine.store.base import ApprovalStore

logger = structlog.get_logger()


@dataclass
class EscalationReport:
    scanned: int = 0
    escalated: int = 0
    overdue: int = 0
    expired: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class EscalationScheduler:
    def __init__(
        self,
        store: ApprovalStore,
        registry: ChainRegistry,
        lifecycle: RequestLifecycleManager,
        delegation: DelegationHandler,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._registry = registry
        self._lifecycle = lifecycle
        self._delegation = delegation
        self._settings = settings or get_settings()
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    async def scan(self, now: Optional[datetime] = None) -> EscalationReport:
        now = now or self._clock()
        report = EscalationReport()
        chains: dict[str, Optional[ApprovalChain]] = {}

        for request in await self._store.list_open_requests():
            if request.expires_at is not None and request.expires_at <= now:
                try:
                    if await self._lifecycle.expire_request(request.id, now):
                        report.expired += 1
                        continue
                except Exception:
                    report.failed += 1
                    logger.exception("escalation_expiry_failed", request_id=request.id)
                    continue

            if request.status != RequestStatus.IN_PROGRESS:
                continue

            if request.chain_id not in chains:
                chains[request.chain_id] = await self._registry.get_definition(request.chain_id)
            chain = chains[request.chain_id]
            level = chain.level(request.current_level) if chain else None
            if level is None or level.timeout_hours is None:
                continue

            for step in request.steps_at(request.current_level):
                if not step.is_pending or step.escalated_at is not None:
                    continue
                deadline = step_deadline(step, level.timeout_hours)
                if deadline is None or now < deadline:
                    continue

                report.scanned += 1
                try:
                    outcome = await self._delegation.escalate(request.id, step.id, now)
                except Exception as e:
                    report.failed += 1
                    logger.error(
                        "escalation_step_failed",
                        request_id=request.id,
                        step_id=step.id,
                        error=str(e),
                    )
                    continue

                if outcome == EscalationOutcome.ESCALATED:
                    report.escalated += 1
                elif outcome == EscalationOutcome.MARKED_OVERDUE:
                    report.overdue += 1
                else:
                    report.skipped += 1

        logger.info("escalation_scan_completed", **report.as_dict())
        return report

    async def run_forever(self) -> None:
        interval = max(1, int(self._settings.ESCALATION_SCAN_INTERVAL_SECONDS))
        logger.info("escalation_scheduler_started", interval_seconds=interval)
        while True:
            try:
                await self.scan()
            except Exception:
                logger.exception("escalation_scan_failed")
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("escalation_scheduler_stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
