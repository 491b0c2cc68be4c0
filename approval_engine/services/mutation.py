"""
Guarded read-validate-write cycle for the request aggregate.

Every request-mutating operation goes through ``mutate_request``: load a
fresh copy, let ``apply`` check preconditions and change it, then save with
the version check. On a version conflict the whole cycle reruns against the
newly committed state, so a losing writer re-validates (and typically fails
with RequestAlreadyFinalizedError / StepAlreadyProcessedError) instead of
overwriting the winner.
"""

from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_none,
)
import structlog

from approval_engine.domain import ApprovalRequest
from approval_engine.errors import ConcurrentModificationError, NotFoundError
from approval_engine.events import ApprovalEvent
from approval_engine.store.base import ApprovalStore

logger = structlog.get_logger()

# Returns the events to publish, or None when there is nothing to write
ApplyFn = Callable[[ApprovalRequest], Awaitable[Optional[list[ApprovalEvent]]]]


def _log_conflict(request_id: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        logger.info(
            "approval_request_conflict_retry",
            request_id=request_id,
            attempt=retry_state.attempt_number,
        )

    return before_sleep


async def mutate_request(
    store: ApprovalStore,
    request_id: str,
    apply: ApplyFn,
    max_retries: int = 3,
) -> tuple[ApprovalRequest, list[ApprovalEvent]]:
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(ConcurrentModificationError),
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_none(),
        before_sleep=_log_conflict(request_id),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                request = await store.get_request(request_id)
                if request is None:
                    raise NotFoundError(f"Approval request with ID '{request_id}' not found")

                events = await apply(request)
                if events is None:
                    return request, []

                await store.save_request(request)
                return request, events
    except ConcurrentModificationError:
        logger.error(
            "approval_request_conflict_retries_exhausted",
            request_id=request_id,
            attempts=max_retries + 1,
        )
        raise
