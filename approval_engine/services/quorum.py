from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from approval_engine.domain import ApprovalChainLevel, ApprovalStep, StepStatus


class LevelOutcome(str, Enum):
    SATISFIED = "SATISFIED"
    REJECTED = "REJECTED"
    PENDING = "PENDING"


@dataclass
class QuorumResult:
    outcome: LevelOutcome
    approved: int
    required: int

    @property
    def is_satisfied(self) -> bool:
        return self.outcome == LevelOutcome.SATISFIED


class QuorumEvaluator:
    """Counts distinct approvers with an APPROVED step on one level against its min_approvers."""

    def evaluate(
        self, level: ApprovalChainLevel, steps: Iterable[ApprovalStep]
    ) -> QuorumResult:
        level_steps = [s for s in steps if s.level == level.level]
        approved = len({s.approver_id for s in level_steps if s.status == StepStatus.APPROVED})
        required = max(1, level.min_approvers)

        # Reported for completeness; reject() finalizes the request without asking us
        if any(s.status == StepStatus.REJECTED for s in level_steps):
            return QuorumResult(LevelOutcome.REJECTED, approved, required)
        if approved >= required:
            return QuorumResult(LevelOutcome.SATISFIED, approved, required)
        return QuorumResult(LevelOutcome.PENDING, approved, required)
