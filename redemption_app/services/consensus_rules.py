# redemption_app/services/consensus_rules.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable

from redemption_app.core.types import AssignmentStatus, ConsensusType, Verdict


@dataclass(frozen=True)
class Tally:
    approved: int
    rejected: int
    pending: int

    @property
    def total(self) -> int:
        return self.approved + self.rejected + self.pending

    @classmethod
    def of(cls, statuses: Iterable[str]) -> "Tally":
        approved = rejected = pending = 0
        for s in statuses:
            if s == AssignmentStatus.approved.value:
                approved += 1
            elif s == AssignmentStatus.rejected.value:
                rejected += 1
            else:
                pending += 1
        return cls(approved=approved, rejected=rejected, pending=pending)


def _unanimous(t: Tally, required: int) -> Verdict:
    # fail-fast: a single rejection ends it
    if t.rejected > 0:
        return Verdict.rejected
    if t.total > 0 and t.approved == t.total:
        return Verdict.approved
    return Verdict.pending


def _majority(t: Tally, required: int) -> Verdict:
    if t.total == 0:
        return Verdict.pending
    if t.approved * 2 > t.total:
        return Verdict.approved
    # majority unreachable once rejections reach total - floor(total / 2)
    if t.rejected >= t.total - t.total // 2:
        return Verdict.rejected
    return Verdict.pending


def _threshold(t: Tally, required: int) -> Verdict:
    if t.approved >= required:
        return Verdict.approved
    if t.approved + t.pending < required:
        return Verdict.rejected
    return Verdict.pending


RULES: Dict[ConsensusType, Callable[[Tally, int], Verdict]] = {
    ConsensusType.all: _unanimous,
    ConsensusType.majority: _majority,
    ConsensusType.threshold: _threshold,
}


def evaluate_tally(consensus: ConsensusType, tally: Tally, required: int) -> Verdict:
    return RULES[consensus](tally, required)


def approvals_needed(consensus: ConsensusType, total_assigned: int, required: int) -> int:
    """Number of approvals that finalizes the request, stored on the request for display."""
    if consensus is ConsensusType.all:
        return total_assigned
    if consensus is ConsensusType.majority:
        return total_assigned // 2 + 1
    return required
