import pytest

from redemption_app.core.types import ConsensusType, Verdict
from redemption_app.services.consensus_rules import Tally, approvals_needed, evaluate_tally


def t(approved, rejected, pending):
    return Tally(approved=approved, rejected=rejected, pending=pending)


@pytest.mark.parametrize(
    "tally, expected",
    [
        (t(3, 0, 0), Verdict.approved),
        (t(2, 0, 1), Verdict.pending),
        (t(0, 1, 2), Verdict.rejected),
        (t(2, 1, 0), Verdict.rejected),
    ],
)
def test_all_requires_unanimity_and_rejects_on_first_no(tally, expected):
    assert evaluate_tally(ConsensusType.all, tally, 3) is expected


@pytest.mark.parametrize(
    "tally, expected",
    [
        (t(2, 0, 1), Verdict.approved),
        (t(1, 1, 1), Verdict.pending),
        (t(0, 2, 1), Verdict.rejected),
        (t(2, 0, 2), Verdict.pending),
        (t(3, 0, 1), Verdict.approved),
        # 4 approvers: two rejections make 3 approvals impossible
        (t(1, 2, 1), Verdict.rejected),
    ],
)
def test_majority_is_strictly_more_than_half(tally, expected):
    assert evaluate_tally(ConsensusType.majority, tally, 0) is expected


@pytest.mark.parametrize(
    "tally, required, expected",
    [
        (t(2, 0, 1), 2, Verdict.approved),
        (t(1, 1, 1), 2, Verdict.pending),
        (t(1, 2, 0), 2, Verdict.rejected),
        (t(0, 2, 1), 2, Verdict.rejected),
        (t(1, 1, 3), 4, Verdict.pending),
    ],
)
def test_threshold_rejects_once_unreachable(tally, required, expected):
    assert evaluate_tally(ConsensusType.threshold, tally, required) is expected


def test_tally_counts_statuses():
    tally = Tally.of(["approved", "pending", "rejected", "approved"])
    assert (tally.approved, tally.rejected, tally.pending) == (2, 1, 1)
    assert tally.total == 4


def test_approvals_needed_per_rule():
    assert approvals_needed(ConsensusType.all, 3, 2) == 3
    assert approvals_needed(ConsensusType.majority, 4, 2) == 3
    assert approvals_needed(ConsensusType.majority, 3, 2) == 2
    assert approvals_needed(ConsensusType.threshold, 5, 2) == 2
