from decimal import Decimal
from itertools import permutations

import pytest

from redemption_app.core.errors import DuplicateDecision, NotAnAssignedApprover, ValidationError
from redemption_app.core.types import (
    ConsensusType,
    Decision,
    DecisionOutcome,
    NotificationEvent,
    RedemptionStatus,
    Verdict,
)
from redemption_app.services.approval_config_service import ApprovalConfigService
from redemption_app.services.consensus_service import SYSTEM_APPROVER, ConsensusService
from redemption_app.services.redemption_service import RedemptionService
from redemption_app.tests.fakes import T0, RecordingNotifier


def submit(redemptions, db, investor_id="inv-1", amount="1000", token_type="TOKEN-A"):
    return redemptions.create_request(
        db,
        investor_id=investor_id,
        token_amount=Decimal(amount),
        token_type=token_type,
        conversion_rate=Decimal("1.05"),
        source_wallet_address="0xsource",
        destination_wallet_address="0xdest",
        now=T0,
    )


def config(db, key="TOKEN-A", **kw):
    params = dict(
        consensus_type=ConsensusType.threshold,
        required_approvals=2,
        eligible_roles=["compliance"],
    )
    params.update(kw)
    return ApprovalConfigService().upsert(db, resource_key=key, **params)


def decide(consensus, db, req, who, decision=Decision.approve, comment=None):
    return consensus.submit_decision(
        db, request_id=req.id, approver_id=who, decision=decision, comment=comment, now=T0
    )


def test_one_seat_per_eligible_approver(db, redemptions, threshold_config):
    req = submit(redemptions, db)

    assert req.status == RedemptionStatus.pending_approval.value
    assert sorted(a.approver_id for a in req.assignments) == ["alice", "bob", "carol"]
    assert req.required_approvals == 2


def test_investor_never_approves_own_request(db, redemptions, threshold_config):
    req = submit(redemptions, db, investor_id="alice")
    assert sorted(a.approver_id for a in req.assignments) == ["bob", "carol"]


def test_threshold_reached_approves_and_hands_off(db, redemptions, consensus, threshold_config, approved_ids, notifier):
    req = submit(redemptions, db)

    first = decide(consensus, db, req, "alice")
    assert first.outcome is DecisionOutcome.recorded
    assert first.verdict is Verdict.pending
    assert approved_ids == []

    second = decide(consensus, db, req, "bob")
    assert second.outcome is DecisionOutcome.finalized
    assert second.verdict is Verdict.approved

    db.refresh(req)
    assert req.status == RedemptionStatus.approved.value
    assert req.nav_used == Decimal("1.05")
    assert approved_ids == [req.id]
    assert len(notifier.of(NotificationEvent.REQUEST_APPROVED)) == 1


def test_late_decision_is_kept_but_changes_nothing(db, redemptions, consensus, threshold_config, approved_ids):
    req = submit(redemptions, db)
    decide(consensus, db, req, "alice")
    decide(consensus, db, req, "bob")

    late = decide(consensus, db, req, "carol", Decision.reject)

    assert late.outcome is DecisionOutcome.already_finalized
    assert late.verdict is Verdict.approved
    assert late.assignment.late_decision is True
    assert late.assignment.status == "rejected"
    db.refresh(req)
    assert req.status == RedemptionStatus.approved.value
    assert approved_ids == [req.id]


def test_threshold_unreachable_rejects_early(db, redemptions, consensus, threshold_config, approved_ids):
    req = submit(redemptions, db)

    decide(consensus, db, req, "alice", Decision.reject, comment="sanctions hit")
    result = decide(consensus, db, req, "bob", Decision.reject, comment="agree")

    assert result.verdict is Verdict.rejected
    db.refresh(req)
    assert req.status == RedemptionStatus.rejected.value
    assert req.rejected_by == "bob"
    assert req.rejection_reason == "agree"
    assert approved_ids == []


def test_unassigned_approver_is_refused(db, redemptions, consensus, threshold_config):
    req = submit(redemptions, db)
    with pytest.raises(NotAnAssignedApprover):
        decide(consensus, db, req, "dave")


def test_second_decision_by_same_approver_conflicts(db, redemptions, consensus, threshold_config):
    req = submit(redemptions, db)
    decide(consensus, db, req, "alice")
    with pytest.raises(DuplicateDecision):
        decide(consensus, db, req, "alice", Decision.reject)


def test_small_amount_is_auto_approved(db, redemptions, consensus, approved_ids):
    config(db, auto_approve_threshold=Decimal("5000"))

    req = submit(redemptions, db, amount="1000")

    assert req.status == RedemptionStatus.approved.value
    assert [a.approver_id for a in req.assignments] == [SYSTEM_APPROVER]
    assert req.assignments[0].is_system is True
    assert approved_ids == [req.id]

    with pytest.raises(NotAnAssignedApprover):
        decide(consensus, db, req, SYSTEM_APPROVER)


def test_amount_above_auto_threshold_goes_to_approvers(db, redemptions):
    config(db, auto_approve_threshold=Decimal("500"))
    req = submit(redemptions, db, amount="1000")
    assert req.status == RedemptionStatus.pending_approval.value


def test_requires_all_approvers_rejects_on_single_no(db, redemptions, consensus):
    config(db, consensus_type=ConsensusType.majority, requires_all_approvers=True)
    req = submit(redemptions, db)
    assert req.required_approvals == 3

    decide(consensus, db, req, "alice")
    result = decide(consensus, db, req, "bob", Decision.reject)
    assert result.verdict is Verdict.rejected


def test_majority_of_three(db, redemptions, consensus):
    config(db, consensus_type=ConsensusType.majority)
    req = submit(redemptions, db)
    assert req.required_approvals == 2

    decide(consensus, db, req, "alice")
    result = decide(consensus, db, req, "carol")
    assert result.verdict is Verdict.approved


def test_no_eligible_approvers_is_a_validation_error(db, redemptions):
    config(db, eligible_roles=["board"], required_approvals=1)
    with pytest.raises(ValidationError):
        submit(redemptions, db)


def test_threshold_larger_than_pool_is_a_validation_error(db, redemptions):
    config(db, eligible_roles=["treasury"], required_approvals=2)
    with pytest.raises(ValidationError):
        submit(redemptions, db)


def test_failing_notifier_does_not_block_verdict(db, role_provider, windows, threshold_config):
    consensus = ConsensusService(role_provider, RecordingNotifier(fail=True))
    redemptions = RedemptionService(consensus, windows, RecordingNotifier(fail=True))
    req = submit(redemptions, db)

    decide(consensus, db, req, "alice")
    result = decide(consensus, db, req, "bob")
    assert result.verdict is Verdict.approved


def test_pending_queue_per_approver(db, redemptions, consensus, threshold_config):
    r1 = submit(redemptions, db)
    r2 = submit(redemptions, db, investor_id="inv-2")
    decide(consensus, db, r1, "alice")

    assert [r.id for r in consensus.pending_for_approver(db, "alice")] == [r2.id]
    assert {r.id for r in consensus.pending_for_approver(db, "bob")} == {r1.id, r2.id}


def test_majority_approve_reject_approve(db, redemptions, consensus, approved_ids):
    config(db, consensus_type=ConsensusType.majority)
    req = submit(redemptions, db)

    assert decide(consensus, db, req, "alice").verdict is Verdict.pending
    second = decide(consensus, db, req, "bob", Decision.reject)
    assert second.verdict is Verdict.pending
    db.refresh(req)
    assert req.status == RedemptionStatus.pending_approval.value

    third = decide(consensus, db, req, "carol")
    assert third.verdict is Verdict.approved
    assert approved_ids == [req.id]


@pytest.mark.parametrize(
    "votes, expected",
    [
        ({"alice": Decision.approve, "bob": Decision.reject, "carol": Decision.approve}, RedemptionStatus.approved),
        ({"alice": Decision.reject, "bob": Decision.reject, "carol": Decision.approve}, RedemptionStatus.rejected),
    ],
)
def test_threshold_verdict_does_not_depend_on_decision_order(db, redemptions, consensus, threshold_config, votes, expected):
    for order in permutations(votes):
        req = submit(redemptions, db)
        for who in order:
            decide(consensus, db, req, who, votes[who])
        db.refresh(req)
        assert req.status == expected.value, order
