from datetime import timedelta
from decimal import Decimal

import pytest

from redemption_app.core.errors import NotFoundError, SettlementInProgress, ValidationError
from redemption_app.core.types import Decision, NotificationEvent, RedemptionStatus
from redemption_app.models.distribution import Distribution
from redemption_app.services.retry_policy import RetryPolicy
from redemption_app.services.settlement_service import SettlementService
from redemption_app.tests.fakes import T0, FakeSleep, ScriptedLedgerExecutor


def new_request(redemptions, db, investor_id="inv-1", amount="1000", **kw):
    params = dict(
        investor_id=investor_id,
        token_amount=Decimal(amount),
        token_type="TOKEN-A",
        conversion_rate=Decimal("1.00"),
        source_wallet_address="0xsource",
        destination_wallet_address="0xdest",
        now=T0,
    )
    params.update(kw)
    return redemptions.create_request(db, **params)


def approve(consensus, db, req):
    for who in ("alice", "bob"):
        consensus.submit_decision(db, request_id=req.id, approver_id=who, decision=Decision.approve, now=T0)


def distribution(db, remaining="1000", token_type="TOKEN-A"):
    d = Distribution(
        investor_id="inv-1",
        token_type=token_type,
        token_amount=Decimal(remaining),
        remaining_amount=Decimal(remaining),
    )
    db.add(d)
    db.commit()
    return d


def test_draft_then_submit(db, redemptions, threshold_config, notifier):
    req = new_request(redemptions, db, submit=False)
    assert req.status == RedemptionStatus.draft.value
    assert req.assignments == []
    assert notifier.of(NotificationEvent.REQUEST_SUBMITTED) == []

    req = redemptions.submit_request(db, req.id, now=T0)
    assert req.status == RedemptionStatus.pending_approval.value
    assert req.submitted_at == T0
    assert len(req.assignments) == 3
    (payload,) = notifier.of(NotificationEvent.REQUEST_SUBMITTED)
    assert sorted(payload["approvers"]) == ["alice", "bob", "carol"]


def test_submitting_twice_is_refused(db, redemptions, threshold_config):
    req = new_request(redemptions, db)
    with pytest.raises(ValidationError):
        redemptions.submit_request(db, req.id)


def test_unknown_approval_config_is_not_found(db, redemptions):
    with pytest.raises(NotFoundError):
        new_request(redemptions, db, token_type="TOKEN-Z")


def test_single_investor_request_needs_investor_id(db, redemptions, threshold_config):
    with pytest.raises(ValidationError):
        new_request(redemptions, db, investor_id=None)


def test_aggregate_bulk_request_without_investor(db, redemptions, threshold_config):
    req = new_request(redemptions, db, investor_id=None, is_bulk_redemption=True, investor_count=12)
    assert req.is_bulk_redemption is True
    assert req.investor_count == 12


def test_cancel_pending_request(db, redemptions, threshold_config, notifier):
    req = new_request(redemptions, db)

    req = redemptions.cancel_request(db, req.id, reason="liquidity found elsewhere", now=T0)

    assert req.status == RedemptionStatus.cancelled.value
    assert req.cancellation_reason == "liquidity found elsewhere"
    assert req.cancelled_at == T0
    (payload,) = notifier.of(NotificationEvent.REQUEST_CANCELLED)
    assert payload["reason"] == "liquidity found elsewhere"


def test_cancel_after_approval_is_settlement_in_progress(db, redemptions, consensus, threshold_config):
    req = new_request(redemptions, db)
    approve(consensus, db, req)

    with pytest.raises(SettlementInProgress):
        redemptions.cancel_request(db, req.id)


def test_cancel_of_terminal_request_is_refused(db, redemptions, consensus, threshold_config):
    req = new_request(redemptions, db)
    redemptions.cancel_request(db, req.id)
    with pytest.raises(ValidationError):
        redemptions.cancel_request(db, req.id)


def test_bulk_reports_failures_per_item(db, redemptions, threshold_config):
    base = dict(
        token_type="TOKEN-A",
        conversion_rate=Decimal("1.00"),
        source_wallet_address="0xsource",
        destination_wallet_address="0xdest",
    )
    items = [
        dict(base, investor_id="inv-1", token_amount=Decimal("100")),
        dict(base, investor_id="inv-2", token_amount=Decimal("0")),
        dict(base, investor_id="inv-3", token_amount=Decimal("300"), notes="family office"),
    ]

    result = redemptions.create_bulk_requests(db, items=items, now=T0)

    assert result.batch_id.startswith("bulk_")
    assert [r.investor_id for r in result.created] == ["inv-1", "inv-3"]
    assert [(f.index, f.investor_id) for f in result.failures] == [(1, "inv-2")]
    assert result.created[1].notes == f"family office (batch {result.batch_id})"
    assert all(r.status == RedemptionStatus.pending_approval.value for r in result.created)


def test_distribution_capacity_counts_in_flight_requests(db, redemptions, threshold_config):
    dist = distribution(db, remaining="1000")

    first = new_request(redemptions, db, amount="600", distribution_id=dist.id)
    with pytest.raises(ValidationError):
        new_request(redemptions, db, amount="500", distribution_id=dist.id)
    db.rollback()

    redemptions.cancel_request(db, first.id)
    second = new_request(redemptions, db, amount="500", distribution_id=dist.id)
    assert second.status == RedemptionStatus.pending_approval.value


def test_distribution_token_type_must_match(db, redemptions, threshold_config):
    dist = distribution(db, token_type="TOKEN-B")
    with pytest.raises(ValidationError):
        new_request(redemptions, db, amount="10", distribution_id=dist.id)


def test_list_requests_filters_and_pages(db, redemptions, threshold_config):
    for i in range(3):
        new_request(redemptions, db, investor_id="inv-1", amount=str(100 + i))
    new_request(redemptions, db, investor_id="inv-2")

    rows, total = redemptions.list_requests(db, investor_id="inv-1", page=1, limit=2)
    assert total == 3
    assert len(rows) == 2

    rows, total = redemptions.list_requests(db, status=RedemptionStatus.pending_approval)
    assert total == 4


def test_metrics(db, redemptions, consensus, threshold_config):
    settled = new_request(redemptions, db)
    rejected = new_request(redemptions, db, investor_id="inv-2")
    new_request(redemptions, db, investor_id="inv-3")

    for who in ("alice", "bob"):
        consensus.submit_decision(db, request_id=rejected.id, approver_id=who, decision=Decision.reject, now=T0)
    approve(consensus, db, settled)
    SettlementService(
        ScriptedLedgerExecutor(), RetryPolicy(sleep=FakeSleep()), clock=lambda: T0 + timedelta(hours=2)
    ).execute(db, settled.id)

    m = redemptions.get_metrics(db, token_type="TOKEN-A")

    assert m.total_redemptions == 3
    assert m.total_volume == Decimal("3000")
    assert m.pending_redemptions == 1
    assert m.completed_redemptions == 1
    assert m.rejected_redemptions == 1
    assert m.avg_processing_hours == 2.0
    assert m.success_rate == 33.33
