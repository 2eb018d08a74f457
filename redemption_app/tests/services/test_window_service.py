from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from redemption_app.core.errors import NoOpenWindow, SchedulingError, ValidationError
from redemption_app.core.types import (
    ConsensusType,
    NotificationEvent,
    RedemptionStatus,
    RedemptionType,
    WindowStatus,
)
from redemption_app.integrations.pricing import DatabasePricingOracle
from redemption_app.models.redemption_request import RedemptionRequest
from redemption_app.services.approval_config_service import ApprovalConfigService
from redemption_app.services.nav_service import NavService
from redemption_app.services.redemption_service import RedemptionService
from redemption_app.services.retry_policy import RetryPolicy
from redemption_app.services.settlement_service import SettlementService
from redemption_app.services.window_service import WindowService
from redemption_app.tests.fakes import T0, FakeSleep, ScriptedLedgerExecutor

DAY = timedelta(days=1)


def auto_approve_config(db):
    return ApprovalConfigService().upsert(
        db,
        resource_key="TOKEN-A",
        consensus_type=ConsensusType.threshold,
        required_approvals=1,
        eligible_roles=["compliance"],
        auto_approve_threshold=Decimal("10000000"),
    )


def make_window(db, windows, offset=timedelta(0), open_now=True, **kw):
    start = T0 + offset
    w = windows.create_window(
        db,
        token_type="TOKEN-A",
        submission_start=start,
        submission_end=start + 7 * DAY,
        start=start + 7 * DAY,
        end=start + 14 * DAY,
        **kw,
    )
    if open_now:
        w = windows.open_window(db, w.id, now=start)
    return w


def interval(redemptions, db, investor_id, amount, when=T0 + timedelta(hours=1)):
    return redemptions.create_request(
        db,
        investor_id=investor_id,
        token_amount=Decimal(amount),
        token_type="TOKEN-A",
        conversion_rate=Decimal("1.00"),
        source_wallet_address=f"0x{investor_id}",
        destination_wallet_address=f"0xbank-{investor_id}",
        redemption_type=RedemptionType.interval,
        now=when,
    )


def children_of(db, parent):
    return db.execute(
        select(RedemptionRequest).where(RedemptionRequest.parent_request_id == parent.id)
    ).scalars().all()


@pytest.fixture
def priced_ids():
    return []


@pytest.fixture
def windows(notifier, priced_ids):
    return WindowService(notifier=notifier, on_priced=priced_ids.extend)


def test_oversubscribed_window_is_prorated_and_remainders_queued(db, windows, redemptions, priced_ids, notifier):
    auto_approve_config(db)
    w = make_window(db, windows, max_redemption_amount=Decimal("1000000"))

    a = interval(redemptions, db, "inv-a", "700000")
    b = interval(redemptions, db, "inv-b", "500000")
    assert a.status == RedemptionStatus.approved.value
    assert a.nav_used is None

    windows.close_submissions(db, w.id)
    result = windows.price_and_process(db, w.id, nav=Decimal("1.02"), now=T0 + 8 * DAY)

    assert result.pro_rata_applied is True
    db.refresh(a)
    db.refresh(b)
    assert a.token_amount == Decimal("583333")
    assert b.token_amount == Decimal("416667")
    assert a.requested_amount == Decimal("700000")
    assert a.nav_used == Decimal("1.02")
    assert b.nav_used == Decimal("1.02")

    (child_a,) = children_of(db, a)
    (child_b,) = children_of(db, b)
    assert child_a.token_amount == Decimal("116667")
    assert child_b.token_amount == Decimal("83333")
    assert child_a.status == RedemptionStatus.queued.value
    assert child_a.nav_used is None

    assert sorted(priced_ids) == sorted([a.id, b.id])
    assert sorted(result.queued_request_ids) == sorted([child_a.id, child_b.id])

    db.refresh(w)
    assert w.status == WindowStatus.processing.value
    assert w.nav == Decimal("1.02")
    assert w.current_requests == 2
    assert w.total_request_value == Decimal("1200000")
    assert w.approved_value == Decimal("1000000")
    assert w.queued_value == Decimal("200000")
    assert len(notifier.of(NotificationEvent.REQUEST_QUEUED)) == 2


def test_remainders_rejected_when_queueing_disabled(db, windows, redemptions):
    auto_approve_config(db)
    w = make_window(
        db, windows, max_redemption_amount=Decimal("1000000"), queue_unprocessed_requests=False
    )
    a = interval(redemptions, db, "inv-a", "700000")
    interval(redemptions, db, "inv-b", "500000")

    windows.close_submissions(db, w.id)
    result = windows.price_and_process(db, w.id, nav=Decimal("1"), now=T0 + 8 * DAY)

    assert len(result.rejected_request_ids) == 2
    (child_a,) = children_of(db, a)
    assert child_a.status == RedemptionStatus.rejected.value
    db.refresh(w)
    assert w.rejected_value == Decimal("200000")
    assert w.queued_value == Decimal("0")


def test_first_come_fill_when_pro_rata_disabled(db, windows, redemptions):
    auto_approve_config(db)
    w = make_window(
        db, windows, max_redemption_amount=Decimal("1000000"), enable_pro_rata_distribution=False
    )
    a = interval(redemptions, db, "inv-a", "700000", when=T0 + timedelta(hours=1))
    b = interval(redemptions, db, "inv-b", "500000", when=T0 + timedelta(hours=2))

    windows.close_submissions(db, w.id)
    windows.price_and_process(db, w.id, nav=Decimal("1"), now=T0 + 8 * DAY)

    db.refresh(a)
    db.refresh(b)
    assert a.token_amount == Decimal("700000")
    assert b.token_amount == Decimal("300000")
    assert children_of(db, a) == []
    (child_b,) = children_of(db, b)
    assert child_b.token_amount == Decimal("200000")


def test_pricing_waits_for_every_verdict(db, windows, redemptions, threshold_config):
    w = make_window(db, windows)
    req = interval(redemptions, db, "inv-a", "1000")
    assert req.status == RedemptionStatus.pending_approval.value

    windows.close_submissions(db, w.id)
    with pytest.raises(SchedulingError):
        windows.price_and_process(db, w.id, nav=Decimal("1"), now=T0 + 8 * DAY)

    db.refresh(w)
    assert w.status == WindowStatus.closed.value
    assert w.nav is None


def test_pricing_uses_latest_validated_nav(db, notifier, redemptions):
    auto_approve_config(db)
    navs = NavService()
    old = navs.record_nav(db, token_type="TOKEN-A", nav=Decimal("0.98"), nav_date=T0 + 5 * DAY)
    navs.validate_nav(db, nav_id=old.id, validated_by="ops-2")
    navs.record_nav(db, token_type="TOKEN-A", nav=Decimal("1.10"), nav_date=T0 + 6 * DAY)

    windows = WindowService(notifier=notifier, pricing_oracle=DatabasePricingOracle(db))
    w = make_window(db, windows)
    req = interval(redemptions, db, "inv-a", "1000")
    windows.close_submissions(db, w.id)

    result = windows.price_and_process(db, w.id, now=T0 + 8 * DAY)

    # the unvalidated 1.10 is ignored
    assert result.nav == Decimal("0.98")
    db.refresh(req)
    assert req.nav_used == Decimal("0.98")


def test_pricing_without_any_validated_nav_fails(db, notifier):
    windows = WindowService(notifier=notifier, pricing_oracle=DatabasePricingOracle(db))
    w = make_window(db, windows)
    windows.close_submissions(db, w.id)
    with pytest.raises(SchedulingError):
        windows.price_and_process(db, w.id, now=T0 + 8 * DAY)


def test_interval_request_needs_open_window(db, redemptions):
    auto_approve_config(db)
    with pytest.raises(NoOpenWindow):
        interval(redemptions, db, "inv-a", "1000")


def test_overlapping_windows_are_refused(db, windows):
    make_window(db, windows)
    with pytest.raises(ValidationError):
        make_window(db, windows, offset=3 * DAY, open_now=False)


def test_invalid_periods_are_refused(db, windows):
    with pytest.raises(ValidationError):
        windows.create_window(
            db,
            token_type="TOKEN-A",
            submission_start=T0,
            submission_end=T0 + 7 * DAY,
            start=T0 + 3 * DAY,
            end=T0 + 10 * DAY,
        )


def test_scheduler_opens_and_closes_due_windows(db, windows):
    w = make_window(db, windows, open_now=False)

    out = windows.activate_due_windows(db, now=T0 + timedelta(hours=1))
    assert out == {"opened": [w.id], "closed": []}

    out = windows.activate_due_windows(db, now=T0 + 8 * DAY)
    assert out == {"opened": [], "closed": [w.id]}
    db.refresh(w)
    assert w.status == WindowStatus.closed.value


def test_complete_requires_settled_requests_and_carries_queue_forward(db, windows, redemptions, notifier):
    auto_approve_config(db)
    w1 = make_window(db, windows, max_redemption_amount=Decimal("1000000"))
    a = interval(redemptions, db, "inv-a", "700000")
    b = interval(redemptions, db, "inv-b", "500000")
    windows.close_submissions(db, w1.id)
    windows.price_and_process(db, w1.id, nav=Decimal("1"), now=T0 + 8 * DAY)

    with pytest.raises(SchedulingError):
        windows.complete(db, w1.id)

    settlements = SettlementService(
        ScriptedLedgerExecutor(), RetryPolicy(sleep=FakeSleep()), clock=lambda: T0 + 9 * DAY
    )
    settlements.execute(db, a.id)
    settlements.execute(db, b.id)

    w1 = windows.complete(db, w1.id, now=T0 + 10 * DAY)
    assert w1.status == WindowStatus.completed.value
    assert w1.approved_value == Decimal("1000000")
    assert w1.queued_value == Decimal("200000")

    w2 = make_window(db, windows, offset=14 * DAY)

    carried = db.execute(
        select(RedemptionRequest).where(RedemptionRequest.window_id == w2.id)
    ).scalars().all()
    assert len(carried) == 2
    assert all(r.status == RedemptionStatus.approved.value for r in carried)
    assert all(r.carried_from_window_id == w1.id for r in carried)
    assert w2.current_requests == 2
    assert w2.total_request_value == Decimal("200000")

    windows.close_submissions(db, w2.id)
    result = windows.price_and_process(db, w2.id, nav=Decimal("1.01"), now=T0 + 22 * DAY)
    assert sorted(result.settle_request_ids) == sorted(r.id for r in carried)
    assert result.pro_rata_applied is False


def test_cancelled_request_leaves_window_counters(db, windows, redemptions, threshold_config):
    w = make_window(db, windows)
    a = interval(redemptions, db, "inv-a", "1000")
    interval(redemptions, db, "inv-b", "2000")

    db.refresh(w)
    assert w.current_requests == 2
    assert w.total_request_value == Decimal("3000")

    redemptions.cancel_request(db, a.id, reason="changed mind")
    db.refresh(w)
    assert w.current_requests == 1
    assert w.total_request_value == Decimal("2000")


def test_processing_sla_alerts_once(db, windows, redemptions, notifier):
    auto_approve_config(db)
    w = make_window(db, windows)
    interval(redemptions, db, "inv-a", "1000")
    windows.close_submissions(db, w.id)
    windows.price_and_process(db, w.id, nav=Decimal("1"), now=T0 + 8 * DAY)

    assert windows.check_processing_sla(db, now=T0 + 8 * DAY + timedelta(hours=1)) == []

    alerts = windows.check_processing_sla(db, now=T0 + 10 * DAY)
    assert [a.entity_id for a in alerts] == [str(w.id)]
    assert len(notifier.of(NotificationEvent.WINDOW_SLA_BREACHED)) == 1

    assert windows.check_processing_sla(db, now=T0 + 11 * DAY) == []


def test_cap_must_be_whole_allocation_units(db, windows):
    with pytest.raises(ValidationError):
        make_window(db, windows, open_now=False, max_redemption_amount=Decimal("1000.5"))

    w = make_window(
        db, windows, open_now=False, max_redemption_amount=Decimal("1000.5"), allocation_precision=1
    )
    assert w.max_redemption_amount == Decimal("1000.5")


def test_queued_remainders_move_to_next_window_while_previous_still_settles(db, windows, redemptions):
    auto_approve_config(db)
    w1 = make_window(db, windows, max_redemption_amount=Decimal("1000"))
    a = interval(redemptions, db, "inv-a", "1000")
    b = interval(redemptions, db, "inv-b", "500")
    windows.close_submissions(db, w1.id)
    windows.price_and_process(db, w1.id, nav=Decimal("1"), now=T0 + 8 * DAY)
    (child_a,) = children_of(db, a)
    (child_b,) = children_of(db, b)

    # w1 is still processing when the next window opens
    w2 = make_window(db, windows, offset=14 * DAY)

    db.refresh(child_a)
    db.refresh(child_b)
    assert child_a.window_id == w2.id
    assert child_b.window_id == w2.id
    assert child_a.carried_from_window_id == w1.id
    assert child_a.status == RedemptionStatus.approved.value
    assert w2.current_requests == 2
    assert w2.total_request_value == Decimal("500")

    settlements = SettlementService(
        ScriptedLedgerExecutor(), RetryPolicy(sleep=FakeSleep()), clock=lambda: T0 + 9 * DAY
    )
    settlements.execute(db, a.id)
    settlements.execute(db, b.id)
    w1 = windows.complete(db, w1.id, now=T0 + 10 * DAY)

    # what w1 queued is still reported against it
    assert w1.queued_value == Decimal("500")
    assert w1.approved_value == Decimal("1000")
