from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from redemption_app.core.errors import ExternalExecutionError, SettlementInProgress, ValidationError
from redemption_app.core.types import (
    LegKind,
    LegStatus,
    NotificationEvent,
    RedemptionStatus,
    SettlementStatus,
)
from redemption_app.db.base import Base
from redemption_app.integrations.ledger_executor import LedgerInstruction, LedgerOutcome
from redemption_app.models.distribution import Distribution, DistributionRedemption
from redemption_app.models.redemption_request import RedemptionRequest
from redemption_app.services.retry_policy import RetryPolicy
from redemption_app.services.settlement_service import SettlementService
from redemption_app.tests.fakes import T0, FakeSleep, RecordingNotifier, ScriptedLedgerExecutor

FAILED = LedgerOutcome.failed
PENDING = LedgerOutcome.pending


def approved_request(db, amount="1000", nav="1.05", status=RedemptionStatus.approved, distribution_id=None):
    req = RedemptionRequest(
        investor_id="inv-1",
        token_amount=Decimal(amount),
        requested_amount=Decimal(amount),
        token_type="TOKEN-A",
        conversion_rate=Decimal(nav),
        source_wallet_address="0xsource",
        destination_wallet_address="0xdest",
        redemption_type="standard",
        status=status.value,
        nav_used=Decimal(nav) if status is RedemptionStatus.approved else None,
        nav_date=T0,
        submitted_at=T0,
        approved_at=T0,
        distribution_id=distribution_id,
        created_at=T0,
        updated_at=T0,
    )
    db.add(req)
    db.commit()
    return req


def build(executor, sleep=None, notifier=None):
    policy = RetryPolicy(
        max_attempts=5,
        base_delay=1.0,
        max_delay=60.0,
        poll_attempts=2,
        poll_interval=2.0,
        sleep=sleep if sleep is not None else FakeSleep(),
    )
    return SettlementService(
        executor,
        policy,
        notifier,
        currency="USDC",
        currency_precision=6,
        pending_timeout_seconds=300,
        clock=lambda: T0,
    )


def test_burn_then_transfer_settles_request(db):
    executor = ScriptedLedgerExecutor()
    notifier = RecordingNotifier()
    req = approved_request(db)

    s = build(executor, notifier=notifier).execute(db, req.id)

    assert s.status == SettlementStatus.completed.value
    assert s.burn.status is LegStatus.confirmed
    assert s.transfer.status is LegStatus.confirmed
    assert s.transfer_amount == Decimal("1050.000000")
    assert s.burn_gas_used == 21000
    assert s.retry_count == 0
    assert [k for k, _ in executor.executions] == [f"{req.id}:burn", f"{req.id}:transfer"]

    db.refresh(req)
    assert req.status == RedemptionStatus.settled.value
    assert req.settled_at == T0

    (payload,) = notifier.of(NotificationEvent.SETTLEMENT_COMPLETED)
    assert payload["burn_tx_hash"] == s.burn_tx_hash
    assert payload["transfer_amount"] == str(s.transfer_amount)


def test_second_execute_returns_terminal_settlement_unchanged(db):
    executor = ScriptedLedgerExecutor()
    req = approved_request(db)
    svc = build(executor)

    first = svc.execute(db, req.id)
    second = svc.execute(db, req.id)

    assert second.id == first.id
    assert len(executor.executions) == 2
    assert len(executor.submissions) == 2


def test_burn_exhausting_retries_fails_without_transfer(db):
    executor = ScriptedLedgerExecutor(burn=[FAILED] * 5)
    sleep = FakeSleep()
    notifier = RecordingNotifier()
    req = approved_request(db)

    s = build(executor, sleep=sleep, notifier=notifier).execute(db, req.id)

    assert s.status == SettlementStatus.failed.value
    assert s.retry_count == 5
    assert s.burn.status is LegStatus.failed
    assert s.burn.failures == 5
    assert s.transfer.status is LegStatus.not_started
    assert executor.executed(LegKind.transfer) == []
    # backoff after each non-final failure: 1, 2, 4, 8 seconds
    assert sleep.calls == [1.0, 2.0, 4.0, 8.0]

    db.refresh(req)
    assert req.status == RedemptionStatus.failed.value

    (payload,) = notifier.of(NotificationEvent.SETTLEMENT_FAILED)
    assert payload["manual_intervention_required"] is False


def test_transient_burn_failures_are_retried(db):
    executor = ScriptedLedgerExecutor(burn=[FAILED, FAILED])
    sleep = FakeSleep()
    req = approved_request(db)

    s = build(executor, sleep=sleep).execute(db, req.id)

    assert s.status == SettlementStatus.completed.value
    assert s.retry_count == 2
    assert s.burn.attempts == 3
    assert sleep.calls == [1.0, 2.0]
    assert sorted(a.status for a in s.attempts if a.leg == "burn") == ["confirmed", "failed", "failed"]


def test_executor_exception_counts_as_failed_attempt(db):
    executor = ScriptedLedgerExecutor(burn=[RuntimeError("rail timeout")])
    req = approved_request(db)

    s = build(executor).execute(db, req.id)

    assert s.status == SettlementStatus.completed.value
    assert s.retry_count == 1
    assert s.last_error == "rail timeout"


def test_transfer_failure_after_burn_needs_manual_resolution(db):
    executor = ScriptedLedgerExecutor(transfer=[FAILED] * 5)
    notifier = RecordingNotifier()
    req = approved_request(db)

    s = build(executor, notifier=notifier).execute(db, req.id)

    assert s.status == SettlementStatus.failed_post_burn.value
    assert s.burn.status is LegStatus.confirmed
    assert s.transfer.status is LegStatus.failed
    assert len(executor.executed(LegKind.burn)) == 1

    db.refresh(req)
    assert req.status == RedemptionStatus.failed.value
    (payload,) = notifier.of(NotificationEvent.SETTLEMENT_FAILED)
    assert payload["manual_intervention_required"] is True
    assert payload["status"] == SettlementStatus.failed_post_burn.value


def test_transfer_amount_is_rounded_down_to_currency_precision(db):
    req = approved_request(db, amount="3", nav="0.3333333")
    s = build(ScriptedLedgerExecutor()).execute(db, req.id)
    assert s.transfer_amount == Decimal("0.999999")


def test_unapproved_request_does_not_settle(db):
    req = approved_request(db, status=RedemptionStatus.pending_approval)
    with pytest.raises(ValidationError):
        build(ScriptedLedgerExecutor()).execute(db, req.id)


def test_pending_leg_is_picked_up_by_reconciliation(db):
    executor = ScriptedLedgerExecutor(transfer=[PENDING])
    sleep = FakeSleep()
    req = approved_request(db)
    svc = build(executor, sleep=sleep)

    s = svc.execute(db, req.id)
    assert s.status == SettlementStatus.processing.value
    assert s.transfer.status is LegStatus.pending
    # confirmation polled twice before giving up for now
    assert sleep.calls == [2.0, 2.0]

    # not stale yet
    assert svc.reconcile_pending(db, now=T0 + timedelta(seconds=60)) == []

    executor.resolve(f"{req.id}:transfer", LedgerOutcome.confirmed)
    touched = svc.reconcile_pending(db, now=T0 + timedelta(hours=1))

    assert [t.id for t in touched] == [s.id]
    db.refresh(s)
    assert s.status == SettlementStatus.completed.value
    assert len(executor.executed(LegKind.burn)) == 1
    assert len(executor.executed(LegKind.transfer)) == 1


def test_pending_leg_that_failed_is_retried_by_reconciliation(db):
    executor = ScriptedLedgerExecutor(burn=[PENDING])
    req = approved_request(db)
    svc = build(executor)

    svc.execute(db, req.id)
    executor.resolve(f"{req.id}:burn", FAILED)

    (s,) = svc.reconcile_pending(db, now=T0 + timedelta(hours=1))

    assert s.status == SettlementStatus.completed.value
    assert s.retry_count == 1
    assert len(executor.executed(LegKind.burn)) == 2


def test_completed_settlement_draws_down_distribution(db):
    dist = Distribution(
        investor_id="inv-1",
        token_type="TOKEN-A",
        token_amount=Decimal("5000"),
        remaining_amount=Decimal("5000"),
    )
    db.add(dist)
    db.commit()
    req = approved_request(db, distribution_id=dist.id)

    build(ScriptedLedgerExecutor()).execute(db, req.id)

    db.refresh(dist)
    assert dist.remaining_amount == Decimal("4000")
    assert dist.fully_redeemed is False
    row = db.query(DistributionRedemption).one()
    assert row.amount_redeemed == Decimal("1000")
    assert row.remaining_after == Decimal("4000")


def test_retry_policy_backoff_is_capped():
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=5.0)
    assert [policy.delay_for(n) for n in range(0, 6)] == [0.0, 1.0, 2.0, 4.0, 5.0, 5.0]
    assert policy.exhausted(5) is True
    assert policy.exhausted(4) is False


@pytest.fixture
def file_sessions(tmp_path):
    """Separate connections on a file database, so two workers really race."""
    eng = create_engine(f"sqlite:///{tmp_path / 'settlement.db'}")
    Base.metadata.create_all(eng)
    try:
        yield sessionmaker(bind=eng, autoflush=False)
    finally:
        eng.dispose()


def test_concurrent_execute_submits_each_leg_once(file_sessions):
    seen = []

    def second_worker(key, instruction):
        with file_sessions() as other:
            try:
                build(executor).execute(other, rid)
            except SettlementInProgress as exc:
                seen.append(exc)

    executor = ScriptedLedgerExecutor(before_submit=second_worker)
    with file_sessions() as db:
        rid = approved_request(db).id

        s = build(executor).execute(db, rid)

        assert s.status == SettlementStatus.completed.value
    assert len(seen) == 1
    assert [k for k, _ in executor.submissions] == [f"{rid}:burn", f"{rid}:transfer"]
    assert len(executor.executed(LegKind.burn)) == 1
    assert len(executor.executed(LegKind.transfer)) == 1


def test_expired_lease_is_taken_over(db):
    executor = ScriptedLedgerExecutor(burn=[PENDING])
    req = approved_request(db)
    svc = build(executor)
    s = svc.execute(db, req.id)
    assert s.lease_owner is None

    # a worker that died mid-flight leaves its lease behind
    s.lease_owner = "dead-worker"
    s.lease_expires_at = T0 - timedelta(seconds=1)
    db.commit()
    executor.resolve(f"{req.id}:burn", LedgerOutcome.confirmed)

    s = svc.execute(db, req.id)
    assert s.status == SettlementStatus.completed.value
    assert s.lease_owner is None


def test_live_lease_refuses_a_second_worker(db):
    req = approved_request(db)
    svc = build(ScriptedLedgerExecutor(burn=[PENDING]))
    s = svc.execute(db, req.id)
    s.lease_owner = "other-worker"
    s.lease_expires_at = T0 + timedelta(minutes=5)
    db.commit()

    with pytest.raises(SettlementInProgress):
        svc.execute(db, req.id)


def test_executor_crash_is_wrapped_as_external_execution_error(db):
    svc = build(ScriptedLedgerExecutor(burn=[ConnectionError("rpc down")]))
    instruction = LedgerInstruction(
        kind=LegKind.burn,
        request_id="r-1",
        token_type="TOKEN-A",
        amount=Decimal("1"),
        from_address="0xsource",
        to_address="0xsource",
    )
    with pytest.raises(ExternalExecutionError) as info:
        svc._submit("r-1:burn", instruction)
    assert info.value.message == "rpc down"
    assert info.value.entity_id == "r-1"
    assert isinstance(info.value.__cause__, ConnectionError)
