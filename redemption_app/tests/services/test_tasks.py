import uuid
from decimal import Decimal

from redemption_app.core.config import get_settings
from redemption_app.core.types import RedemptionStatus, SettlementStatus
from redemption_app.integrations.ledger_executor import SimulatedLedgerExecutor
from redemption_app.models.redemption_request import RedemptionRequest
from redemption_app.models.settlement import Settlement
from redemption_app.services.tasks import SettlementDispatcher, run_settlement
from redemption_app.tests.fakes import T0, RecordingNotifier


def test_dispatcher_schedules_one_task_per_request(session_factory):
    scheduled = []
    dispatcher = SettlementDispatcher(
        lambda fn, *args, **kwargs: scheduled.append((fn, args, kwargs)),
        session_factory=session_factory,
        executor=SimulatedLedgerExecutor(),
        notifier=None,
        settings=get_settings(),
    )
    ids = [uuid.uuid4(), uuid.uuid4()]

    dispatcher.dispatch_many(ids)

    assert [args[0] for _, args, _ in scheduled] == ids
    assert all(fn is run_settlement for fn, _, _ in scheduled)


def test_run_settlement_uses_its_own_session(db, session_factory):
    req = RedemptionRequest(
        investor_id="inv-1",
        token_amount=Decimal("10"),
        requested_amount=Decimal("10"),
        token_type="TOKEN-A",
        conversion_rate=Decimal("2"),
        source_wallet_address="0xsource",
        destination_wallet_address="0xdest",
        status=RedemptionStatus.approved.value,
        nav_used=Decimal("2"),
        nav_date=T0,
    )
    db.add(req)
    db.commit()
    notifier = RecordingNotifier()

    run_settlement(
        req.id,
        session_factory=session_factory,
        executor=SimulatedLedgerExecutor(),
        notifier=notifier,
        settings=get_settings(),
    )

    db.expire_all()
    s = db.query(Settlement).filter_by(request_id=req.id).one()
    assert s.status == SettlementStatus.completed.value
    assert s.transfer_amount == Decimal("20")
    assert db.get(RedemptionRequest, req.id).status == RedemptionStatus.settled.value


def test_run_settlement_logs_instead_of_raising(session_factory, caplog):
    run_settlement(
        uuid.uuid4(),
        session_factory=session_factory,
        executor=SimulatedLedgerExecutor(),
        notifier=None,
        settings=get_settings(),
    )
    assert "settlement task failed" in caplog.text
