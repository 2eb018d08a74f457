# redemption_app/services/tasks.py
from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from redemption_app.core.config import Settings
from redemption_app.core.errors import RedemptionError
from redemption_app.integrations.ledger_executor import LedgerExecutor
from redemption_app.integrations.notifications import NotificationSink
from redemption_app.services.retry_policy import RetryPolicy
from redemption_app.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def build_settlement_service(
    *,
    executor: LedgerExecutor,
    notifier: Optional[NotificationSink],
    settings: Settings,
    sleep: Callable[[float], None] = time.sleep,
) -> SettlementService:
    return SettlementService(
        executor,
        RetryPolicy.from_settings(settings, sleep=sleep),
        notifier,
        currency=settings.settlement_currency,
        currency_precision=settings.currency_precision,
        pending_timeout_seconds=settings.reconciliation_pending_timeout_seconds,
    )


def run_settlement(
    request_id: uuid.UUID,
    *,
    session_factory: SessionFactory,
    executor: LedgerExecutor,
    notifier: Optional[NotificationSink],
    settings: Settings,
) -> None:
    """
    Background task body: one settlement, one session. Failures are recorded
    on the settlement by the service; anything escaping it is logged here
    because there is no caller left to report to.
    """
    db = session_factory()
    try:
        svc = build_settlement_service(executor=executor, notifier=notifier, settings=settings)
        settlement = svc.execute(db, request_id)
        logger.info(
            "settlement task finished",
            extra={"request_id": str(request_id), "status": settlement.status},
        )
    except RedemptionError:
        logger.exception("settlement task failed", extra={"request_id": str(request_id)})
    finally:
        db.close()


class SettlementDispatcher:
    """
    Hands approved request ids to a scheduler (FastAPI BackgroundTasks in
    the API) so every settlement runs as its own task with its own session.
    """

    def __init__(
        self,
        schedule: Callable[..., None],
        *,
        session_factory: SessionFactory,
        executor: LedgerExecutor,
        notifier: Optional[NotificationSink],
        settings: Settings,
    ):
        self._schedule = schedule
        self._session_factory = session_factory
        self._executor = executor
        self._notifier = notifier
        self._settings = settings

    def __call__(self, request_id: uuid.UUID) -> None:
        self._schedule(
            run_settlement,
            request_id,
            session_factory=self._session_factory,
            executor=self._executor,
            notifier=self._notifier,
            settings=self._settings,
        )

    def dispatch_many(self, request_ids: Iterable[uuid.UUID]) -> None:
        for rid in request_ids:
            self(rid)
