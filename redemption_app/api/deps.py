# redemption_app/api/deps.py
from __future__ import annotations

from functools import lru_cache
from typing import Callable

from fastapi import BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from redemption_app.core.config import Settings, get_settings
from redemption_app.core.errors import RedemptionError
from redemption_app.db.session import SessionLocal, get_db
from redemption_app.integrations.ledger_executor import LedgerExecutor, SimulatedLedgerExecutor
from redemption_app.integrations.notifications import LoggingNotificationSink, NotificationSink
from redemption_app.integrations.pricing import DatabasePricingOracle
from redemption_app.integrations.roles import DirectoryRoleProvider, RoleProvider
from redemption_app.services.consensus_service import ConsensusService
from redemption_app.services.redemption_service import RedemptionService
from redemption_app.services.settlement_service import SettlementService
from redemption_app.services.tasks import SettlementDispatcher, build_settlement_service
from redemption_app.services.window_service import WindowService


def raise_http(err: RedemptionError) -> None:
    """Translate a domain error into the HTTP status it carries."""
    raise HTTPException(status_code=err.http_status, detail=err.message) from err


# ─────────────────────────────────────────────
# Collaborators (overridable in tests)
# ─────────────────────────────────────────────

def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


@lru_cache(maxsize=1)
def get_ledger_executor() -> LedgerExecutor:
    return SimulatedLedgerExecutor()


@lru_cache(maxsize=1)
def get_notifier() -> NotificationSink:
    return LoggingNotificationSink()


def get_role_provider(settings: Settings = Depends(get_settings)) -> RoleProvider:
    return DirectoryRoleProvider(settings.approver_directory)


# ─────────────────────────────────────────────
# Services
# ─────────────────────────────────────────────

def get_dispatcher(
    background_tasks: BackgroundTasks,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    executor: LedgerExecutor = Depends(get_ledger_executor),
    notifier: NotificationSink = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> SettlementDispatcher:
    return SettlementDispatcher(
        background_tasks.add_task,
        session_factory=session_factory,
        executor=executor,
        notifier=notifier,
        settings=settings,
    )


def get_consensus_service(
    role_provider: RoleProvider = Depends(get_role_provider),
    notifier: NotificationSink = Depends(get_notifier),
    dispatcher: SettlementDispatcher = Depends(get_dispatcher),
) -> ConsensusService:
    return ConsensusService(role_provider, notifier, on_approved=dispatcher)


def get_window_service(
    db: Session = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier),
    dispatcher: SettlementDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
) -> WindowService:
    return WindowService(
        notifier=notifier,
        pricing_oracle=DatabasePricingOracle(db),
        on_priced=dispatcher.dispatch_many,
        settings=settings,
    )


def get_redemption_service(
    consensus: ConsensusService = Depends(get_consensus_service),
    windows: WindowService = Depends(get_window_service),
    notifier: NotificationSink = Depends(get_notifier),
) -> RedemptionService:
    return RedemptionService(consensus, windows, notifier)


def get_settlement_service(
    executor: LedgerExecutor = Depends(get_ledger_executor),
    notifier: NotificationSink = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> SettlementService:
    return build_settlement_service(executor=executor, notifier=notifier, settings=settings)
