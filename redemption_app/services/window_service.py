# redemption_app/services/window_service.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from redemption_app.core.config import Settings, get_settings
from redemption_app.core.errors import (
    NoOpenWindow,
    NotFoundError,
    SchedulingError,
    ValidationError,
    WindowSlaBreached,
)
from redemption_app.core.state_machine import (
    REQUEST_TRANSITIONS,
    WINDOW_TRANSITIONS,
    require_transition,
)
from redemption_app.core.types import (
    TERMINAL_REQUEST_STATUSES,
    NotificationEvent,
    RedemptionStatus,
    RedemptionType,
    WindowStatus,
)
from redemption_app.db.uow import commit_or_conflict
from redemption_app.integrations.notifications import NotificationSink, safe_notify
from redemption_app.integrations.pricing import PricingOracle
from redemption_app.models.redemption_request import RedemptionRequest
from redemption_app.models.redemption_window import RedemptionWindow
from redemption_app.services.pro_rata import (
    Allocation,
    allocate_in_order,
    allocate_pro_rata,
    allocation_unit,
)

logger = logging.getLogger(__name__)

# statuses that still wait for an approval verdict
_UNDECIDED = (RedemptionStatus.draft.value, RedemptionStatus.pending_approval.value)

_APPROVED_LIKE = (
    RedemptionStatus.approved.value,
    RedemptionStatus.processing.value,
    RedemptionStatus.settled.value,
)


def _now():
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────
# Derived counters
# ─────────────────────────────────────────────

def recompute_counters(db: Session, window: RedemptionWindow) -> None:
    """
    Rebuild the window aggregates from its request rows.

    Runs inside the caller's unit of work; the window's version column turns
    a concurrent recompute into a ConflictError at commit instead of a lost
    update. Remainder children still attached to the window they were
    spawned in are not new demand and are left out of current_requests and
    total_request_value.
    """
    db.flush()
    rows = (
        db.execute(select(RedemptionRequest).where(RedemptionRequest.window_id == window.id))
        .scalars()
        .all()
    )

    current = 0
    total = Decimal(0)
    approved = Decimal(0)
    queued = Decimal(0)
    rejected = Decimal(0)

    for r in rows:
        amount = r.token_amount
        birth_child = r.parent_request_id is not None and r.carried_from_window_id is None
        if r.status != RedemptionStatus.cancelled.value and not birth_child:
            current += 1
            total += r.requested_amount
        if r.status in _APPROVED_LIKE:
            approved += amount
        elif r.status == RedemptionStatus.queued.value:
            queued += amount
        elif r.status == RedemptionStatus.rejected.value:
            rejected += amount

    # remainders this window queued that have since moved on to a later window
    carried_out = (
        db.execute(
            select(RedemptionRequest.requested_amount).where(
                RedemptionRequest.carried_from_window_id == window.id,
                RedemptionRequest.window_id != window.id,
            )
        )
        .scalars()
        .all()
    )
    queued += sum(carried_out, Decimal(0))

    window.current_requests = current
    window.total_request_value = total
    window.approved_value = approved
    window.queued_value = queued
    window.rejected_value = rejected
    window.updated_at = _now()


@dataclass
class WindowPricingResult:
    window: RedemptionWindow
    nav: Decimal
    nav_date: datetime
    allocations: List[Allocation] = field(default_factory=list)
    settle_request_ids: List[uuid.UUID] = field(default_factory=list)
    queued_request_ids: List[uuid.UUID] = field(default_factory=list)
    rejected_request_ids: List[uuid.UUID] = field(default_factory=list)

    @property
    def pro_rata_applied(self) -> bool:
        return any(not a.is_full for a in self.allocations)


class WindowService:
    """
    Lifecycle of redemption windows: upcoming -> open -> closed -> processing -> completed.

    on_priced receives the ids of requests ready to settle after pricing;
    it is called only after the pricing transaction has committed.
    """

    def __init__(
        self,
        notifier: Optional[NotificationSink] = None,
        pricing_oracle: Optional[PricingOracle] = None,
        on_priced: Optional[Callable[[List[uuid.UUID]], None]] = None,
        settings: Optional[Settings] = None,
    ):
        self.notifier = notifier
        self.pricing_oracle = pricing_oracle
        self.on_priced = on_priced
        self.settings = settings or get_settings()

    # ─────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────

    def get_window(self, db: Session, window_id: uuid.UUID) -> RedemptionWindow:
        window = db.get(RedemptionWindow, window_id)
        if not window:
            raise NotFoundError("Redemption window not found.", entity_id=str(window_id))
        return window

    def list_windows(
        self,
        db: Session,
        *,
        token_type: Optional[str] = None,
        status: Optional[WindowStatus] = None,
    ) -> List[RedemptionWindow]:
        stmt = select(RedemptionWindow)
        if token_type:
            stmt = stmt.where(RedemptionWindow.token_type == token_type)
        if status:
            stmt = stmt.where(RedemptionWindow.status == status.value)
        return list(db.execute(stmt.order_by(RedemptionWindow.submission_start)).scalars().all())

    def _get_for_update(self, db: Session, window_id: uuid.UUID) -> RedemptionWindow:
        window = (
            db.execute(
                select(RedemptionWindow)
                .where(RedemptionWindow.id == window_id)
                .with_for_update()
            )
            .scalars()
            .one_or_none()
        )
        if not window:
            raise NotFoundError("Redemption window not found.", entity_id=str(window_id))
        return window

    def _attached(self, db: Session, window_id: uuid.UUID) -> List[RedemptionRequest]:
        return list(
            db.execute(
                select(RedemptionRequest)
                .where(RedemptionRequest.window_id == window_id)
                .with_for_update()
            )
            .scalars()
            .all()
        )

    def _move(self, window: RedemptionWindow, target: WindowStatus) -> None:
        require_transition(WINDOW_TRANSITIONS, window.status_enum, target, entity="Redemption window")
        window.status = target.value

    # ─────────────────────────────────────────────
    # Create / open / close
    # ─────────────────────────────────────────────

    def create_window(
        self,
        db: Session,
        *,
        token_type: str,
        submission_start: datetime,
        submission_end: datetime,
        start: datetime,
        end: datetime,
        name: Optional[str] = None,
        max_redemption_amount: Optional[Decimal] = None,
        enable_pro_rata_distribution: bool = True,
        queue_unprocessed_requests: bool = True,
        allocation_precision: int = 0,
    ) -> RedemptionWindow:
        if submission_end <= submission_start:
            raise ValidationError("submission_end must be after submission_start.")
        if end <= start:
            raise ValidationError("Processing end must be after processing start.")
        if start < submission_end:
            raise ValidationError("Processing period cannot start before submissions close.")
        if max_redemption_amount is not None and max_redemption_amount <= 0:
            raise ValidationError("max_redemption_amount must be positive.")
        if not 0 <= allocation_precision <= 8:
            raise ValidationError("allocation_precision must be between 0 and 8.")
        if max_redemption_amount is not None and max_redemption_amount % allocation_unit(allocation_precision) != 0:
            raise ValidationError(
                f"max_redemption_amount must be a whole number of allocation units "
                f"(10^-{allocation_precision})."
            )

        overlapping = db.execute(
            select(RedemptionWindow.id).where(
                RedemptionWindow.token_type == token_type,
                RedemptionWindow.status.in_([WindowStatus.upcoming.value, WindowStatus.open.value]),
                RedemptionWindow.submission_start < submission_end,
                RedemptionWindow.submission_end > submission_start,
            )
        ).first()
        if overlapping:
            raise ValidationError(
                f"Submission period overlaps an existing {token_type} window.",
                entity_id=str(overlapping[0]),
            )

        window = RedemptionWindow(
            token_type=token_type,
            name=name,
            submission_start=submission_start,
            submission_end=submission_end,
            start=start,
            end=end,
            status=WindowStatus.upcoming.value,
            max_redemption_amount=max_redemption_amount,
            enable_pro_rata_distribution=enable_pro_rata_distribution,
            queue_unprocessed_requests=queue_unprocessed_requests,
            allocation_precision=allocation_precision,
        )
        db.add(window)
        db.commit()
        db.refresh(window)
        return window

    def open_window(self, db: Session, window_id: uuid.UUID, *, now: Optional[datetime] = None) -> RedemptionWindow:
        """
        upcoming -> open. Queued remainders of earlier windows of the same
        token type that have been priced (processing or completed) are carried
        into this window, already approved. The earlier window does not have to
        finish settling first.
        """
        now = now or _now()
        window = self._get_for_update(db, window_id)
        self._move(window, WindowStatus.open)

        carried = (
            db.execute(
                select(RedemptionRequest)
                .join(RedemptionWindow, RedemptionRequest.window_id == RedemptionWindow.id)
                .where(
                    RedemptionRequest.token_type == window.token_type,
                    RedemptionRequest.status == RedemptionStatus.queued.value,
                    RedemptionWindow.status.in_(
                        [WindowStatus.processing.value, WindowStatus.completed.value]
                    ),
                    RedemptionRequest.window_id != window.id,
                )
                .order_by(RedemptionRequest.created_at)
                .with_for_update()
            )
            .scalars()
            .all()
        )
        for req in carried:
            require_transition(
                REQUEST_TRANSITIONS, req.status_enum, RedemptionStatus.approved, entity="Redemption request"
            )
            req.carried_from_window_id = req.window_id
            req.window_id = window.id
            req.status = RedemptionStatus.approved.value
            req.approved_at = req.approved_at or now
            req.nav_used = None
            req.nav_date = None
            req.updated_at = now

        recompute_counters(db, window)
        commit_or_conflict(db, "Redemption window")
        db.refresh(window)

        logger.info(
            "window opened",
            extra={"window_id": str(window.id), "token_type": window.token_type, "carried_over": len(carried)},
        )
        safe_notify(
            self.notifier,
            NotificationEvent.WINDOW_OPENED,
            {"window_id": str(window.id), "token_type": window.token_type, "carried_over": len(carried)},
        )
        return window

    def close_submissions(self, db: Session, window_id: uuid.UUID, *, now: Optional[datetime] = None) -> RedemptionWindow:
        window = self._get_for_update(db, window_id)
        self._move(window, WindowStatus.closed)
        recompute_counters(db, window)
        commit_or_conflict(db, "Redemption window")
        db.refresh(window)

        safe_notify(
            self.notifier,
            NotificationEvent.WINDOW_CLOSED,
            {"window_id": str(window.id), "current_requests": window.current_requests},
        )
        return window

    def activate_due_windows(self, db: Session, *, now: Optional[datetime] = None) -> Dict[str, List[uuid.UUID]]:
        """
        Scheduler tick: open upcoming windows whose submission period has
        started and close open windows whose submission period has ended.
        """
        now = now or _now()
        due_open = db.execute(
            select(RedemptionWindow.id).where(
                RedemptionWindow.status == WindowStatus.upcoming.value,
                RedemptionWindow.submission_start <= now,
                RedemptionWindow.submission_end > now,
            )
        ).scalars().all()
        due_close = db.execute(
            select(RedemptionWindow.id).where(
                RedemptionWindow.status == WindowStatus.open.value,
                RedemptionWindow.submission_end < now,
            )
        ).scalars().all()

        opened = [self.open_window(db, wid, now=now).id for wid in due_open]
        closed = [self.close_submissions(db, wid, now=now).id for wid in due_close]
        return {"opened": opened, "closed": closed}

    # ─────────────────────────────────────────────
    # Assignment
    # ─────────────────────────────────────────────

    def assign_to_window(self, db: Session, request: RedemptionRequest, now: datetime) -> RedemptionWindow:
        """Attach an interval request to the open window accepting submissions. Caller commits."""
        if request.redemption_type != RedemptionType.interval.value:
            raise ValidationError("Only interval redemptions are assigned to windows.")

        window = (
            db.execute(
                select(RedemptionWindow)
                .where(
                    RedemptionWindow.token_type == request.token_type,
                    RedemptionWindow.status == WindowStatus.open.value,
                    RedemptionWindow.submission_start <= now,
                    RedemptionWindow.submission_end >= now,
                )
                .order_by(RedemptionWindow.submission_start)
                .with_for_update()
            )
            .scalars()
            .first()
        )
        if window is None or not window.accepts_submissions_at(now):
            raise NoOpenWindow(f"No open redemption window for {request.token_type}.")

        request.window_id = window.id
        recompute_counters(db, window)
        return window

    # ─────────────────────────────────────────────
    # Pricing / pro-rata
    # ─────────────────────────────────────────────

    def price_and_process(
        self,
        db: Session,
        window_id: uuid.UUID,
        *,
        nav: Optional[Decimal] = None,
        nav_date: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> WindowPricingResult:
        now = now or _now()
        window = self._get_for_update(db, window_id)
        require_transition(
            WINDOW_TRANSITIONS, window.status_enum, WindowStatus.processing, entity="Redemption window"
        )

        requests = self._attached(db, window.id)

        # barrier: every request needs a verdict before anything is allocated
        undecided = [r for r in requests if r.status in _UNDECIDED]
        if undecided:
            raise SchedulingError(
                f"{len(undecided)} request(s) in the window still await an approval verdict.",
                entity_id=str(window.id),
            )

        if nav is None:
            if self.pricing_oracle is None:
                raise SchedulingError("No NAV supplied and no pricing oracle configured.", entity_id=str(window.id))
            quote = self.pricing_oracle.get_nav(window.token_type, window.submission_end)
            nav, nav_date = quote.nav, quote.nav_date
        if nav <= 0:
            raise ValidationError("NAV must be positive.")
        nav_date = nav_date or now

        approved = [r for r in requests if r.status == RedemptionStatus.approved.value]
        allocations = self._allocate(window, approved)

        result = WindowPricingResult(window=window, nav=nav, nav_date=nav_date, allocations=allocations)
        by_id = {r.id: r for r in approved}

        for alloc in allocations:
            req = by_id[alloc.request_id]
            if alloc.allocated <= 0:
                self._route_unfilled(req, window, now)
                if req.status == RedemptionStatus.queued.value:
                    result.queued_request_ids.append(req.id)
                else:
                    result.rejected_request_ids.append(req.id)
                continue

            if not alloc.is_full:
                child = self._spawn_remainder(req, window, alloc.remainder, now)
                db.add(child)
                db.flush()
                if child.status == RedemptionStatus.queued.value:
                    result.queued_request_ids.append(child.id)
                else:
                    result.rejected_request_ids.append(child.id)
                req.token_amount = alloc.allocated

            req.nav_used = nav
            req.nav_date = nav_date
            req.updated_at = now
            result.settle_request_ids.append(req.id)

        window.nav = nav
        window.nav_date = nav_date
        window.status = WindowStatus.processing.value
        window.processing_started_at = now
        recompute_counters(db, window)
        commit_or_conflict(db, "Redemption window")
        db.refresh(window)

        logger.info(
            "window priced",
            extra={
                "window_id": str(window.id),
                "nav": str(nav),
                "settle": len(result.settle_request_ids),
                "queued": len(result.queued_request_ids),
                "rejected": len(result.rejected_request_ids),
                "pro_rata": result.pro_rata_applied,
            },
        )
        safe_notify(
            self.notifier,
            NotificationEvent.WINDOW_PRICED,
            {
                "window_id": str(window.id),
                "nav": str(nav),
                "nav_date": nav_date.isoformat(),
                "pro_rata_applied": result.pro_rata_applied,
            },
        )
        for rid in result.queued_request_ids:
            safe_notify(
                self.notifier,
                NotificationEvent.REQUEST_QUEUED,
                {"request_id": str(rid), "window_id": str(window.id)},
            )

        if self.on_priced and result.settle_request_ids:
            self.on_priced(list(result.settle_request_ids))
        return result

    def _allocate(self, window: RedemptionWindow, approved: Sequence[RedemptionRequest]) -> List[Allocation]:
        cap = window.max_redemption_amount
        demand = sum((r.token_amount for r in approved), Decimal(0))

        if cap is None or demand <= cap:
            return [Allocation(r.id, r.token_amount, r.token_amount) for r in approved]

        if window.enable_pro_rata_distribution:
            ordered = sorted(approved, key=lambda r: r.id)
            return allocate_pro_rata(
                [(r.id, r.token_amount) for r in ordered],
                cap,
                window.allocation_precision,
            )

        # pro-rata disabled: earliest submissions are filled first
        ordered = sorted(approved, key=lambda r: (r.submitted_at or r.created_at, r.id))
        return allocate_in_order([(r.id, r.token_amount) for r in ordered], cap)

    def _route_unfilled(self, req: RedemptionRequest, window: RedemptionWindow, now: datetime) -> None:
        if window.queue_unprocessed_requests:
            target = RedemptionStatus.queued
        else:
            target = RedemptionStatus.rejected
        require_transition(REQUEST_TRANSITIONS, req.status_enum, target, entity="Redemption request")
        req.status = target.value
        req.updated_at = now
        if target is RedemptionStatus.rejected:
            req.rejected_at = now
            req.rejection_reason = "Window capacity exhausted."

    def _spawn_remainder(
        self,
        parent: RedemptionRequest,
        window: RedemptionWindow,
        remainder: Decimal,
        now: datetime,
    ) -> RedemptionRequest:
        queued = window.queue_unprocessed_requests
        return RedemptionRequest(
            id=uuid.uuid4(),
            investor_id=parent.investor_id,
            investor_name=parent.investor_name,
            is_bulk_redemption=parent.is_bulk_redemption,
            investor_count=parent.investor_count,
            token_amount=remainder,
            requested_amount=remainder,
            token_type=parent.token_type,
            conversion_rate=parent.conversion_rate,
            source_wallet_address=parent.source_wallet_address,
            destination_wallet_address=parent.destination_wallet_address,
            redemption_type=parent.redemption_type,
            status=(RedemptionStatus.queued if queued else RedemptionStatus.rejected).value,
            required_approvals=parent.required_approvals,
            approval_config_id=parent.approval_config_id,
            window_id=window.id,
            parent_request_id=parent.id,
            distribution_id=parent.distribution_id,
            submitted_at=parent.submitted_at,
            approved_at=parent.approved_at,
            rejected_at=None if queued else now,
            rejection_reason=None if queued else "Unfilled pro-rata remainder.",
            created_at=now,
            updated_at=now,
        )

    # ─────────────────────────────────────────────
    # Completion / SLA
    # ─────────────────────────────────────────────

    def complete(self, db: Session, window_id: uuid.UUID, *, now: Optional[datetime] = None) -> RedemptionWindow:
        now = now or _now()
        window = self._get_for_update(db, window_id)
        require_transition(
            WINDOW_TRANSITIONS, window.status_enum, WindowStatus.completed, entity="Redemption window"
        )

        settled_or_parked = {s.value for s in TERMINAL_REQUEST_STATUSES} | {RedemptionStatus.queued.value}
        outstanding = [r for r in self._attached(db, window.id) if r.status not in settled_or_parked]
        if outstanding:
            raise SchedulingError(
                f"{len(outstanding)} request(s) in the window have not finished settlement.",
                entity_id=str(window.id),
            )

        window.status = WindowStatus.completed.value
        window.completed_at = now
        recompute_counters(db, window)
        commit_or_conflict(db, "Redemption window")
        db.refresh(window)

        safe_notify(
            self.notifier,
            NotificationEvent.WINDOW_COMPLETED,
            {
                "window_id": str(window.id),
                "approved_value": str(window.approved_value),
                "queued_value": str(window.queued_value),
                "rejected_value": str(window.rejected_value),
            },
        )
        return window

    def check_processing_sla(self, db: Session, *, now: Optional[datetime] = None) -> List[WindowSlaBreached]:
        """
        Windows stuck in processing past the SLA are alerted once (error log +
        notification) and returned. Nothing is retried automatically.
        """
        now = now or _now()
        cutoff = now - timedelta(seconds=self.settings.window_processing_sla_seconds)

        stuck = (
            db.execute(
                select(RedemptionWindow)
                .where(
                    RedemptionWindow.status == WindowStatus.processing.value,
                    RedemptionWindow.processing_started_at <= cutoff,
                    RedemptionWindow.sla_alerted_at.is_(None),
                )
                .with_for_update()
            )
            .scalars()
            .all()
        )

        alerts: List[WindowSlaBreached] = []
        for window in stuck:
            window.sla_alerted_at = now
            alerts.append(
                WindowSlaBreached(
                    f"Window {window.id} has been processing since {window.processing_started_at.isoformat()}.",
                    entity_id=str(window.id),
                )
            )

        if not alerts:
            return alerts

        commit_or_conflict(db, "Redemption window")
        for alert in alerts:
            logger.error("window processing SLA breached", extra={"window_id": alert.entity_id})
            safe_notify(
                self.notifier,
                NotificationEvent.WINDOW_SLA_BREACHED,
                {"window_id": alert.entity_id, "message": alert.message},
            )
        return alerts
