# redemption_app/services/redemption_service.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from redemption_app.core.errors import (
    NotFoundError,
    RedemptionError,
    SettlementInProgress,
    ValidationError,
)
from redemption_app.core.state_machine import REQUEST_TRANSITIONS, require_transition
from redemption_app.core.types import (
    NotificationEvent,
    RedemptionStatus,
    RedemptionType,
    Verdict,
)
from redemption_app.db.uow import commit_or_conflict
from redemption_app.integrations.notifications import NotificationSink, safe_notify
from redemption_app.models.approval import ApprovalConfig
from redemption_app.models.redemption_request import RedemptionRequest
from redemption_app.models.redemption_window import RedemptionWindow
from redemption_app.services.approval_config_service import ApprovalConfigService
from redemption_app.services.consensus_service import ConsensusService
from redemption_app.services.distribution_service import DistributionService
from redemption_app.services.window_service import WindowService, recompute_counters

logger = logging.getLogger(__name__)

CANCELLABLE = frozenset(
    {RedemptionStatus.draft, RedemptionStatus.pending_approval, RedemptionStatus.queued}
)
IN_SETTLEMENT = frozenset({RedemptionStatus.approved, RedemptionStatus.processing})


def _now():
    return datetime.now(timezone.utc)


@dataclass
class BulkFailure:
    index: int
    error: str
    investor_id: Optional[str] = None


@dataclass
class BulkResult:
    batch_id: str
    created: List[RedemptionRequest] = field(default_factory=list)
    failures: List[BulkFailure] = field(default_factory=list)


@dataclass(frozen=True)
class RedemptionMetrics:
    total_redemptions: int
    total_volume: Decimal
    pending_redemptions: int
    completed_redemptions: int
    rejected_redemptions: int
    avg_processing_hours: float
    success_rate: float


class RedemptionService:
    """
    Request intake: create, submit, bulk submit, cancel, query.

    Creating with submit=True is one unit of work: the request, its window
    attachment and its approver assignments commit together.
    """

    def __init__(
        self,
        consensus: ConsensusService,
        windows: WindowService,
        notifier: Optional[NotificationSink] = None,
    ):
        self.consensus = consensus
        self.windows = windows
        self.notifier = notifier
        self.configs = ApprovalConfigService()
        self.distributions = DistributionService()

    # ─────────────────────────────────────────────
    # Create / submit
    # ─────────────────────────────────────────────

    def create_request(
        self,
        db: Session,
        *,
        investor_id: Optional[str],
        token_amount: Decimal,
        token_type: str,
        conversion_rate: Decimal,
        source_wallet_address: str,
        destination_wallet_address: str,
        redemption_type: RedemptionType = RedemptionType.standard,
        approval_config_key: Optional[str] = None,
        distribution_id: Optional[uuid.UUID] = None,
        investor_name: Optional[str] = None,
        notes: Optional[str] = None,
        is_bulk_redemption: bool = False,
        investor_count: int = 1,
        submit: bool = True,
        now: Optional[datetime] = None,
    ) -> RedemptionRequest:
        now = now or _now()

        if token_amount is None or token_amount <= 0:
            raise ValidationError("token_amount must be greater than zero.")
        if conversion_rate is None or conversion_rate <= 0:
            raise ValidationError("conversion_rate must be greater than zero.")
        if not (source_wallet_address or "").strip() or not (destination_wallet_address or "").strip():
            raise ValidationError("Source and destination wallet addresses are required.")
        if investor_count < 1:
            raise ValidationError("investor_count must be >= 1.")
        if not is_bulk_redemption and not investor_id:
            raise ValidationError("investor_id is required for a single-investor redemption.")

        config = self.configs.require_by_key(db, approval_config_key or token_type)

        if distribution_id is not None:
            self.distributions.assert_capacity(
                db,
                distribution_id=distribution_id,
                token_type=token_type,
                amount=token_amount,
            )

        request = RedemptionRequest(
            id=uuid.uuid4(),
            investor_id=investor_id,
            investor_name=investor_name,
            is_bulk_redemption=is_bulk_redemption,
            investor_count=investor_count,
            token_amount=token_amount,
            requested_amount=token_amount,
            token_type=token_type,
            conversion_rate=conversion_rate,
            source_wallet_address=source_wallet_address.strip(),
            destination_wallet_address=destination_wallet_address.strip(),
            redemption_type=redemption_type.value,
            status=RedemptionStatus.draft.value,
            required_approvals=max(1, config.required_approvals),
            approval_config_id=config.id,
            distribution_id=distribution_id,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        db.add(request)

        if not submit:
            commit_or_conflict(db, "Redemption request")
            db.refresh(request)
            return request

        return self._submit(db, request, config, now)

    def submit_request(
        self,
        db: Session,
        request_id: uuid.UUID,
        *,
        now: Optional[datetime] = None,
    ) -> RedemptionRequest:
        now = now or _now()
        request = self._get_for_update(db, request_id)
        if request.status != RedemptionStatus.draft.value:
            raise ValidationError(
                f"Only draft requests can be submitted (status is {request.status}).",
                entity_id=str(request_id),
            )
        config = request.approval_config or self.configs.require_by_key(db, request.token_type)
        if request.distribution_id is not None:
            self.distributions.assert_capacity(
                db,
                distribution_id=request.distribution_id,
                token_type=request.token_type,
                amount=request.token_amount,
                exclude_request_id=request.id,
            )
        return self._submit(db, request, config, now)

    def _submit(
        self,
        db: Session,
        request: RedemptionRequest,
        config: ApprovalConfig,
        now: datetime,
    ) -> RedemptionRequest:
        require_transition(
            REQUEST_TRANSITIONS, request.status_enum, RedemptionStatus.pending_approval, entity="Redemption request"
        )
        request.status = RedemptionStatus.pending_approval.value
        request.submitted_at = now
        request.updated_at = now

        if request.is_interval:
            self.windows.assign_to_window(db, request, now)

        verdict = self.consensus.assign_approvers(db, request, config, now=now)
        commit_or_conflict(db, "Redemption request")
        db.refresh(request)

        logger.info(
            "redemption submitted",
            extra={
                "request_id": str(request.id),
                "investor_id": request.investor_id,
                "redemption_type": request.redemption_type,
                "token_amount": str(request.token_amount),
            },
        )
        safe_notify(
            self.notifier,
            NotificationEvent.REQUEST_SUBMITTED,
            {
                "request_id": str(request.id),
                "investor_id": request.investor_id,
                "token_type": request.token_type,
                "token_amount": str(request.token_amount),
                "approvers": [a.approver_id for a in request.assignments],
            },
        )
        if verdict is not Verdict.pending:
            self.consensus.announce(request, verdict)
        return request

    def create_bulk_requests(
        self,
        db: Session,
        *,
        items: Sequence[Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> BulkResult:
        """
        Submit many requests in one call. Each item is its own unit of work:
        one bad item is reported and does not undo the others.
        """
        result = BulkResult(batch_id=f"bulk_{uuid.uuid4().hex[:16]}")
        for index, item in enumerate(items):
            note = item.get("notes")
            batch_note = f"batch {result.batch_id}" if not note else f"{note} (batch {result.batch_id})"
            try:
                req = self.create_request(db, **{**item, "notes": batch_note, "now": now})
            except RedemptionError as err:
                db.rollback()
                result.failures.append(
                    BulkFailure(index=index, error=err.message, investor_id=item.get("investor_id"))
                )
                continue
            result.created.append(req)

        logger.info(
            "bulk redemption processed",
            extra={
                "batch_id": result.batch_id,
                "created": len(result.created),
                "failed": len(result.failures),
            },
        )
        return result

    # ─────────────────────────────────────────────
    # Cancel
    # ─────────────────────────────────────────────

    def cancel_request(
        self,
        db: Session,
        request_id: uuid.UUID,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RedemptionRequest:
        now = now or _now()
        request = self._get_for_update(db, request_id)
        status = request.status_enum

        if status in IN_SETTLEMENT:
            raise SettlementInProgress(
                f"Request is {status.value}; settlement has begun and it can no longer be cancelled.",
                entity_id=str(request_id),
            )
        if status not in CANCELLABLE:
            raise ValidationError(
                f"Request in status {status.value} cannot be cancelled.",
                entity_id=str(request_id),
            )

        require_transition(REQUEST_TRANSITIONS, status, RedemptionStatus.cancelled, entity="Redemption request")
        request.status = RedemptionStatus.cancelled.value
        request.cancelled_at = now
        request.cancellation_reason = reason
        request.updated_at = now

        if request.window_id is not None:
            recompute_counters(db, db.get(RedemptionWindow, request.window_id))
        commit_or_conflict(db, "Redemption request")
        db.refresh(request)

        safe_notify(
            self.notifier,
            NotificationEvent.REQUEST_CANCELLED,
            {"request_id": str(request.id), "investor_id": request.investor_id, "reason": reason},
        )
        return request

    # ─────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────

    def _get_for_update(self, db: Session, request_id: uuid.UUID) -> RedemptionRequest:
        req = (
            db.execute(
                select(RedemptionRequest)
                .where(RedemptionRequest.id == request_id)
                .with_for_update()
            )
            .scalars()
            .one_or_none()
        )
        if not req:
            raise NotFoundError("Redemption request not found.", entity_id=str(request_id))
        return req

    def get_request(self, db: Session, request_id: uuid.UUID) -> RedemptionRequest:
        req = db.get(RedemptionRequest, request_id)
        if not req:
            raise NotFoundError("Redemption request not found.", entity_id=str(request_id))
        return req

    def list_requests(
        self,
        db: Session,
        *,
        status: Optional[RedemptionStatus] = None,
        token_type: Optional[str] = None,
        investor_id: Optional[str] = None,
        window_id: Optional[uuid.UUID] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[RedemptionRequest], int]:
        page = max(page, 1)
        limit = min(max(limit, 1), 500)

        filters = []
        if status is not None:
            filters.append(RedemptionRequest.status == status.value)
        if token_type:
            filters.append(RedemptionRequest.token_type == token_type)
        if investor_id:
            filters.append(RedemptionRequest.investor_id == investor_id)
        if window_id is not None:
            filters.append(RedemptionRequest.window_id == window_id)

        total = db.execute(select(func.count(RedemptionRequest.id)).where(*filters)).scalar_one()
        rows = (
            db.execute(
                select(RedemptionRequest)
                .where(*filters)
                .order_by(RedemptionRequest.created_at.desc(), RedemptionRequest.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        return list(rows), int(total)

    def get_metrics(
        self,
        db: Session,
        *,
        token_type: Optional[str] = None,
        redemption_type: Optional[RedemptionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> RedemptionMetrics:
        stmt = select(RedemptionRequest)
        if token_type:
            stmt = stmt.where(RedemptionRequest.token_type == token_type)
        if redemption_type is not None:
            stmt = stmt.where(RedemptionRequest.redemption_type == redemption_type.value)
        if start is not None:
            stmt = stmt.where(RedemptionRequest.created_at >= start)
        if end is not None:
            stmt = stmt.where(RedemptionRequest.created_at <= end)
        rows = db.execute(stmt).scalars().all()

        total = len(rows)
        settled = [r for r in rows if r.status == RedemptionStatus.settled.value]
        pending = sum(1 for r in rows if r.status == RedemptionStatus.pending_approval.value)
        rejected = sum(1 for r in rows if r.status == RedemptionStatus.rejected.value)

        hours = [
            (r.settled_at - r.created_at).total_seconds() / 3600.0
            for r in settled
            if r.settled_at is not None
        ]
        avg_hours = round(sum(hours) / len(hours), 2) if hours else 0.0
        success = round(len(settled) * 100.0 / total, 2) if total else 0.0

        return RedemptionMetrics(
            total_redemptions=total,
            total_volume=sum((r.token_amount for r in rows), Decimal(0)),
            pending_redemptions=pending,
            completed_redemptions=len(settled),
            rejected_redemptions=rejected,
            avg_processing_hours=avg_hours,
            success_rate=success,
        )
