# redemption_app/services/consensus_service.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from redemption_app.core.errors import (
    DuplicateDecision,
    NotAnAssignedApprover,
    NotFoundError,
    ValidationError,
)
from redemption_app.core.state_machine import REQUEST_TRANSITIONS, require_transition
from redemption_app.core.types import (
    AssignmentStatus,
    ConsensusType,
    Decision,
    DecisionOutcome,
    NotificationEvent,
    RedemptionStatus,
    Verdict,
)
from redemption_app.db.uow import commit_or_conflict
from redemption_app.integrations.notifications import NotificationSink, safe_notify
from redemption_app.integrations.roles import RoleProvider
from redemption_app.models.approval import ApprovalConfig, ApproverAssignment
from redemption_app.models.redemption_request import RedemptionRequest
from redemption_app.models.redemption_window import RedemptionWindow
from redemption_app.services.consensus_rules import Tally, approvals_needed, evaluate_tally
from redemption_app.services.window_service import recompute_counters

logger = logging.getLogger(__name__)

SYSTEM_APPROVER = "system"


def _now():
    return datetime.now(timezone.utc)


@dataclass
class DecisionResult:
    request: RedemptionRequest
    assignment: ApproverAssignment
    verdict: Verdict
    outcome: DecisionOutcome


class ConsensusService:
    """
    Approval phase of a request: pending_approval -> approved | rejected.

    Decisions on one request are serialized by the request row lock plus
    its version column; decisions on different requests never contend.
    on_approved is called with the request id once an approved standard
    request has committed. Interval requests wait for window pricing.
    """

    def __init__(
        self,
        role_provider: RoleProvider,
        notifier: Optional[NotificationSink] = None,
        on_approved: Optional[Callable[[uuid.UUID], None]] = None,
    ):
        self.role_provider = role_provider
        self.notifier = notifier
        self.on_approved = on_approved

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

    def _consensus_of(self, request: RedemptionRequest) -> ConsensusType:
        cfg = request.approval_config
        if cfg is None:
            return ConsensusType.threshold
        return cfg.effective_consensus

    # ─────────────────────────────────────────────
    # Assignment
    # ─────────────────────────────────────────────

    def assign_approvers(
        self,
        db: Session,
        request: RedemptionRequest,
        config: ApprovalConfig,
        *,
        now: Optional[datetime] = None,
    ) -> Verdict:
        """
        Create one assignment per eligible approver, or auto-approve below
        the configured threshold. Caller commits and then calls announce()
        for a terminal verdict.
        """
        now = now or _now()
        request.approval_config_id = config.id
        request.approval_config = config

        threshold = config.auto_approve_threshold
        if threshold is not None and request.token_amount <= threshold:
            request.assignments.append(
                ApproverAssignment(
                    approver_id=SYSTEM_APPROVER,
                    role=SYSTEM_APPROVER,
                    status=AssignmentStatus.approved.value,
                    is_system=True,
                    comment=f"Auto-approved: amount at or below {threshold}.",
                    decided_at=now,
                )
            )
            request.required_approvals = 1
            self._finalize(db, request, Verdict.approved, now=now, actor=SYSTEM_APPROVER)
            return Verdict.approved

        # the investor never approves their own request
        identities = [
            i for i in self.role_provider.resolve(config.eligible_roles) if i.approver_id != request.investor_id
        ]
        if not identities:
            raise ValidationError(
                f"No approvers hold the eligible roles {list(config.eligible_roles)}.",
                entity_id=str(config.id),
            )

        consensus = config.effective_consensus
        if consensus is ConsensusType.threshold and config.required_approvals > len(identities):
            raise ValidationError(
                f"Threshold of {config.required_approvals} approvals exceeds the "
                f"{len(identities)} eligible approvers.",
                entity_id=str(config.id),
            )

        for ident in identities:
            request.assignments.append(
                ApproverAssignment(approver_id=ident.approver_id, role=ident.role)
            )
        request.required_approvals = approvals_needed(consensus, len(identities), config.required_approvals)
        return Verdict.pending

    # ─────────────────────────────────────────────
    # Decisions
    # ─────────────────────────────────────────────

    def submit_decision(
        self,
        db: Session,
        *,
        request_id: uuid.UUID,
        approver_id: str,
        decision: Decision,
        comment: Optional[str] = None,
        signature: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DecisionResult:
        now = now or _now()
        request = self._get_for_update(db, request_id)

        assignment = next((a for a in request.assignments if a.approver_id == approver_id), None)
        if assignment is None or assignment.is_system:
            raise NotAnAssignedApprover(
                f"{approver_id} is not an assigned approver for this request.",
                entity_id=str(request_id),
            )
        if assignment.status != AssignmentStatus.pending.value:
            raise DuplicateDecision(
                f"{approver_id} already decided ({assignment.status}).",
                entity_id=str(request_id),
            )

        assignment.status = (
            AssignmentStatus.approved if decision is Decision.approve else AssignmentStatus.rejected
        ).value
        assignment.comment = comment
        assignment.signature = signature
        assignment.decided_at = now

        if request.status != RedemptionStatus.pending_approval.value:
            # recorded for audit only; the verdict is already final
            assignment.late_decision = True
            request.updated_at = now
            commit_or_conflict(db, "Redemption request")
            logger.info(
                "late decision recorded",
                extra={"request_id": str(request.id), "approver_id": approver_id, "status": request.status},
            )
            return DecisionResult(
                request=request,
                assignment=assignment,
                verdict=self._verdict_of_status(request),
                outcome=DecisionOutcome.already_finalized,
            )

        verdict = self._evaluate_request(request)
        if verdict is Verdict.pending:
            request.updated_at = now
            commit_or_conflict(db, "Redemption request")
            return DecisionResult(request, assignment, verdict, DecisionOutcome.recorded)

        self._finalize(db, request, verdict, now=now, actor=approver_id, reason=comment)
        commit_or_conflict(db, "Redemption request")
        self.announce(request, verdict)
        return DecisionResult(request, assignment, verdict, DecisionOutcome.finalized)

    def evaluate(self, db: Session, request_id: uuid.UUID) -> Verdict:
        request = db.get(RedemptionRequest, request_id)
        if not request:
            raise NotFoundError("Redemption request not found.", entity_id=str(request_id))
        return self._evaluate_request(request)

    def _evaluate_request(self, request: RedemptionRequest) -> Verdict:
        tally = Tally.of(a.status for a in request.assignments)
        return evaluate_tally(self._consensus_of(request), tally, request.required_approvals)

    @staticmethod
    def _verdict_of_status(request: RedemptionRequest) -> Verdict:
        if request.status == RedemptionStatus.rejected.value:
            return Verdict.rejected
        if request.approved_at is not None:
            return Verdict.approved
        return Verdict.pending

    # ─────────────────────────────────────────────
    # Terminal verdict
    # ─────────────────────────────────────────────

    def _finalize(
        self,
        db: Session,
        request: RedemptionRequest,
        verdict: Verdict,
        *,
        now: datetime,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        if verdict is Verdict.approved:
            require_transition(
                REQUEST_TRANSITIONS, request.status_enum, RedemptionStatus.approved, entity="Redemption request"
            )
            request.status = RedemptionStatus.approved.value
            request.approved_at = now
            if not request.is_interval:
                # standard requests settle at the rate quoted on submission
                request.nav_used = request.conversion_rate
                request.nav_date = now
        else:
            require_transition(
                REQUEST_TRANSITIONS, request.status_enum, RedemptionStatus.rejected, entity="Redemption request"
            )
            request.status = RedemptionStatus.rejected.value
            request.rejected_at = now
            request.rejected_by = actor
            request.rejection_reason = reason or "Approval consensus not reached."
        request.updated_at = now

        if request.window_id is not None:
            recompute_counters(db, db.get(RedemptionWindow, request.window_id))

    def announce(self, request: RedemptionRequest, verdict: Verdict) -> None:
        """Post-commit side effects of a terminal verdict."""
        event = (
            NotificationEvent.REQUEST_APPROVED if verdict is Verdict.approved else NotificationEvent.REQUEST_REJECTED
        )
        logger.info(
            "consensus reached",
            extra={"request_id": str(request.id), "verdict": verdict.value},
        )
        safe_notify(
            self.notifier,
            event,
            {
                "request_id": str(request.id),
                "investor_id": request.investor_id,
                "status": request.status,
                "rejection_reason": request.rejection_reason,
            },
        )
        if verdict is Verdict.approved and not request.is_interval and self.on_approved:
            self.on_approved(request.id)

    # ─────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────

    def pending_for_approver(self, db: Session, approver_id: str) -> List[RedemptionRequest]:
        return list(
            db.execute(
                select(RedemptionRequest)
                .join(ApproverAssignment, ApproverAssignment.request_id == RedemptionRequest.id)
                .where(
                    ApproverAssignment.approver_id == approver_id,
                    ApproverAssignment.status == AssignmentStatus.pending.value,
                    RedemptionRequest.status == RedemptionStatus.pending_approval.value,
                )
                .order_by(RedemptionRequest.submitted_at)
            )
            .scalars()
            .all()
        )
