# redemption_app/api/v1/converters.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from redemption_app.models.approval import ApprovalConfig
from redemption_app.models.nav_record import NavRecord
from redemption_app.models.redemption_request import RedemptionRequest
from redemption_app.models.redemption_window import RedemptionWindow
from redemption_app.models.settlement import Settlement, SettlementLeg
from redemption_app.schemas.approval import ApprovalConfigOut
from redemption_app.schemas.nav import NavRecordOut
from redemption_app.schemas.redemption import AssignmentOut, RedemptionOut
from redemption_app.schemas.settlement import SettlementLegOut, SettlementOut
from redemption_app.schemas.window import WindowOut


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _amount(v: Optional[Decimal]) -> Optional[str]:
    # money travels as strings
    return str(v) if v is not None else None


def _id(v) -> Optional[str]:
    return str(v) if v is not None else None


def redemption_to_schema(r: RedemptionRequest) -> RedemptionOut:
    return RedemptionOut(
        id=str(r.id),
        investor_id=r.investor_id,
        investor_name=r.investor_name,
        is_bulk_redemption=bool(r.is_bulk_redemption),
        investor_count=r.investor_count,
        token_amount=str(r.token_amount),
        requested_amount=str(r.requested_amount),
        token_type=r.token_type,
        conversion_rate=str(r.conversion_rate),
        source_wallet_address=r.source_wallet_address,
        destination_wallet_address=r.destination_wallet_address,
        redemption_type=r.redemption_type,
        status=r.status,
        required_approvals=r.required_approvals,
        rejection_reason=r.rejection_reason,
        cancellation_reason=r.cancellation_reason,
        window_id=_id(r.window_id),
        parent_request_id=_id(r.parent_request_id),
        distribution_id=_id(r.distribution_id),
        nav_used=_amount(r.nav_used),
        nav_date_iso=_iso(r.nav_date),
        submitted_at_iso=_iso(r.submitted_at),
        approved_at_iso=_iso(r.approved_at),
        settled_at_iso=_iso(r.settled_at),
        created_at_iso=r.created_at.isoformat(),
        assignments=[
            AssignmentOut(
                approver_id=a.approver_id,
                role=a.role,
                status=a.status,
                comment=a.comment,
                is_system=bool(a.is_system),
                late_decision=bool(a.late_decision),
                decided_at_iso=_iso(a.decided_at),
            )
            for a in r.assignments
        ],
    )


def _leg_to_schema(leg: SettlementLeg) -> SettlementLegOut:
    return SettlementLegOut(
        status=leg.status.value,
        tx_hash=leg.tx_hash,
        attempts=leg.attempts,
        failures=leg.failures,
        idempotency_key=leg.idempotency_key,
        submitted_at_iso=_iso(leg.submitted_at),
        confirmed_at_iso=_iso(leg.confirmed_at),
        last_error=leg.last_error,
    )


def settlement_to_schema(s: Settlement) -> SettlementOut:
    return SettlementOut(
        id=str(s.id),
        request_id=str(s.request_id),
        status=s.status,
        settlement_type=s.settlement_type,
        token_amount=str(s.token_amount),
        nav_used=str(s.nav_used),
        transfer_amount=str(s.transfer_amount),
        currency=s.transfer_currency,
        burn=_leg_to_schema(s.burn),
        transfer=_leg_to_schema(s.transfer),
        burn_gas_used=s.burn_gas_used,
        retry_count=s.retry_count,
        last_retry_at_iso=_iso(s.last_retry_at),
        last_error=s.last_error,
        completed_at_iso=_iso(s.completed_at),
    )


def window_to_schema(w: RedemptionWindow) -> WindowOut:
    return WindowOut(
        id=str(w.id),
        token_type=w.token_type,
        name=w.name,
        status=w.status,
        submission_start_iso=w.submission_start.isoformat(),
        submission_end_iso=w.submission_end.isoformat(),
        start_iso=w.start.isoformat(),
        end_iso=w.end.isoformat(),
        nav=_amount(w.nav),
        nav_date_iso=_iso(w.nav_date),
        max_redemption_amount=_amount(w.max_redemption_amount),
        enable_pro_rata_distribution=bool(w.enable_pro_rata_distribution),
        queue_unprocessed_requests=bool(w.queue_unprocessed_requests),
        allocation_precision=w.allocation_precision,
        current_requests=w.current_requests,
        total_request_value=str(w.total_request_value),
        approved_value=str(w.approved_value),
        queued_value=str(w.queued_value),
        rejected_value=str(w.rejected_value),
        processing_started_at_iso=_iso(w.processing_started_at),
        completed_at_iso=_iso(w.completed_at),
    )


def approval_config_to_schema(c: ApprovalConfig) -> ApprovalConfigOut:
    return ApprovalConfigOut(
        id=str(c.id),
        resource_key=c.resource_key,
        consensus_type=c.consensus_type,
        required_approvals=c.required_approvals,
        eligible_roles=list(c.eligible_roles or []),
        auto_approve_threshold=_amount(c.auto_approve_threshold),
        requires_all_approvers=bool(c.requires_all_approvers),
    )


def nav_to_schema(n: NavRecord) -> NavRecordOut:
    return NavRecordOut(
        id=str(n.id),
        token_type=n.token_type,
        nav=str(n.nav),
        nav_date_iso=n.nav_date.isoformat(),
        source=n.source,
        validated=bool(n.validated),
        validated_by=n.validated_by,
        validated_at_iso=_iso(n.validated_at),
    )
