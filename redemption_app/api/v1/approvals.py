# redemption_app/api/v1/approvals.py
from __future__ import annotations

import uuid
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from redemption_app.api.deps import get_consensus_service, raise_http
from redemption_app.core.auth_deps import get_current_principal, require_permission
from redemption_app.core.errors import RedemptionError
from redemption_app.db.session import get_db
from redemption_app.policies.rbac import ACTION_DECIDE, Principal
from redemption_app.schemas.approval import DecisionRequest, DecisionResponse, PendingApprovalOut
from redemption_app.services.consensus_service import ConsensusService

router = APIRouter(prefix="/approvals", tags=["approvals"])


@router.get("/pending", response_model=List[PendingApprovalOut])
def my_pending_approvals(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: ConsensusService = Depends(get_consensus_service),
):
    rows = svc.pending_for_approver(db, principal.participant_id)
    return [
        PendingApprovalOut(
            request_id=str(r.id),
            token_type=r.token_type,
            token_amount=str(r.token_amount),
            investor_id=r.investor_id,
            submitted_at_iso=r.submitted_at.isoformat() if r.submitted_at else None,
        )
        for r in rows
    ]


@router.post("/{request_id}/decision", response_model=DecisionResponse)
def submit_decision(
    request_id: uuid.UUID,
    req: DecisionRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permission(ACTION_DECIDE)),
    svc: ConsensusService = Depends(get_consensus_service),
):
    """
    Records the caller's decision. A decision arriving after the verdict is
    final is stored for audit and reported as already_finalized.
    """
    try:
        result = svc.submit_decision(
            db,
            request_id=request_id,
            approver_id=principal.participant_id,
            decision=req.decision,
            comment=req.comment,
            signature=req.signature,
        )
    except RedemptionError as e:
        raise_http(e)

    return DecisionResponse(
        request_id=str(result.request.id),
        approver_id=result.assignment.approver_id,
        decision=req.decision,
        outcome=result.outcome.value,
        verdict=result.verdict.value,
        request_status=result.request.status,
    )


@router.get("/{request_id}/verdict")
def current_verdict(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: ConsensusService = Depends(get_consensus_service),
):
    try:
        verdict = svc.evaluate(db, request_id)
    except RedemptionError as e:
        raise_http(e)
    return {"request_id": str(request_id), "verdict": verdict.value}
