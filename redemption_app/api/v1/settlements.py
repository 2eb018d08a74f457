# redemption_app/api/v1/settlements.py
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from redemption_app.api.deps import get_dispatcher, get_settlement_service, raise_http
from redemption_app.api.v1.converters import settlement_to_schema
from redemption_app.core.auth_deps import get_current_principal, require_permission
from redemption_app.core.errors import RedemptionError
from redemption_app.core.types import RedemptionStatus
from redemption_app.db.session import get_db
from redemption_app.models.redemption_request import RedemptionRequest
from redemption_app.policies.rbac import ACTION_MANAGE_SETTLEMENTS, ROLE_OPERATIONS, Principal
from redemption_app.schemas.settlement import (
    ReconcileResponse,
    SettlementDispatchResponse,
    SettlementOut,
)
from redemption_app.services.settlement_service import SettlementService
from redemption_app.services.tasks import SettlementDispatcher

router = APIRouter(prefix="/settlements", tags=["settlements"])


@router.get("/{request_id}", response_model=SettlementOut)
def get_settlement(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: SettlementService = Depends(get_settlement_service),
):
    try:
        s = svc.get_for_request(db, request_id)
    except RedemptionError as e:
        raise_http(e)

    if not principal.has_role(ROLE_OPERATIONS):
        owner = db.get(RedemptionRequest, request_id)
        if owner is None or owner.investor_id != principal.investor_id:
            raise HTTPException(status_code=403, detail="Not your redemption.")
    return settlement_to_schema(s)


@router.post("/{request_id}/execute", response_model=SettlementDispatchResponse, status_code=202)
def execute_settlement(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permission(ACTION_MANAGE_SETTLEMENTS)),
    dispatcher: SettlementDispatcher = Depends(get_dispatcher),
):
    """
    Schedules (or resumes) settlement in the background. Safe to call twice:
    a terminal settlement is returned unchanged by the worker.
    """
    req = db.get(RedemptionRequest, request_id)
    if not req:
        raise HTTPException(status_code=404, detail="Redemption request not found.")
    if req.status not in (RedemptionStatus.approved.value, RedemptionStatus.processing.value):
        raise HTTPException(status_code=409, detail=f"Request is {req.status}; nothing to settle.")
    if req.nav_used is None:
        raise HTTPException(status_code=409, detail="Request has not been priced yet.")

    dispatcher(request_id)
    return SettlementDispatchResponse(request_id=str(request_id), accepted=True)


@router.post("/reconcile", response_model=ReconcileResponse)
def reconcile_settlements(
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permission(ACTION_MANAGE_SETTLEMENTS)),
    svc: SettlementService = Depends(get_settlement_service),
):
    try:
        rows = svc.reconcile_pending(db)
    except RedemptionError as e:
        raise_http(e)
    return ReconcileResponse(reconciled=[settlement_to_schema(s) for s in rows])
