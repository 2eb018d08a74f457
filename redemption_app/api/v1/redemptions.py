# redemption_app/api/v1/redemptions.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from redemption_app.api.deps import get_redemption_service, raise_http
from redemption_app.api.v1.converters import redemption_to_schema
from redemption_app.core.auth_deps import get_current_principal, require_permission
from redemption_app.core.deps_idempotency import idempotency_guard
from redemption_app.core.errors import RedemptionError
from redemption_app.core.types import RedemptionStatus, RedemptionType
from redemption_app.db.session import get_db
from redemption_app.policies.rbac import (
    ACTION_CANCEL_REDEMPTION,
    ACTION_SUBMIT_REDEMPTION,
    ROLE_OPERATIONS,
    Principal,
)
from redemption_app.schemas.redemption import (
    BulkFailureOut,
    BulkRedemptionCreateRequest,
    BulkRedemptionResponse,
    RedemptionCancelRequest,
    RedemptionCreateRequest,
    RedemptionListResponse,
    RedemptionMetricsResponse,
    RedemptionOut,
)
from redemption_app.services.idempotency_service import IdempotencyService
from redemption_app.services.redemption_service import RedemptionService

router = APIRouter(prefix="/redemptions", tags=["redemptions"])


# ─────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────

def _own_investor_only(principal: Principal, investor_id: Optional[str]):
    if principal.has_role(ROLE_OPERATIONS):
        return
    if not investor_id or investor_id != principal.investor_id:
        raise HTTPException(
            status_code=403,
            detail="Investors may only manage their own redemptions.",
        )


def _replay(request: Request) -> Optional[JSONResponse]:
    lookup = getattr(request.state, "idempotency", None)
    if lookup is None or not lookup.is_replay:
        return None
    return JSONResponse(content=lookup.replay_body, status_code=lookup.replay_status or 200)


def _store(request: Request, db: Session, body: dict, status_code: int) -> None:
    IdempotencyService().remember(db, request.state.idempotency, status_code=status_code, body=body)


def _item_kwargs(req: RedemptionCreateRequest) -> dict:
    return dict(
        investor_id=req.investor_id,
        investor_name=req.investor_name,
        token_amount=req.token_amount,
        token_type=req.token_type,
        conversion_rate=req.conversion_rate,
        source_wallet_address=req.source_wallet_address,
        destination_wallet_address=req.destination_wallet_address,
        redemption_type=req.redemption_type,
        approval_config_key=req.approval_config_key,
        distribution_id=req.distribution_id,
        is_bulk_redemption=req.is_bulk_redemption,
        investor_count=req.investor_count,
        notes=req.notes,
        submit=req.submit,
    )


# ─────────────────────────────────────────────────────────────
# CREATE
# ─────────────────────────────────────────────────────────────

@router.post(
    "",
    response_model=RedemptionOut,
    status_code=201,
    dependencies=[Depends(idempotency_guard)],
)
def create_redemption(
    req: RedemptionCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permission(ACTION_SUBMIT_REDEMPTION)),
    svc: RedemptionService = Depends(get_redemption_service),
):
    replay = _replay(request)
    if replay is not None:
        return replay

    _own_investor_only(principal, req.investor_id)

    try:
        r = svc.create_request(db, **_item_kwargs(req))
    except RedemptionError as e:
        raise_http(e)

    out = redemption_to_schema(r)
    _store(request, db, out.model_dump(mode="json"), 201)
    return out


@router.post(
    "/bulk",
    response_model=BulkRedemptionResponse,
    status_code=201,
    dependencies=[Depends(idempotency_guard)],
)
def create_bulk_redemptions(
    req: BulkRedemptionCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permission(ACTION_SUBMIT_REDEMPTION)),
    svc: RedemptionService = Depends(get_redemption_service),
):
    replay = _replay(request)
    if replay is not None:
        return replay

    for item in req.items:
        _own_investor_only(principal, item.investor_id)

    result = svc.create_bulk_requests(db, items=[_item_kwargs(i) for i in req.items])

    out = BulkRedemptionResponse(
        batch_id=result.batch_id,
        requests=[redemption_to_schema(r) for r in result.created],
        success_count=len(result.created),
        failure_count=len(result.failures),
        failures=[
            BulkFailureOut(index=f.index, error=f.error, investor_id=f.investor_id)
            for f in result.failures
        ],
    )
    _store(request, db, out.model_dump(mode="json"), 201)
    return out


# ─────────────────────────────────────────────────────────────
# SUBMIT DRAFT / CANCEL
# ─────────────────────────────────────────────────────────────

@router.post("/{request_id}/submit", response_model=RedemptionOut)
def submit_redemption(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permission(ACTION_SUBMIT_REDEMPTION)),
    svc: RedemptionService = Depends(get_redemption_service),
):
    try:
        _own_investor_only(principal, svc.get_request(db, request_id).investor_id)
        r = svc.submit_request(db, request_id)
    except RedemptionError as e:
        raise_http(e)
    return redemption_to_schema(r)


@router.post("/{request_id}/cancel", response_model=RedemptionOut)
def cancel_redemption(
    request_id: uuid.UUID,
    req: RedemptionCancelRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permission(ACTION_CANCEL_REDEMPTION)),
    svc: RedemptionService = Depends(get_redemption_service),
):
    try:
        _own_investor_only(principal, svc.get_request(db, request_id).investor_id)
        r = svc.cancel_request(db, request_id, reason=req.reason)
    except RedemptionError as e:
        raise_http(e)
    return redemption_to_schema(r)


# ─────────────────────────────────────────────────────────────
# READ
# ─────────────────────────────────────────────────────────────

@router.get("", response_model=RedemptionListResponse)
def list_redemptions(
    status: Optional[RedemptionStatus] = None,
    token_type: Optional[str] = None,
    investor_id: Optional[str] = None,
    window_id: Optional[uuid.UUID] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: RedemptionService = Depends(get_redemption_service),
):
    if not principal.has_role(ROLE_OPERATIONS):
        # investors see only their own requests
        investor_id = principal.investor_id or principal.participant_id

    rows, total = svc.list_requests(
        db,
        status=status,
        token_type=token_type,
        investor_id=investor_id,
        window_id=window_id,
        page=page,
        limit=limit,
    )
    return RedemptionListResponse(
        items=[redemption_to_schema(r) for r in rows],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/metrics", response_model=RedemptionMetricsResponse)
def redemption_metrics(
    token_type: Optional[str] = None,
    redemption_type: Optional[RedemptionType] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: RedemptionService = Depends(get_redemption_service),
):
    if not principal.has_role(ROLE_OPERATIONS):
        raise HTTPException(status_code=403, detail="Only operations may read redemption metrics.")

    m = svc.get_metrics(db, token_type=token_type, redemption_type=redemption_type, start=start, end=end)
    return RedemptionMetricsResponse(
        total_redemptions=m.total_redemptions,
        total_volume=str(m.total_volume),
        pending_redemptions=m.pending_redemptions,
        completed_redemptions=m.completed_redemptions,
        rejected_redemptions=m.rejected_redemptions,
        avg_processing_hours=m.avg_processing_hours,
        success_rate=m.success_rate,
    )


@router.get("/{request_id}", response_model=RedemptionOut)
def get_redemption(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: RedemptionService = Depends(get_redemption_service),
):
    try:
        r = svc.get_request(db, request_id)
    except RedemptionError as e:
        raise_http(e)

    is_assigned = any(a.approver_id == principal.participant_id for a in r.assignments)
    if not is_assigned:
        _own_investor_only(principal, r.investor_id)
    return redemption_to_schema(r)
