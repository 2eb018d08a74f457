# redemption_app/api/v1/windows.py
from __future__ import annotations

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from redemption_app.api.deps import get_window_service, raise_http
from redemption_app.api.v1.converters import window_to_schema
from redemption_app.core.auth_deps import get_current_principal, require_permission
from redemption_app.core.errors import RedemptionError
from redemption_app.core.types import WindowStatus
from redemption_app.db.session import get_db
from redemption_app.policies.rbac import ACTION_MANAGE_WINDOWS, Principal
from redemption_app.schemas.window import (
    AllocationOut,
    SlaAlertOut,
    WindowCreateRequest,
    WindowOut,
    WindowPriceRequest,
    WindowPricingResponse,
    WindowScheduleResponse,
)
from redemption_app.services.window_service import WindowService

router = APIRouter(prefix="/windows", tags=["windows"])

_manage = require_permission(ACTION_MANAGE_WINDOWS)


# ─────────────────────────────────────────────────────────────
# READ
# ─────────────────────────────────────────────────────────────

@router.get("", response_model=List[WindowOut])
def list_windows(
    token_type: Optional[str] = None,
    status: Optional[WindowStatus] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: WindowService = Depends(get_window_service),
):
    return [window_to_schema(w) for w in svc.list_windows(db, token_type=token_type, status=status)]


@router.get("/{window_id}", response_model=WindowOut)
def get_window(
    window_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: WindowService = Depends(get_window_service),
):
    try:
        w = svc.get_window(db, window_id)
    except RedemptionError as e:
        raise_http(e)
    return window_to_schema(w)


# ─────────────────────────────────────────────────────────────
# LIFECYCLE
# ─────────────────────────────────────────────────────────────

@router.post("", response_model=WindowOut, status_code=201)
def create_window(
    req: WindowCreateRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(_manage),
    svc: WindowService = Depends(get_window_service),
):
    try:
        w = svc.create_window(
            db,
            token_type=req.token_type,
            name=req.name,
            submission_start=req.submission_start,
            submission_end=req.submission_end,
            start=req.start,
            end=req.end,
            max_redemption_amount=req.max_redemption_amount,
            enable_pro_rata_distribution=req.enable_pro_rata_distribution,
            queue_unprocessed_requests=req.queue_unprocessed_requests,
            allocation_precision=req.allocation_precision,
        )
    except RedemptionError as e:
        raise_http(e)
    return window_to_schema(w)


@router.post("/schedule", response_model=WindowScheduleResponse)
def run_schedule(
    db: Session = Depends(get_db),
    principal: Principal = Depends(_manage),
    svc: WindowService = Depends(get_window_service),
):
    try:
        out = svc.activate_due_windows(db)
    except RedemptionError as e:
        raise_http(e)
    return WindowScheduleResponse(
        opened=[str(i) for i in out["opened"]],
        closed=[str(i) for i in out["closed"]],
    )


@router.post("/sla-check", response_model=List[SlaAlertOut])
def check_sla(
    db: Session = Depends(get_db),
    principal: Principal = Depends(_manage),
    svc: WindowService = Depends(get_window_service),
):
    alerts = svc.check_processing_sla(db)
    return [SlaAlertOut(window_id=a.entity_id, message=a.message) for a in alerts]


@router.post("/{window_id}/open", response_model=WindowOut)
def open_window(
    window_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(_manage),
    svc: WindowService = Depends(get_window_service),
):
    try:
        w = svc.open_window(db, window_id)
    except RedemptionError as e:
        raise_http(e)
    return window_to_schema(w)


@router.post("/{window_id}/close", response_model=WindowOut)
def close_window(
    window_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(_manage),
    svc: WindowService = Depends(get_window_service),
):
    try:
        w = svc.close_submissions(db, window_id)
    except RedemptionError as e:
        raise_http(e)
    return window_to_schema(w)


@router.post("/{window_id}/price", response_model=WindowPricingResponse)
def price_window(
    window_id: uuid.UUID,
    req: WindowPriceRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(_manage),
    svc: WindowService = Depends(get_window_service),
):
    """
    Stamps the NAV, applies the window cap and schedules settlement of every
    request that received an allocation.
    """
    try:
        result = svc.price_and_process(db, window_id, nav=req.nav, nav_date=req.nav_date)
    except RedemptionError as e:
        raise_http(e)

    return WindowPricingResponse(
        window=window_to_schema(result.window),
        pro_rata_applied=result.pro_rata_applied,
        allocations=[
            AllocationOut(request_id=str(a.request_id), requested=str(a.requested), allocated=str(a.allocated))
            for a in result.allocations
        ],
        settle_request_ids=[str(i) for i in result.settle_request_ids],
        queued_request_ids=[str(i) for i in result.queued_request_ids],
        rejected_request_ids=[str(i) for i in result.rejected_request_ids],
    )


@router.post("/{window_id}/complete", response_model=WindowOut)
def complete_window(
    window_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(_manage),
    svc: WindowService = Depends(get_window_service),
):
    try:
        w = svc.complete(db, window_id)
    except RedemptionError as e:
        raise_http(e)
    return window_to_schema(w)
