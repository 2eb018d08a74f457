from __future__ import annotations

import uuid
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from redemption_app.api.deps import raise_http
from redemption_app.api.v1.converters import nav_to_schema
from redemption_app.core.auth_deps import get_current_principal, require_permission
from redemption_app.core.errors import RedemptionError
from redemption_app.db.session import get_db
from redemption_app.policies.rbac import ACTION_MANAGE_NAV, Principal
from redemption_app.schemas.nav import NavRecordCreate, NavRecordOut
from redemption_app.services.nav_service import NavService

router = APIRouter(prefix="/nav", tags=["nav"])


@router.post("", response_model=NavRecordOut, status_code=201)
def record_nav(
    req: NavRecordCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permission(ACTION_MANAGE_NAV)),
):
    try:
        row = NavService().record_nav(
            db,
            token_type=req.token_type,
            nav=req.nav,
            nav_date=req.nav_date,
            source=req.source,
        )
    except RedemptionError as e:
        raise_http(e)
    return nav_to_schema(row)


@router.post("/{nav_id}/validate", response_model=NavRecordOut)
def validate_nav(
    nav_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permission(ACTION_MANAGE_NAV)),
):
    try:
        row = NavService().validate_nav(db, nav_id=nav_id, validated_by=principal.participant_id)
    except RedemptionError as e:
        raise_http(e)
    return nav_to_schema(row)


@router.get("/{token_type}", response_model=List[NavRecordOut])
def nav_history(
    token_type: str,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return [nav_to_schema(n) for n in NavService().list_history(db, token_type=token_type, limit=limit)]
