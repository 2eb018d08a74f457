from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from redemption_app.api.deps import raise_http
from redemption_app.api.v1.converters import approval_config_to_schema
from redemption_app.core.auth_deps import get_current_principal, require_permission
from redemption_app.core.errors import RedemptionError
from redemption_app.db.session import get_db
from redemption_app.policies.rbac import ACTION_MANAGE_APPROVAL_CONFIG, Principal
from redemption_app.schemas.approval import ApprovalConfigOut, ApprovalConfigUpsert
from redemption_app.services.approval_config_service import ApprovalConfigService

router = APIRouter(prefix="/approval-configs", tags=["approval-configs"])


@router.put("/{resource_key}", response_model=ApprovalConfigOut)
def upsert_approval_config(
    resource_key: str,
    req: ApprovalConfigUpsert,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permission(ACTION_MANAGE_APPROVAL_CONFIG)),
):
    try:
        cfg = ApprovalConfigService().upsert(
            db,
            resource_key=resource_key,
            consensus_type=req.consensus_type,
            required_approvals=req.required_approvals,
            eligible_roles=req.eligible_roles,
            auto_approve_threshold=req.auto_approve_threshold,
            requires_all_approvers=req.requires_all_approvers,
        )
    except RedemptionError as e:
        raise_http(e)
    return approval_config_to_schema(cfg)


@router.get("/{resource_key}", response_model=ApprovalConfigOut)
def get_approval_config(
    resource_key: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    try:
        cfg = ApprovalConfigService().require_by_key(db, resource_key)
    except RedemptionError as e:
        raise_http(e)
    return approval_config_to_schema(cfg)
