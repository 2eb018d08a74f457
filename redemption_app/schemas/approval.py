from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from redemption_app.core.types import ConsensusType, Decision


class DecisionRequest(BaseModel):
    # approver identity comes from the access token
    decision: Decision
    comment: Optional[str] = Field(default=None, max_length=2000)
    signature: Optional[str] = Field(default=None, max_length=256)


class DecisionResponse(BaseModel):
    request_id: str
    approver_id: str
    decision: Decision
    outcome: str
    verdict: str
    request_status: str


class ApprovalConfigUpsert(BaseModel):
    consensus_type: ConsensusType = ConsensusType.threshold
    required_approvals: int = Field(default=2, ge=1)
    eligible_roles: List[str] = Field(..., min_length=1)
    auto_approve_threshold: Optional[Decimal] = Field(default=None, ge=0)
    requires_all_approvers: bool = False


class ApprovalConfigOut(BaseModel):
    id: str
    resource_key: str
    consensus_type: ConsensusType
    required_approvals: int
    eligible_roles: List[str]
    auto_approve_threshold: Optional[str] = None
    requires_all_approvers: bool


class PendingApprovalOut(BaseModel):
    request_id: str
    token_type: str
    token_amount: str
    investor_id: Optional[str] = None
    submitted_at_iso: Optional[str] = None
