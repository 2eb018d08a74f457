from __future__ import annotations

import uuid
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from redemption_app.core.types import RedemptionType


class RedemptionCreateRequest(BaseModel):
    """
    Investor redemption request. approval_config_key defaults to token_type.
    submit=false keeps the request in draft.
    """
    investor_id: Optional[str] = Field(default=None, max_length=128)
    investor_name: Optional[str] = Field(default=None, max_length=256)
    token_amount: Decimal = Field(..., gt=0)
    token_type: str = Field(..., min_length=1, max_length=64)
    conversion_rate: Decimal = Field(..., gt=0)
    source_wallet_address: str = Field(..., min_length=1, max_length=128)
    destination_wallet_address: str = Field(..., min_length=1, max_length=128)
    redemption_type: RedemptionType = RedemptionType.standard
    approval_config_key: Optional[str] = Field(default=None, max_length=128)
    distribution_id: Optional[uuid.UUID] = None
    is_bulk_redemption: bool = False
    investor_count: int = Field(default=1, ge=1)
    notes: Optional[str] = None
    submit: bool = True


class BulkRedemptionCreateRequest(BaseModel):
    items: List[RedemptionCreateRequest] = Field(..., min_length=1, max_length=500)


class RedemptionCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class AssignmentOut(BaseModel):
    approver_id: str
    role: Optional[str] = None
    status: str
    comment: Optional[str] = None
    is_system: bool = False
    late_decision: bool = False
    decided_at_iso: Optional[str] = None


class RedemptionOut(BaseModel):
    id: str
    investor_id: Optional[str] = None
    investor_name: Optional[str] = None
    is_bulk_redemption: bool
    investor_count: int

    token_amount: str
    requested_amount: str
    token_type: str
    conversion_rate: str
    source_wallet_address: str
    destination_wallet_address: str

    redemption_type: RedemptionType
    status: str
    required_approvals: int
    rejection_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None

    window_id: Optional[str] = None
    parent_request_id: Optional[str] = None
    distribution_id: Optional[str] = None

    nav_used: Optional[str] = None
    nav_date_iso: Optional[str] = None

    submitted_at_iso: Optional[str] = None
    approved_at_iso: Optional[str] = None
    settled_at_iso: Optional[str] = None
    created_at_iso: str

    assignments: List[AssignmentOut] = Field(default_factory=list)


class RedemptionListResponse(BaseModel):
    items: List[RedemptionOut]
    total: int
    page: int
    limit: int


class BulkFailureOut(BaseModel):
    index: int
    error: str
    investor_id: Optional[str] = None


class BulkRedemptionResponse(BaseModel):
    batch_id: str
    requests: List[RedemptionOut]
    success_count: int
    failure_count: int
    failures: List[BulkFailureOut]


class RedemptionMetricsResponse(BaseModel):
    total_redemptions: int
    total_volume: str
    pending_redemptions: int
    completed_redemptions: int
    rejected_redemptions: int
    avg_processing_hours: float
    success_rate: float
