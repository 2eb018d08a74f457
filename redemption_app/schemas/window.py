from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class WindowCreateRequest(BaseModel):
    token_type: str = Field(..., min_length=1, max_length=64)
    name: Optional[str] = Field(default=None, max_length=128)
    submission_start: datetime
    submission_end: datetime
    start: datetime
    end: datetime
    max_redemption_amount: Optional[Decimal] = Field(default=None, gt=0)
    enable_pro_rata_distribution: bool = True
    queue_unprocessed_requests: bool = True
    allocation_precision: int = Field(default=0, ge=0, le=8)

    @model_validator(mode="after")
    def _require_tz(self):
        for name in ("submission_start", "submission_end", "start", "end"):
            if getattr(self, name).tzinfo is None:
                raise ValueError(f"{name} must include a timezone offset")
        return self


class WindowPriceRequest(BaseModel):
    # omitted nav -> latest validated NAV from the pricing oracle
    nav: Optional[Decimal] = Field(default=None, gt=0)
    nav_date: Optional[datetime] = None


class WindowOut(BaseModel):
    id: str
    token_type: str
    name: Optional[str] = None
    status: str

    submission_start_iso: str
    submission_end_iso: str
    start_iso: str
    end_iso: str

    nav: Optional[str] = None
    nav_date_iso: Optional[str] = None

    max_redemption_amount: Optional[str] = None
    enable_pro_rata_distribution: bool
    queue_unprocessed_requests: bool
    allocation_precision: int

    current_requests: int
    total_request_value: str
    approved_value: str
    queued_value: str
    rejected_value: str

    processing_started_at_iso: Optional[str] = None
    completed_at_iso: Optional[str] = None


class AllocationOut(BaseModel):
    request_id: str
    requested: str
    allocated: str


class WindowPricingResponse(BaseModel):
    window: WindowOut
    pro_rata_applied: bool
    allocations: List[AllocationOut]
    settle_request_ids: List[str]
    queued_request_ids: List[str]
    rejected_request_ids: List[str]


class WindowScheduleResponse(BaseModel):
    opened: List[str]
    closed: List[str]


class SlaAlertOut(BaseModel):
    window_id: str
    message: str
