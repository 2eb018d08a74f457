from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel


class SettlementLegOut(BaseModel):
    status: str
    tx_hash: Optional[str] = None
    attempts: int
    failures: int
    idempotency_key: str
    submitted_at_iso: Optional[str] = None
    confirmed_at_iso: Optional[str] = None
    last_error: Optional[str] = None


class SettlementOut(BaseModel):
    id: str
    request_id: str
    status: str
    settlement_type: str

    token_amount: str
    nav_used: str
    transfer_amount: str
    currency: str

    burn: SettlementLegOut
    transfer: SettlementLegOut
    burn_gas_used: Optional[int] = None

    retry_count: int
    last_retry_at_iso: Optional[str] = None
    last_error: Optional[str] = None
    completed_at_iso: Optional[str] = None


class SettlementDispatchResponse(BaseModel):
    request_id: str
    accepted: bool


class ReconcileResponse(BaseModel):
    reconciled: List[SettlementOut]
