from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class NavRecordCreate(BaseModel):
    token_type: str = Field(..., min_length=1, max_length=64)
    nav: Decimal = Field(..., gt=0)
    nav_date: datetime
    source: Optional[str] = Field(default=None, max_length=64)


class NavRecordOut(BaseModel):
    id: str
    token_type: str
    nav: str
    nav_date_iso: str
    source: Optional[str] = None
    validated: bool
    validated_by: Optional[str] = None
    validated_at_iso: Optional[str] = None
