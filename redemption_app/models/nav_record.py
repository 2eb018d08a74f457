#redemption_app/models/nav_record.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Index, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from redemption_app.db.base import Base
from redemption_app.db.types import UTCDateTime


def _now():
    return datetime.now(timezone.utc)


class NavRecord(Base):
    """
    Published net asset value per token for a date. Only validated records
    are used for window pricing.
    """

    __tablename__ = "nav_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    token_type: Mapped[str] = mapped_column(String(64), nullable=False)
    nav: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    nav_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validated_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    validated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)

    __table_args__ = (
        Index("ix_nav_token_date", "token_type", "nav_date"),
    )
