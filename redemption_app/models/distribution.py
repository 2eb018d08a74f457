#redemption_app/models/distribution.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from redemption_app.db.base import Base
from redemption_app.db.types import UTCDateTime


def _now():
    return datetime.now(timezone.utc)


class Distribution(Base):
    """
    Tokens distributed to an investor. remaining_amount only goes down,
    one DistributionRedemption at a time.
    """

    __tablename__ = "distributions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    investor_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    token_type: Mapped[str] = mapped_column(String(64), nullable=False)
    token_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    remaining_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    fully_redeemed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    to_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("remaining_amount >= 0", name="ck_distribution_remaining_nonnegative"),
    )


class DistributionRedemption(Base):
    __tablename__ = "distribution_redemptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    distribution_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("distributions.id", ondelete="RESTRICT"), nullable=False
    )
    redemption_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("redemption_requests.id", ondelete="RESTRICT"), nullable=False
    )
    amount_redeemed: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    remaining_after: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)

    __table_args__ = (
        CheckConstraint("amount_redeemed > 0", name="ck_distribution_redemption_positive"),
        Index("ix_distribution_redemption_dist", "distribution_id"),
    )
