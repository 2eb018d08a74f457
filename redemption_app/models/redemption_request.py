#redemption_app/models/redemption_request.py
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
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from redemption_app.db.base import Base
from redemption_app.db.types import UTCDateTime
from redemption_app.core.types import RedemptionStatus, RedemptionType


def _now():
    return datetime.now(timezone.utc)


class RedemptionRequest(Base):
    """
    An investor's request to redeem tokenized holdings.

    token_amount is the amount that will actually settle; it is scaled down by
    window pro-rata allocation. requested_amount keeps the original ask.
    Rows are archived (never deleted) on terminal status.
    """

    __tablename__ = "redemption_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Investor (or aggregate for bulk requests)
    investor_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    investor_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    is_bulk_redemption: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    investor_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Economics
    token_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    requested_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    token_type: Mapped[str] = mapped_column(String(64), nullable=False)
    conversion_rate: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)

    source_wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    destination_wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)

    redemption_type: Mapped[str] = mapped_column(
        String(16), nullable=False, default=RedemptionType.standard.value
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=RedemptionStatus.draft.value
    )

    # Approval
    required_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    approval_config_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("approval_configs.id", ondelete="RESTRICT"), nullable=True
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejected_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Window / lineage
    window_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("redemption_windows.id", ondelete="SET NULL"), nullable=True
    )
    carried_from_window_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    parent_request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("redemption_requests.id", ondelete="SET NULL"), nullable=True
    )
    distribution_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("distributions.id", ondelete="SET NULL"), nullable=True
    )

    # Price captured at window pricing or approval; never recomputed
    nav_used: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)
    nav_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    submitted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    assignments = relationship(
        "ApproverAssignment",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="ApproverAssignment.created_at",
    )
    settlement = relationship("Settlement", back_populates="request", uselist=False)
    approval_config = relationship("ApprovalConfig")
    window = relationship("RedemptionWindow", back_populates="requests", foreign_keys=[window_id])

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("token_amount > 0", name="ck_redemption_token_amount_positive"),
        CheckConstraint("required_approvals >= 1", name="ck_redemption_required_approvals"),
        Index("ix_redemption_status", "status"),
        Index("ix_redemption_window_status", "window_id", "status"),
        Index("ix_redemption_token_type", "token_type"),
    )

    @property
    def status_enum(self) -> RedemptionStatus:
        return RedemptionStatus(self.status)

    @property
    def is_interval(self) -> bool:
        return self.redemption_type == RedemptionType.interval.value
