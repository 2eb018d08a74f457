#redemption_app/models/redemption_window.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from redemption_app.db.base import Base
from redemption_app.db.types import UTCDateTime
from redemption_app.core.types import WindowStatus


def _now():
    return datetime.now(timezone.utc)


class RedemptionWindow(Base):
    __tablename__ = "redemption_windows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    token_type: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    submission_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    submission_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=WindowStatus.upcoming.value
    )

    # Pricing (stamped once at processing, immutable afterwards)
    nav: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)
    nav_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Capacity / pro-rata rules
    max_redemption_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)
    enable_pro_rata_distribution: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    queue_unprocessed_requests: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allocation_precision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Derived aggregates, recomputed from request rows on every change
    current_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_request_value: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False, default=Decimal("0"))
    approved_value: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False, default=Decimal("0"))
    queued_value: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False, default=Decimal("0"))
    rejected_value: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False, default=Decimal("0"))

    processing_started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    sla_alerted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    requests = relationship(
        "RedemptionRequest",
        back_populates="window",
        foreign_keys="RedemptionRequest.window_id",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("submission_end > submission_start", name="ck_window_submission_period"),
        CheckConstraint("allocation_precision >= 0", name="ck_window_allocation_precision"),
        Index("ix_window_token_status", "token_type", "status"),
    )

    @property
    def status_enum(self) -> WindowStatus:
        return WindowStatus(self.status)

    def accepts_submissions_at(self, when: datetime) -> bool:
        return (
            self.status == WindowStatus.open.value
            and self.submission_start <= when <= self.submission_end
        )
