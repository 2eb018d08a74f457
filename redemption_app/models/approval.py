#redemption_app/models/approval.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from redemption_app.db.base import Base
from redemption_app.db.types import UTCDateTime
from redemption_app.core.types import AssignmentStatus, ConsensusType


def _now():
    return datetime.now(timezone.utc)


class ApprovalConfig(Base):
    """
    Consensus rule owned by a resource context (e.g. a token type or fund).
    Referenced by many requests.
    """

    __tablename__ = "approval_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    resource_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)

    consensus_type: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ConsensusType.threshold.value
    )
    required_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    eligible_roles: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    auto_approve_threshold: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)
    requires_all_approvers: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)

    @property
    def effective_consensus(self) -> ConsensusType:
        if self.requires_all_approvers:
            return ConsensusType.all
        return ConsensusType(self.consensus_type)


class ApproverAssignment(Base):
    """
    One approver's seat on one request. status is write-once from pending.
    """

    __tablename__ = "approver_assignments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("redemption_requests.id", ondelete="CASCADE"), nullable=False
    )
    approver_id: Mapped[str] = mapped_column(String(128), nullable=False)
    role: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=AssignmentStatus.pending.value
    )
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    signature: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    # synthetic decision written by auto-approval
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # decision arrived after the request was already finalized (kept for audit)
    late_decision: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    decided_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)

    request = relationship("RedemptionRequest", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("request_id", "approver_id", name="uq_assignment_request_approver"),
        Index("ix_assignment_approver_status", "approver_id", "status"),
    )
