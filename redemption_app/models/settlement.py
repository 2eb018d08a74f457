#redemption_app/models/settlement.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
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

from redemption_app.core.errors import ValidationError
from redemption_app.core.state_machine import LEG_TRANSITIONS, require_transition
from redemption_app.db.base import Base
from redemption_app.db.types import UTCDateTime
from redemption_app.core.types import LegKind, LegStatus, SettlementStatus


def _now():
    return datetime.now(timezone.utc)


class SettlementLeg:
    """
    Typed view over one leg's columns on the Settlement aggregate.

    Columns are stored flat (burn_status, transfer_status, ...); this view is
    the only place that mutates them, so the leg state machine is enforced
    in one spot.
    """

    _FIELDS = (
        "status",
        "tx_hash",
        "attempts",
        "failures",
        "submitted_at",
        "confirmed_at",
        "last_error",
    )

    def __init__(self, settlement: "Settlement", kind: LegKind):
        self._settlement = settlement
        self.kind = kind

    def _col(self, name: str) -> str:
        if name not in self._FIELDS:
            raise AttributeError(name)
        return f"{self.kind.value}_{name}"

    def _get(self, name: str) -> Any:
        return getattr(self._settlement, self._col(name))

    def _set(self, name: str, value: Any) -> None:
        setattr(self._settlement, self._col(name), value)

    @property
    def status(self) -> LegStatus:
        return LegStatus(self._get("status"))

    @property
    def tx_hash(self) -> Optional[str]:
        return self._get("tx_hash")

    @property
    def attempts(self) -> int:
        return int(self._get("attempts") or 0)

    @property
    def failures(self) -> int:
        return int(self._get("failures") or 0)

    @property
    def submitted_at(self) -> Optional[datetime]:
        return self._get("submitted_at")

    @property
    def confirmed_at(self) -> Optional[datetime]:
        return self._get("confirmed_at")

    @property
    def last_error(self) -> Optional[str]:
        return self._get("last_error")

    @property
    def idempotency_key(self) -> str:
        return f"{self._settlement.request_id}:{self.kind.value}"

    @property
    def is_terminal(self) -> bool:
        return self.status in (LegStatus.confirmed, LegStatus.failed)

    def _move(self, target: LegStatus) -> None:
        require_transition(LEG_TRANSITIONS, self.status, target, entity=f"{self.kind.value} leg")
        self._set("status", target.value)

    def mark_submitted(self, now: datetime) -> None:
        if self.kind is LegKind.transfer and self._settlement.burn.status is not LegStatus.confirmed:
            raise ValidationError("Transfer leg cannot start before the burn leg is confirmed.")
        self._set("attempts", self.attempts + 1)
        self._set("submitted_at", now)

    def mark_pending(self, tx_hash: Optional[str]) -> None:
        self._move(LegStatus.pending)
        if tx_hash:
            self._set("tx_hash", tx_hash)

    def mark_confirmed(self, now: datetime, tx_hash: Optional[str], gas_used: Optional[int] = None) -> None:
        self._move(LegStatus.confirmed)
        if tx_hash:
            self._set("tx_hash", tx_hash)
        self._set("confirmed_at", now)
        self._set("last_error", None)
        if self.kind is LegKind.burn and gas_used is not None:
            self._settlement.burn_gas_used = gas_used

    def record_error(self, message: str) -> None:
        self._set("last_error", message[:2000])

    def record_failure(self, message: str) -> int:
        self._set("failures", self.failures + 1)
        self.record_error(message)
        return self.failures

    def mark_failed(self, message: str) -> None:
        self._move(LegStatus.failed)
        self.record_error(message)


class Settlement(Base):
    """
    Two-leg settlement aggregate: burn, then transfer. One per request.

    Retry history is append-only in SettlementAttempt.
    """

    __tablename__ = "settlements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("redemption_requests.id", ondelete="RESTRICT"), nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=SettlementStatus.pending.value
    )
    settlement_type: Mapped[str] = mapped_column(String(16), nullable=False)

    # Price snapshot (captured once, reused by every retry)
    token_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    nav_used: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    nav_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # ─── burn leg ───
    burn_status: Mapped[str] = mapped_column(String(16), nullable=False, default=LegStatus.not_started.value)
    burn_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    burn_gas_used: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    burn_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    burn_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    burn_submitted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    burn_confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    burn_last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # ─── transfer leg ───
    transfer_status: Mapped[str] = mapped_column(String(16), nullable=False, default=LegStatus.not_started.value)
    transfer_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    transfer_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    transfer_currency: Mapped[str] = mapped_column(String(16), nullable=False)
    transfer_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transfer_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transfer_submitted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    transfer_confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    transfer_last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # worker lease; while unexpired no other worker may drive the legs
    lease_owner: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    request = relationship("RedemptionRequest", back_populates="settlement")
    attempts = relationship(
        "SettlementAttempt",
        back_populates="settlement",
        cascade="all, delete-orphan",
        order_by="SettlementAttempt.created_at",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("request_id", name="uq_settlement_request"),
        Index("ix_settlement_status", "status"),
    )

    @property
    def burn(self) -> SettlementLeg:
        return SettlementLeg(self, LegKind.burn)

    @property
    def transfer(self) -> SettlementLeg:
        return SettlementLeg(self, LegKind.transfer)

    def leg(self, kind: LegKind) -> SettlementLeg:
        return SettlementLeg(self, kind)

    @property
    def status_enum(self) -> SettlementStatus:
        return SettlementStatus(self.status)


class SettlementAttempt(Base):
    """
    Append-only record of one submission / confirmation outcome for one leg.
    """

    __tablename__ = "settlement_attempts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    settlement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("settlements.id", ondelete="CASCADE"), nullable=False
    )
    leg: Mapped[str] = mapped_column(String(16), nullable=False)
    attempt_no: Mapped[int] = mapped_column(Integer, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)

    settlement = relationship("Settlement", back_populates="attempts")

    __table_args__ = (
        Index("ix_settlement_attempt_leg", "settlement_id", "leg"),
    )
