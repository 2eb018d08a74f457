from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import JSON, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from redemption_app.db.base import Base
from redemption_app.db.types import UTCDateTime


def _now():
    return datetime.now(timezone.utc)


class IdempotencyKeyRecord(Base):
    """
    Stores response for a POST request with Idempotency-Key header to prevent
    duplicate redemption submissions.

    Scope: (principal_id, endpoint_key, idem_key) must be unique.
    """
    __tablename__ = "idempotency_key_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    principal_id: Mapped[str] = mapped_column(String(128), nullable=False)
    endpoint_key: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "POST:/api/v1/redemptions"
    idem_key: Mapped[str] = mapped_column(String(128), nullable=False)

    request_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    response_status: Mapped[int] = mapped_column(nullable=False, default=200)
    response_json: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("principal_id", "endpoint_key", "idem_key", name="uq_idem_scope"),
        Index("ix_idem_lookup", "principal_id", "endpoint_key"),
    )
