# redemption_app/services/nav_service.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from redemption_app.core.errors import NotFoundError, ValidationError
from redemption_app.models.nav_record import NavRecord


def _now():
    return datetime.now(timezone.utc)


class NavService:
    """
    NAV history per token type. Operators record a NAV, a second operator
    validates it; only validated NAVs price windows.
    """

    def record_nav(
        self,
        db: Session,
        *,
        token_type: str,
        nav: Decimal,
        nav_date: datetime,
        source: Optional[str] = None,
    ) -> NavRecord:
        if nav <= 0:
            raise ValidationError("NAV must be positive.")
        row = NavRecord(
            token_type=token_type,
            nav=nav,
            nav_date=nav_date,
            source=source,
            validated=False,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    def validate_nav(
        self,
        db: Session,
        *,
        nav_id: uuid.UUID,
        validated_by: str,
        now: Optional[datetime] = None,
    ) -> NavRecord:
        row = db.get(NavRecord, nav_id)
        if not row:
            raise NotFoundError("NAV record not found.", entity_id=str(nav_id))
        if row.validated:
            return row
        row.validated = True
        row.validated_by = validated_by
        row.validated_at = now or _now()
        db.commit()
        db.refresh(row)
        return row

    def latest_validated(
        self,
        db: Session,
        *,
        token_type: str,
        as_of: datetime,
    ) -> Optional[NavRecord]:
        return (
            db.execute(
                select(NavRecord)
                .where(
                    NavRecord.token_type == token_type,
                    NavRecord.validated.is_(True),
                    NavRecord.nav_date <= as_of,
                )
                .order_by(desc(NavRecord.nav_date), desc(NavRecord.created_at))
                .limit(1)
            )
            .scalars()
            .first()
        )

    def list_history(self, db: Session, *, token_type: str, limit: int = 100) -> List[NavRecord]:
        return list(
            db.execute(
                select(NavRecord)
                .where(NavRecord.token_type == token_type)
                .order_by(desc(NavRecord.nav_date))
                .limit(limit)
            )
            .scalars()
            .all()
        )
