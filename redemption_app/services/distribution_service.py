# redemption_app/services/distribution_service.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from redemption_app.core.errors import NotFoundError, ValidationError
from redemption_app.core.types import TERMINAL_REQUEST_STATUSES
from redemption_app.models.distribution import Distribution, DistributionRedemption
from redemption_app.models.redemption_request import RedemptionRequest


def _now():
    return datetime.now(timezone.utc)


class DistributionService:
    """
    Partial redemption of a distribution. remaining_amount is only ever
    decreased, and in-flight requests reserve capacity at submission.
    """

    def get_for_update(self, db: Session, distribution_id: uuid.UUID) -> Distribution:
        row = (
            db.execute(
                select(Distribution)
                .where(Distribution.id == distribution_id)
                .with_for_update()
            )
            .scalars()
            .one_or_none()
        )
        if not row:
            raise NotFoundError("Distribution not found.", entity_id=str(distribution_id))
        return row

    def reserved_amount(
        self,
        db: Session,
        distribution_id: uuid.UUID,
        *,
        exclude_request_id: Optional[uuid.UUID] = None,
    ) -> Decimal:
        stmt = select(RedemptionRequest.token_amount).where(
            RedemptionRequest.distribution_id == distribution_id,
            RedemptionRequest.status.not_in([s.value for s in TERMINAL_REQUEST_STATUSES]),
        )
        if exclude_request_id is not None:
            stmt = stmt.where(RedemptionRequest.id != exclude_request_id)
        amounts = db.execute(stmt).scalars().all()
        return sum((Decimal(str(a)) for a in amounts), Decimal(0))

    def assert_capacity(
        self,
        db: Session,
        *,
        distribution_id: uuid.UUID,
        token_type: str,
        amount: Decimal,
        exclude_request_id: Optional[uuid.UUID] = None,
    ) -> Distribution:
        dist = self.get_for_update(db, distribution_id)
        if dist.token_type != token_type:
            raise ValidationError("Distribution token type does not match the redemption token type.")
        available = Decimal(str(dist.remaining_amount)) - self.reserved_amount(
            db, distribution_id, exclude_request_id=exclude_request_id
        )
        if amount > available:
            raise ValidationError(
                f"Redemption amount {amount} exceeds available distribution balance {available}."
            )
        return dist

    def record_redemption(
        self,
        db: Session,
        *,
        distribution_id: uuid.UUID,
        request_id: uuid.UUID,
        amount: Decimal,
        now: Optional[datetime] = None,
    ) -> DistributionRedemption:
        """Caller commits."""
        if amount <= 0:
            raise ValidationError("Redeemed amount must be positive.")
        dist = self.get_for_update(db, distribution_id)
        remaining = Decimal(str(dist.remaining_amount)) - amount
        if remaining < 0:
            raise ValidationError("Distribution remaining amount cannot go negative.")

        dist.remaining_amount = remaining
        dist.fully_redeemed = remaining == 0
        dist.updated_at = now or _now()

        row = DistributionRedemption(
            distribution_id=distribution_id,
            redemption_request_id=request_id,
            amount_redeemed=amount,
            remaining_after=remaining,
        )
        db.add(row)
        return row

    def total_redeemed(self, db: Session, distribution_id: uuid.UUID) -> Decimal:
        total = db.execute(
            select(func.coalesce(func.sum(DistributionRedemption.amount_redeemed), 0)).where(
                DistributionRedemption.distribution_id == distribution_id
            )
        ).scalar_one()
        return Decimal(str(total))
