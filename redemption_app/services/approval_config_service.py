from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from redemption_app.core.errors import NotFoundError, ValidationError
from redemption_app.core.types import ConsensusType
from redemption_app.models.approval import ApprovalConfig


def _now():
    return datetime.now(timezone.utc)


class ApprovalConfigService:
    def get_by_key(self, db: Session, resource_key: str) -> Optional[ApprovalConfig]:
        return db.execute(
            select(ApprovalConfig).where(ApprovalConfig.resource_key == resource_key)
        ).scalar_one_or_none()

    def require_by_key(self, db: Session, resource_key: str) -> ApprovalConfig:
        cfg = self.get_by_key(db, resource_key)
        if not cfg:
            raise NotFoundError(f"No approval config for {resource_key}.", entity_id=resource_key)
        return cfg

    def upsert(
        self,
        db: Session,
        *,
        resource_key: str,
        consensus_type: ConsensusType,
        required_approvals: int,
        eligible_roles: Sequence[str],
        auto_approve_threshold: Optional[Decimal] = None,
        requires_all_approvers: bool = False,
    ) -> ApprovalConfig:
        if required_approvals < 1:
            raise ValidationError("required_approvals must be >= 1.")
        roles = [r for r in dict.fromkeys(eligible_roles) if r]
        if not roles:
            raise ValidationError("eligible_roles must not be empty.")
        if auto_approve_threshold is not None and auto_approve_threshold < 0:
            raise ValidationError("auto_approve_threshold must be non-negative.")

        cfg = self.get_by_key(db, resource_key)
        if cfg is None:
            cfg = ApprovalConfig(resource_key=resource_key)
            db.add(cfg)

        # existing requests keep their assignments; only new submissions see the change
        cfg.consensus_type = consensus_type.value
        cfg.required_approvals = required_approvals
        cfg.eligible_roles = roles
        cfg.auto_approve_threshold = auto_approve_threshold
        cfg.requires_all_approvers = requires_all_approvers
        cfg.updated_at = _now()

        db.commit()
        db.refresh(cfg)
        return cfg
