from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from redemption_app.core.errors import ConflictError
from redemption_app.models.idempotency_key import IdempotencyKeyRecord


def stable_hash(payload: Any) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IdempotencyScope:
    principal_id: str
    endpoint_key: str
    idem_key: str


@dataclass(frozen=True)
class IdempotencyLookup:
    scope: IdempotencyScope
    request_hash: str
    replay_body: Optional[Dict[str, Any]] = None
    replay_status: Optional[int] = None

    @property
    def is_replay(self) -> bool:
        return self.replay_body is not None


class IdempotencyService:
    """Replay protection for redemption submissions keyed by caller, route and header key."""

    def _find(self, db: Session, scope: IdempotencyScope) -> Optional[IdempotencyKeyRecord]:
        stmt = select(IdempotencyKeyRecord).where(
            IdempotencyKeyRecord.principal_id == scope.principal_id,
            IdempotencyKeyRecord.endpoint_key == scope.endpoint_key,
            IdempotencyKeyRecord.idem_key == scope.idem_key,
        )
        return db.execute(stmt).scalar_one_or_none()

    def lookup(self, db: Session, scope: IdempotencyScope, payload: Any) -> IdempotencyLookup:
        """
        Hash the payload and check it against a stored response.
        A stored response under a different payload hash raises ConflictError.
        """
        request_hash = stable_hash(payload)
        record = self._find(db, scope)
        if record is None:
            return IdempotencyLookup(scope=scope, request_hash=request_hash)
        if record.request_hash != request_hash:
            raise ConflictError("Idempotency-Key was already used with a different redemption payload.")
        return IdempotencyLookup(
            scope=scope,
            request_hash=request_hash,
            replay_body=record.response_json,
            replay_status=record.response_status,
        )

    def remember(self, db: Session, lookup: IdempotencyLookup, *, status_code: int, body: Dict[str, Any]) -> None:
        if lookup.is_replay or self._find(db, lookup.scope) is not None:
            return

        db.add(
            IdempotencyKeyRecord(
                principal_id=lookup.scope.principal_id,
                endpoint_key=lookup.scope.endpoint_key,
                idem_key=lookup.scope.idem_key,
                request_hash=lookup.request_hash,
                response_status=status_code,
                response_json=body,
            )
        )
        try:
            db.commit()
        except IntegrityError:
            # concurrent retry stored first
            db.rollback()
