from __future__ import annotations

import json
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from redemption_app.core.auth_deps import get_current_principal
from redemption_app.core.errors import ConflictError
from redemption_app.db.session import get_db
from redemption_app.policies.rbac import Principal
from redemption_app.services.idempotency_service import (
    IdempotencyLookup,
    IdempotencyScope,
    IdempotencyService,
)

MAX_KEY_LENGTH = 128


def require_idempotency_key(idempotency_key: Optional[str] = Header(default=None)) -> str:
    if not idempotency_key:
        raise HTTPException(status_code=400, detail="Missing Idempotency-Key header.")
    if len(idempotency_key) > MAX_KEY_LENGTH:
        raise HTTPException(status_code=400, detail="Idempotency-Key too long.")
    return idempotency_key


async def idempotency_guard(
    request: Request,
    idem_key: str = Depends(require_idempotency_key),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> IdempotencyLookup:
    """Resolves the lookup for a submission and parks it on ``request.state.idempotency``."""
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else {}
    except ValueError:
        payload = raw.decode("utf-8", errors="replace")

    scope = IdempotencyScope(
        principal_id=principal.participant_id,
        endpoint_key=f"{request.method}:{request.url.path}",
        idem_key=idem_key,
    )
    try:
        lookup = IdempotencyService().lookup(db, scope, payload)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message)

    request.state.idempotency = lookup
    return lookup
