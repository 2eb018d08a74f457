# redemption_app/core/security.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt

from redemption_app.core.config import get_settings

# claims the caller may not override through ``claims``
RESERVED_CLAIMS = frozenset({"sub", "iat", "exp"})


def create_access_token(subject: str, claims: Dict[str, Any], expires_minutes: Optional[int] = None) -> str:
    """
    Issue a bearer token for a principal. ``claims`` carries ``roles`` and,
    for investors, ``investor_id``. Approver identity is always ``sub``.
    """
    settings = get_settings()
    issued = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=expires_minutes or settings.jwt_access_token_minutes)

    payload = {k: v for k, v in claims.items() if k not in RESERVED_CLAIMS}
    payload.update(sub=subject, iat=int(issued.timestamp()), exp=int((issued + lifetime).timestamp()))
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
        options={"require_sub": True, "require_exp": True},
    )
