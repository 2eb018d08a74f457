#redemption_app/core/auth_deps.py
from __future__ import annotations

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from redemption_app.core.security import decode_token
from redemption_app.policies.rbac import Principal, require_action

bearer = HTTPBearer(auto_error=True)


def get_current_principal(
    request: Request,
    creds: HTTPAuthorizationCredentials = Depends(bearer),
) -> Principal:
    """
    Canonical authentication dependency.

    Guarantees:
    - JWT is valid
    - participant_id and at least one role are present
    - the approver id used for decisions is the token subject, never the body
    """

    try:
        payload = decode_token(creds.credentials)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid or expired token.")

    participant_id = payload.get("participant_id") or payload.get("sub")
    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    display_name = payload.get("display_name") or "Unknown"

    if not participant_id or not roles:
        raise HTTPException(status_code=401, detail="Token missing required claims.")

    principal = Principal(
        participant_id=str(participant_id),
        roles=frozenset(str(r) for r in roles),
        display_name=str(display_name),
        investor_id=payload.get("investor_id"),
    )

    # Make principal available to downstream middleware / handlers
    request.state.principal = principal

    return principal


def require_permission(action: str):
    """Route dependency: 403 unless the principal's roles allow the action."""

    def _check(principal: Principal = Depends(get_current_principal)) -> Principal:
        try:
            require_action(principal, action)
        except PermissionError as e:
            raise HTTPException(status_code=403, detail=str(e))
        return principal

    return _check
