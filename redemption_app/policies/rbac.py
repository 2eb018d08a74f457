#redemption_app/policies/rbac.py
from __future__ import annotations
from dataclasses import dataclass
from typing import FrozenSet, Optional, Set

# --- Roles carried in the access token ---
ROLE_INVESTOR = "investor"
ROLE_APPROVER = "approver"
ROLE_OPERATIONS = "operations"

# --- Core action constants ---
ACTION_SUBMIT_REDEMPTION = "SUBMIT_REDEMPTION"
ACTION_CANCEL_REDEMPTION = "CANCEL_REDEMPTION"
ACTION_DECIDE = "DECIDE"
ACTION_MANAGE_WINDOWS = "MANAGE_WINDOWS"
ACTION_MANAGE_SETTLEMENTS = "MANAGE_SETTLEMENTS"
ACTION_MANAGE_NAV = "MANAGE_NAV"
ACTION_MANAGE_APPROVAL_CONFIG = "MANAGE_APPROVAL_CONFIG"


@dataclass(frozen=True)
class Principal:
    participant_id: str
    roles: FrozenSet[str]
    display_name: str
    investor_id: Optional[str] = None

    def has_role(self, role: str) -> bool:
        return role in self.roles


def allowed_actions(roles: FrozenSet[str]) -> Set[str]:
    """
    Pure RBAC: which actions a set of roles may attempt.
    """
    actions: Set[str] = set()

    if ROLE_INVESTOR in roles:
        actions |= {ACTION_SUBMIT_REDEMPTION, ACTION_CANCEL_REDEMPTION}

    # approver seats are per request; the consensus service checks the assignment
    if ROLE_APPROVER in roles:
        actions |= {ACTION_DECIDE}

    if ROLE_OPERATIONS in roles:
        actions |= {
            ACTION_SUBMIT_REDEMPTION,
            ACTION_CANCEL_REDEMPTION,
            ACTION_MANAGE_WINDOWS,
            ACTION_MANAGE_SETTLEMENTS,
            ACTION_MANAGE_NAV,
            ACTION_MANAGE_APPROVAL_CONFIG,
        }

    return actions


def require_action(principal: Principal, action: str) -> None:
    if action not in allowed_actions(principal.roles):
        raise PermissionError(
            f"Roles {sorted(principal.roles)} not permitted for action {action}."
        )
