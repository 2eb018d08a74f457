from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Protocol, Sequence


@dataclass(frozen=True)
class ApproverIdentity:
    approver_id: str
    role: str


class RoleProvider(Protocol):
    def resolve(self, roles: Sequence[str]) -> List[ApproverIdentity]:
        """Concrete approvers holding any of the given roles."""
        ...


class DirectoryRoleProvider:
    """
    Static role -> approver directory (from settings.approver_directory).
    An approver holding several eligible roles is returned once, under the
    first matching role.
    """

    def __init__(self, directory: Mapping[str, Sequence[str]]):
        self._directory: Dict[str, List[str]] = {k: list(v) for k, v in directory.items()}

    def resolve(self, roles: Sequence[str]) -> List[ApproverIdentity]:
        seen = set()
        out: List[ApproverIdentity] = []
        for role in roles:
            for approver_id in self._directory.get(role, []):
                if approver_id in seen:
                    continue
                seen.add(approver_id)
                out.append(ApproverIdentity(approver_id=approver_id, role=role))
        return out
