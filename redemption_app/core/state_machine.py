# redemption_app/core/state_machine.py
from __future__ import annotations

from typing import Dict, FrozenSet, Mapping, TypeVar

from redemption_app.core.errors import ValidationError
from redemption_app.core.types import (
    LegStatus,
    RedemptionStatus,
    SettlementStatus,
    WindowStatus,
)

S = TypeVar("S")

# ─────────────────────────────────────────────
# Allowed transitions (forward only)
# ─────────────────────────────────────────────

REQUEST_TRANSITIONS: Dict[RedemptionStatus, FrozenSet[RedemptionStatus]] = {
    RedemptionStatus.draft: frozenset(
        {RedemptionStatus.pending_approval, RedemptionStatus.cancelled}
    ),
    RedemptionStatus.pending_approval: frozenset(
        {RedemptionStatus.approved, RedemptionStatus.rejected, RedemptionStatus.cancelled}
    ),
    # queued remainders are carried into the next window already approved
    RedemptionStatus.queued: frozenset(
        {RedemptionStatus.approved, RedemptionStatus.rejected, RedemptionStatus.cancelled}
    ),
    RedemptionStatus.approved: frozenset(
        {RedemptionStatus.processing, RedemptionStatus.queued, RedemptionStatus.rejected}
    ),
    RedemptionStatus.processing: frozenset({RedemptionStatus.settled, RedemptionStatus.failed}),
    RedemptionStatus.settled: frozenset(),
    RedemptionStatus.failed: frozenset(),
    RedemptionStatus.rejected: frozenset(),
    RedemptionStatus.cancelled: frozenset(),
}

SETTLEMENT_TRANSITIONS: Dict[SettlementStatus, FrozenSet[SettlementStatus]] = {
    SettlementStatus.pending: frozenset({SettlementStatus.processing, SettlementStatus.failed}),
    SettlementStatus.processing: frozenset(
        {SettlementStatus.completed, SettlementStatus.failed, SettlementStatus.failed_post_burn}
    ),
    SettlementStatus.completed: frozenset(),
    SettlementStatus.failed: frozenset(),
    SettlementStatus.failed_post_burn: frozenset(),
}

LEG_TRANSITIONS: Dict[LegStatus, FrozenSet[LegStatus]] = {
    LegStatus.not_started: frozenset({LegStatus.pending, LegStatus.confirmed, LegStatus.failed}),
    # pending -> pending is a resubmission under the same idempotency key
    LegStatus.pending: frozenset({LegStatus.pending, LegStatus.confirmed, LegStatus.failed}),
    LegStatus.confirmed: frozenset(),
    LegStatus.failed: frozenset(),
}

WINDOW_TRANSITIONS: Dict[WindowStatus, FrozenSet[WindowStatus]] = {
    WindowStatus.upcoming: frozenset({WindowStatus.open}),
    WindowStatus.open: frozenset({WindowStatus.closed}),
    WindowStatus.closed: frozenset({WindowStatus.processing}),
    WindowStatus.processing: frozenset({WindowStatus.completed}),
    WindowStatus.completed: frozenset(),
}


def can_transition(table: Mapping[S, FrozenSet[S]], current: S, target: S) -> bool:
    return target in table.get(current, frozenset())


def require_transition(table: Mapping[S, FrozenSet[S]], current: S, target: S, *, entity: str) -> None:
    """
    Raises ValidationError if current -> target is not an allowed edge.
    Terminal states (no outgoing edges) are immutable.
    """
    if can_transition(table, current, target):
        return
    cur = getattr(current, "value", current)
    tgt = getattr(target, "value", target)
    if not table.get(current):
        raise ValidationError(f"{entity} is in terminal state {cur} and cannot move to {tgt}.")
    raise ValidationError(f"{entity} cannot transition from {cur} to {tgt}.")
