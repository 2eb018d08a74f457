# redemption_app/services/pro_rata.py
from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, localcontext
from typing import List, Sequence, Tuple


@dataclass(frozen=True)
class Allocation:
    request_id: uuid.UUID
    requested: Decimal
    allocated: Decimal

    @property
    def remainder(self) -> Decimal:
        return self.requested - self.allocated

    @property
    def is_full(self) -> bool:
        return self.allocated == self.requested


def allocation_unit(precision: int) -> Decimal:
    return Decimal(1).scaleb(-precision)


def _floor_to_unit(value: Decimal, unit: Decimal) -> Decimal:
    return (value / unit).to_integral_value(rounding=ROUND_FLOOR) * unit


def allocate_pro_rata(
    demands: Sequence[Tuple[uuid.UUID, Decimal]],
    cap: Decimal,
    precision: int = 0,
) -> List[Allocation]:
    """
    Scale every demand by f = cap / total (largest remainder method).

    - amounts are floored to the allocation unit (10 ** -precision)
    - leftover capacity goes one unit at a time to the largest fractional
      remainders, ties broken by ascending request id
    - a demand never receives more than it asked for; a unit that would
      overshoot a demand is split, the rest moving down the order
    The allocations always sum to exactly ``cap``. Demands at or below the
    cap in total are returned unscaled.
    """
    if cap < 0:
        raise ValueError("cap must be non-negative")

    total = sum((amount for _, amount in demands), Decimal(0))
    if total <= cap:
        return [Allocation(rid, amount, amount) for rid, amount in demands]

    unit = allocation_unit(precision)

    with localcontext() as ctx:
        ctx.prec = 60

        allocated: List[Decimal] = []
        fractions: List[Decimal] = []
        for _, amount in demands:
            exact = amount * cap / total
            base = _floor_to_unit(exact, unit)
            allocated.append(base)
            fractions.append(exact - base)

        order = sorted(range(len(demands)), key=lambda i: (-fractions[i], demands[i][0]))

        # whole units first, to the largest remainders
        residue = cap - sum(allocated, Decimal(0))
        for i in order:
            if residue <= 0:
                break
            if fractions[i] == 0:
                continue
            give = min(unit, demands[i][1] - allocated[i], residue)
            allocated[i] += give
            residue -= give

        # sub-unit tail of a cap finer than the unit, or capacity a capped
        # demand could not absorb; total > cap guarantees enough headroom
        for i in order:
            if residue <= 0:
                break
            give = min(demands[i][1] - allocated[i], residue)
            if give > 0:
                allocated[i] += give
                residue -= give

    return [
        Allocation(rid, amount, allocated[i])
        for i, (rid, amount) in enumerate(demands)
    ]


def allocate_in_order(
    demands: Sequence[Tuple[uuid.UUID, Decimal]],
    cap: Decimal,
) -> List[Allocation]:
    """
    First-come fill used when pro-rata is disabled: demands (already in
    submission order) are admitted whole until the cap, the boundary demand
    is partially filled, the rest get nothing.
    """
    remaining = cap
    out: List[Allocation] = []
    for rid, amount in demands:
        take = min(amount, max(remaining, Decimal(0)))
        out.append(Allocation(rid, amount, take))
        remaining -= take
    return out
