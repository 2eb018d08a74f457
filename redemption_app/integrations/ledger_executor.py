# redemption_app/integrations/ledger_executor.py
from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Protocol

from redemption_app.core.types import LegKind

logger = logging.getLogger(__name__)


class LedgerOutcome(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    failed = "failed"


@dataclass(frozen=True)
class LedgerInstruction:
    kind: LegKind
    request_id: str
    token_type: str
    amount: Decimal
    from_address: str
    to_address: str
    currency: Optional[str] = None


@dataclass(frozen=True)
class LedgerResult:
    status: LedgerOutcome
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None
    error: Optional[str] = None


class LedgerExecutor(Protocol):
    """
    Blockchain / payment rail boundary.

    Contract:
    - submit() is safe to call repeatedly with the same key: a key whose last
      outcome is pending or confirmed is not executed again, the stored
      outcome is returned.
    - a key whose last outcome is failed may be executed again (retry).
    """

    def submit(self, idempotency_key: str, instruction: LedgerInstruction) -> LedgerResult:
        ...

    def query_status(self, idempotency_key: str) -> LedgerResult:
        ...


class SimulatedLedgerExecutor:
    """
    In-process executor for dev / demo environments: every instruction
    confirms immediately with a deterministic pseudo tx hash.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: Dict[str, LedgerResult] = {}

    def submit(self, idempotency_key: str, instruction: LedgerInstruction) -> LedgerResult:
        with self._lock:
            existing = self._results.get(idempotency_key)
            if existing and existing.status is not LedgerOutcome.failed:
                return existing

            tx_hash = "0x" + hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()
            result = LedgerResult(
                status=LedgerOutcome.confirmed,
                tx_hash=tx_hash,
                gas_used=21000 if instruction.kind is LegKind.burn else None,
            )
            self._results[idempotency_key] = result

        logger.info(
            "simulated ledger %s confirmed",
            instruction.kind.value,
            extra={"idempotency_key": idempotency_key, "amount": str(instruction.amount)},
        )
        return result

    def query_status(self, idempotency_key: str) -> LedgerResult:
        with self._lock:
            existing = self._results.get(idempotency_key)
        if existing is None:
            return LedgerResult(status=LedgerOutcome.failed, error="unknown idempotency key")
        return existing
