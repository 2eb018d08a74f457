from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from redemption_app.core.types import LegKind, NotificationEvent
from redemption_app.integrations.ledger_executor import (
    LedgerInstruction,
    LedgerOutcome,
    LedgerResult,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.events: List[Tuple[NotificationEvent, dict]] = []
        self.fail = fail

    def notify(self, event, payload):
        if self.fail:
            raise RuntimeError("sink down")
        self.events.append((event, payload))

    def of(self, event: NotificationEvent) -> List[dict]:
        return [p for e, p in self.events if e is event]


class ScriptedLedgerExecutor:
    """
    Ledger double. Each leg kind has a script of outcomes consumed one per
    real execution; an exhausted script confirms. Honors the executor
    contract: a key whose stored outcome is pending or confirmed is not
    executed again. before_submit fires once, ahead of the first submission.
    """

    def __init__(
        self,
        burn: Optional[List[object]] = None,
        transfer: Optional[List[object]] = None,
        before_submit: Optional[Callable[[str, LedgerInstruction], None]] = None,
    ):
        self.before_submit = before_submit
        self.scripts: Dict[LegKind, List[object]] = {
            LegKind.burn: list(burn or []),
            LegKind.transfer: list(transfer or []),
        }
        self.results: Dict[str, LedgerResult] = {}
        self.submissions: List[Tuple[str, LedgerInstruction]] = []
        self.executions: List[Tuple[str, LedgerInstruction]] = []

    def submit(self, idempotency_key: str, instruction: LedgerInstruction) -> LedgerResult:
        if self.before_submit is not None:
            hook, self.before_submit = self.before_submit, None
            hook(idempotency_key, instruction)
        self.submissions.append((idempotency_key, instruction))
        existing = self.results.get(idempotency_key)
        if existing and existing.status is not LedgerOutcome.failed:
            return existing

        self.executions.append((idempotency_key, instruction))
        script = self.scripts[instruction.kind]
        outcome = script.pop(0) if script else LedgerOutcome.confirmed
        if isinstance(outcome, Exception):
            raise outcome

        n = len(self.executions)
        if outcome is LedgerOutcome.failed:
            result = LedgerResult(status=outcome, error=f"{instruction.kind.value} rejected by rail")
        else:
            result = LedgerResult(
                status=outcome,
                tx_hash=f"0x{instruction.kind.value}{n:04d}",
                gas_used=21000 if instruction.kind is LegKind.burn else None,
            )
        self.results[idempotency_key] = result
        return result

    def query_status(self, idempotency_key: str) -> LedgerResult:
        return self.results.get(
            idempotency_key,
            LedgerResult(status=LedgerOutcome.failed, error="unknown idempotency key"),
        )

    def resolve(self, idempotency_key: str, outcome: LedgerOutcome) -> None:
        """Simulate the rail finishing a pending operation."""
        prior = self.results[idempotency_key]
        error = None if outcome is LedgerOutcome.confirmed else "reverted on chain"
        self.results[idempotency_key] = LedgerResult(
            status=outcome, tx_hash=prior.tx_hash, gas_used=prior.gas_used, error=error
        )

    def executed(self, kind: LegKind) -> List[LedgerInstruction]:
        return [i for _, i in self.executions if i.kind is kind]


class FakeSleep:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
