# redemption_app/services/settlement_service.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from redemption_app.core.errors import (
    ExternalExecutionError,
    FatalSettlementError,
    NotFoundError,
    SettlementInProgress,
    ValidationError,
)
from redemption_app.core.state_machine import (
    REQUEST_TRANSITIONS,
    SETTLEMENT_TRANSITIONS,
    require_transition,
)
from redemption_app.core.types import (
    TERMINAL_SETTLEMENT_STATUSES,
    LegKind,
    LegStatus,
    NotificationEvent,
    RedemptionStatus,
    SettlementStatus,
)
from redemption_app.db.uow import commit_or_conflict
from redemption_app.integrations.ledger_executor import (
    LedgerExecutor,
    LedgerInstruction,
    LedgerOutcome,
    LedgerResult,
)
from redemption_app.integrations.notifications import NotificationSink, safe_notify
from redemption_app.models.redemption_request import RedemptionRequest
from redemption_app.models.redemption_window import RedemptionWindow
from redemption_app.models.settlement import Settlement, SettlementAttempt, SettlementLeg
from redemption_app.services.distribution_service import DistributionService
from redemption_app.services.retry_policy import RetryPolicy
from redemption_app.services.window_service import recompute_counters

logger = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc)


class SettlementService:
    """
    Drives the two ledger legs of an approved request: burn, then transfer.

    Guarantees:
    - at most one Settlement per request; a terminal one is returned unchanged
    - each leg is submitted under a stable idempotency key
      ("{request_id}:burn" / "{request_id}:transfer")
    - the transfer leg never starts before the burn leg is confirmed
    - the transfer amount is fixed when the settlement is created
    - burn exhaustion -> failed; transfer exhaustion -> failed_post_burn
    """

    def __init__(
        self,
        executor: LedgerExecutor,
        retry_policy: Optional[RetryPolicy] = None,
        notifier: Optional[NotificationSink] = None,
        *,
        currency: str = "USDC",
        currency_precision: int = 6,
        pending_timeout_seconds: int = 300,
        clock: Callable[[], datetime] = _now,
    ):
        self.executor = executor
        self.retry_policy = retry_policy or RetryPolicy()
        self.notifier = notifier
        self.currency = currency
        self.currency_precision = currency_precision
        self.pending_timeout_seconds = pending_timeout_seconds
        self.clock = clock
        self.distributions = DistributionService()

    # ─────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────

    def get_for_request(self, db: Session, request_id: uuid.UUID) -> Settlement:
        row = db.execute(select(Settlement).where(Settlement.request_id == request_id)).scalar_one_or_none()
        if not row:
            raise NotFoundError("Settlement not found.", entity_id=str(request_id))
        return row

    def _settlement_for_update(self, db: Session, request_id: uuid.UUID) -> Optional[Settlement]:
        return (
            db.execute(
                select(Settlement)
                .where(Settlement.request_id == request_id)
                .with_for_update()
            )
            .scalars()
            .one_or_none()
        )

    def _request_for_update(self, db: Session, request_id: uuid.UUID) -> RedemptionRequest:
        req = (
            db.execute(
                select(RedemptionRequest)
                .where(RedemptionRequest.id == request_id)
                .with_for_update()
            )
            .scalars()
            .one_or_none()
        )
        if not req:
            raise NotFoundError("Redemption request not found.", entity_id=str(request_id))
        return req

    # ─────────────────────────────────────────────
    # Execute
    # ─────────────────────────────────────────────

    def execute(self, db: Session, request_id: uuid.UUID) -> Settlement:
        request = self._request_for_update(db, request_id)
        settlement = self._settlement_for_update(db, request_id)

        if settlement is not None and settlement.status_enum in TERMINAL_SETTLEMENT_STATUSES:
            return settlement

        if settlement is None:
            settlement = self._create(db, request)

        owner = self._claim(settlement)

        if settlement.status_enum is SettlementStatus.pending:
            require_transition(
                SETTLEMENT_TRANSITIONS, settlement.status_enum, SettlementStatus.processing, entity="Settlement"
            )
            settlement.status = SettlementStatus.processing.value
            require_transition(
                REQUEST_TRANSITIONS, request.status_enum, RedemptionStatus.processing, entity="Redemption request"
            )
            request.status = RedemptionStatus.processing.value
            request.updated_at = self.clock()
            logger.info(
                "settlement started",
                extra={"request_id": str(request.id), "settlement_id": str(settlement.id)},
            )
        # a racing worker that read the same version loses here
        commit_or_conflict(db, "Settlement")

        try:
            for leg in (settlement.burn, settlement.transfer):
                self._drive_leg(db, settlement, request, leg)
                if leg.status is not LegStatus.confirmed:
                    # still pending at the executor; reconciliation picks it up
                    self._release(settlement, owner)
                    commit_or_conflict(db, "Settlement")
                    return settlement
        except FatalSettlementError as err:
            self._release(settlement, owner)
            self._fail(db, settlement, request, err)
            return settlement

        self._release(settlement, owner)
        self._complete(db, settlement, request)
        return settlement

    def _claim(self, settlement: Settlement) -> str:
        """Take the worker lease or raise SettlementInProgress while another worker holds it."""
        now = self.clock()
        if settlement.lease_owner is not None and settlement.lease_expires_at and settlement.lease_expires_at > now:
            raise SettlementInProgress(
                "Settlement is being driven by another worker.",
                entity_id=str(settlement.request_id),
            )
        owner = uuid.uuid4().hex
        settlement.lease_owner = owner
        settlement.lease_expires_at = now + timedelta(seconds=self.pending_timeout_seconds)
        settlement.updated_at = now
        return owner

    @staticmethod
    def _release(settlement: Settlement, owner: str) -> None:
        if settlement.lease_owner == owner:
            settlement.lease_owner = None
            settlement.lease_expires_at = None

    def _create(self, db: Session, request: RedemptionRequest) -> Settlement:
        if request.status != RedemptionStatus.approved.value:
            raise ValidationError(
                f"Only approved requests settle (status is {request.status}).",
                entity_id=str(request.id),
            )
        if request.nav_used is None:
            raise ValidationError("Request has no captured price yet.", entity_id=str(request.id))

        unit = Decimal(1).scaleb(-self.currency_precision)
        transfer_amount = (request.token_amount * request.nav_used).quantize(unit, rounding=ROUND_DOWN)

        settlement = Settlement(
            id=uuid.uuid4(),
            request_id=request.id,
            status=SettlementStatus.pending.value,
            settlement_type=request.redemption_type,
            token_amount=request.token_amount,
            nav_used=request.nav_used,
            nav_date=request.nav_date,
            transfer_amount=transfer_amount,
            transfer_currency=self.currency,
        )
        db.add(settlement)
        try:
            db.flush()
        except IntegrityError as exc:
            db.rollback()
            raise SettlementInProgress(
                "Settlement for this request is being created by another worker.",
                entity_id=str(request.id),
            ) from exc
        return settlement

    def _instruction(self, settlement: Settlement, request: RedemptionRequest, kind: LegKind) -> LedgerInstruction:
        if kind is LegKind.burn:
            return LedgerInstruction(
                kind=kind,
                request_id=str(request.id),
                token_type=request.token_type,
                amount=settlement.token_amount,
                from_address=request.source_wallet_address,
                to_address=request.source_wallet_address,
            )
        return LedgerInstruction(
            kind=kind,
            request_id=str(request.id),
            token_type=request.token_type,
            amount=settlement.transfer_amount,
            from_address=request.source_wallet_address,
            to_address=request.destination_wallet_address,
            currency=settlement.transfer_currency,
        )

    # ─────────────────────────────────────────────
    # Legs
    # ─────────────────────────────────────────────

    def _drive_leg(
        self,
        db: Session,
        settlement: Settlement,
        request: RedemptionRequest,
        leg: SettlementLeg,
    ) -> None:
        if leg.status is LegStatus.confirmed:
            return
        if leg.status is LegStatus.failed:
            raise FatalSettlementError(
                f"{leg.kind.value} leg already failed: {leg.last_error}",
                entity_id=str(request.id),
                post_burn=leg.kind is LegKind.transfer,
            )

        instruction = self._instruction(settlement, request, leg.kind)

        while True:
            leg.mark_submitted(self.clock())
            try:
                result = self._submit(leg.idempotency_key, instruction)
            except ExternalExecutionError as exc:
                logger.warning(
                    "ledger submit raised",
                    extra={"idempotency_key": leg.idempotency_key, "error": exc.message},
                    exc_info=exc.__cause__,
                )
                result = LedgerResult(status=LedgerOutcome.failed, error=exc.message)

            if result.status is LedgerOutcome.pending:
                leg.mark_pending(result.tx_hash)
                settlement.updated_at = self.clock()
                self._record_attempt(settlement, leg, result)
                commit_or_conflict(db, "Settlement")
                result = self._await_confirmation(leg.idempotency_key)

            if result.status is LedgerOutcome.confirmed:
                leg.mark_confirmed(self.clock(), result.tx_hash, result.gas_used)
                settlement.updated_at = self.clock()
                self._record_attempt(settlement, leg, result)
                commit_or_conflict(db, "Settlement")
                logger.info(
                    "settlement leg confirmed",
                    extra={"request_id": str(request.id), "leg": leg.kind.value, "tx_hash": leg.tx_hash},
                )
                return

            if result.status is LedgerOutcome.pending:
                logger.warning(
                    "settlement leg left pending",
                    extra={"request_id": str(request.id), "leg": leg.kind.value},
                )
                return

            failures = self._register_failure(settlement, leg, result)
            if self.retry_policy.exhausted(failures):
                leg.mark_failed(leg.last_error or "ledger operation failed")
                commit_or_conflict(db, "Settlement")
                raise FatalSettlementError(
                    f"{leg.kind.value} leg failed after {failures} attempts: {leg.last_error}",
                    entity_id=str(request.id),
                    post_burn=leg.kind is LegKind.transfer,
                )
            commit_or_conflict(db, "Settlement")
            self.retry_policy.backoff(failures)

    def _submit(self, key: str, instruction: LedgerInstruction) -> LedgerResult:
        """Raises ExternalExecutionError when the executor itself blows up."""
        try:
            return self.executor.submit(key, instruction)
        except Exception as exc:
            raise ExternalExecutionError(
                str(exc) or exc.__class__.__name__, entity_id=instruction.request_id
            ) from exc

    def _query(self, key: str) -> LedgerResult:
        try:
            return self.executor.query_status(key)
        except Exception:
            logger.warning("ledger status query raised", extra={"idempotency_key": key}, exc_info=True)
            return LedgerResult(status=LedgerOutcome.pending)

    def _await_confirmation(self, key: str) -> LedgerResult:
        for _ in range(self.retry_policy.poll_attempts):
            self.retry_policy.wait_for_poll()
            result = self._query(key)
            if result.status is not LedgerOutcome.pending:
                return result
        return LedgerResult(status=LedgerOutcome.pending)

    def _register_failure(self, settlement: Settlement, leg: SettlementLeg, result: LedgerResult) -> int:
        now = self.clock()
        message = result.error or "ledger operation failed"
        failures = leg.record_failure(message)
        settlement.retry_count += 1
        settlement.last_retry_at = now
        settlement.last_error = message
        settlement.updated_at = now
        self._record_attempt(settlement, leg, result)
        logger.warning(
            "settlement leg attempt failed",
            extra={
                "request_id": str(settlement.request_id),
                "leg": leg.kind.value,
                "failures": failures,
                "error": message,
            },
        )
        return failures

    def _record_attempt(self, settlement: Settlement, leg: SettlementLeg, result: LedgerResult) -> None:
        settlement.attempts.append(
            SettlementAttempt(
                leg=leg.kind.value,
                attempt_no=leg.attempts,
                idempotency_key=leg.idempotency_key,
                status=result.status.value,
                tx_hash=result.tx_hash,
                error=result.error,
                created_at=self.clock(),
            )
        )

    # ─────────────────────────────────────────────
    # Terminal outcomes
    # ─────────────────────────────────────────────

    def _fail(self, db: Session, settlement: Settlement, request: RedemptionRequest, err: FatalSettlementError) -> None:
        now = self.clock()
        post_burn = settlement.burn.status is LegStatus.confirmed
        target = SettlementStatus.failed_post_burn if post_burn else SettlementStatus.failed

        require_transition(SETTLEMENT_TRANSITIONS, settlement.status_enum, target, entity="Settlement")
        settlement.status = target.value
        settlement.last_error = err.message
        settlement.updated_at = now

        require_transition(REQUEST_TRANSITIONS, request.status_enum, RedemptionStatus.failed, entity="Redemption request")
        request.status = RedemptionStatus.failed.value
        request.updated_at = now

        if request.window_id is not None:
            recompute_counters(db, db.get(RedemptionWindow, request.window_id))
        commit_or_conflict(db, "Settlement")

        logger.error(
            "settlement failed",
            extra={
                "request_id": str(request.id),
                "settlement_id": str(settlement.id),
                "status": settlement.status,
                "retry_count": settlement.retry_count,
                "error": err.message,
            },
        )
        safe_notify(
            self.notifier,
            NotificationEvent.SETTLEMENT_FAILED,
            {
                "request_id": str(request.id),
                "settlement_id": str(settlement.id),
                "status": settlement.status,
                "error": err.message,
                "manual_intervention_required": post_burn,
            },
        )

    def _complete(self, db: Session, settlement: Settlement, request: RedemptionRequest) -> None:
        now = self.clock()
        require_transition(
            SETTLEMENT_TRANSITIONS, settlement.status_enum, SettlementStatus.completed, entity="Settlement"
        )
        settlement.status = SettlementStatus.completed.value
        settlement.completed_at = now
        settlement.updated_at = now

        require_transition(REQUEST_TRANSITIONS, request.status_enum, RedemptionStatus.settled, entity="Redemption request")
        request.status = RedemptionStatus.settled.value
        request.settled_at = now
        request.updated_at = now

        if request.distribution_id is not None:
            self.distributions.record_redemption(
                db,
                distribution_id=request.distribution_id,
                request_id=request.id,
                amount=settlement.token_amount,
                now=now,
            )
        if request.window_id is not None:
            recompute_counters(db, db.get(RedemptionWindow, request.window_id))
        commit_or_conflict(db, "Settlement")

        logger.info(
            "settlement completed",
            extra={
                "request_id": str(request.id),
                "settlement_id": str(settlement.id),
                "transfer_amount": str(settlement.transfer_amount),
            },
        )
        safe_notify(
            self.notifier,
            NotificationEvent.SETTLEMENT_COMPLETED,
            {
                "request_id": str(request.id),
                "settlement_id": str(settlement.id),
                "burn_tx_hash": settlement.burn_tx_hash,
                "transfer_tx_hash": settlement.transfer_tx_hash,
                "transfer_amount": str(settlement.transfer_amount),
                "currency": settlement.transfer_currency,
            },
        )

    # ─────────────────────────────────────────────
    # Reconciliation
    # ─────────────────────────────────────────────

    def reconcile_pending(self, db: Session, *, now: Optional[datetime] = None) -> List[Settlement]:
        """
        Sweep settlements stuck in processing longer than the pending timeout.

        A pending leg is re-queried under its idempotency key: confirmed
        resumes the settlement, failed counts as a failed attempt and then
        resumes (or fails the settlement once retries are exhausted), still
        pending is left for the next sweep. A leg that was never submitted
        (worker died between legs) is simply resumed.
        """
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.pending_timeout_seconds)

        stale = (
            db.execute(
                select(Settlement)
                .where(
                    Settlement.status == SettlementStatus.processing.value,
                    Settlement.updated_at <= cutoff,
                )
                .order_by(Settlement.updated_at)
            )
            .scalars()
            .all()
        )

        touched: List[Settlement] = []
        for settlement in stale:
            if settlement.lease_expires_at is not None and settlement.lease_expires_at > now:
                # a live worker is still driving it
                continue
            leg = settlement.burn if settlement.burn.status is not LegStatus.confirmed else settlement.transfer

            if leg.status is LegStatus.pending:
                if leg.submitted_at is not None and leg.submitted_at > cutoff:
                    continue
                result = self._query(leg.idempotency_key)

                if result.status is LedgerOutcome.pending:
                    logger.warning(
                        "settlement leg still pending at reconciliation",
                        extra={"request_id": str(settlement.request_id), "leg": leg.kind.value},
                    )
                    continue

                if result.status is LedgerOutcome.confirmed:
                    leg.mark_confirmed(now, result.tx_hash, result.gas_used)
                    settlement.updated_at = now
                    self._record_attempt(settlement, leg, result)
                    commit_or_conflict(db, "Settlement")
                else:
                    failures = self._register_failure(settlement, leg, result)
                    if self.retry_policy.exhausted(failures):
                        leg.mark_failed(leg.last_error or "ledger operation failed")
                        request = self._request_for_update(db, settlement.request_id)
                        err = FatalSettlementError(
                            f"{leg.kind.value} leg failed after {failures} attempts: {leg.last_error}",
                            entity_id=str(settlement.request_id),
                            post_burn=leg.kind is LegKind.transfer,
                        )
                        self._fail(db, settlement, request, err)
                        touched.append(settlement)
                        continue
                    commit_or_conflict(db, "Settlement")

            logger.info(
                "resuming settlement from reconciliation",
                extra={"request_id": str(settlement.request_id), "leg": leg.kind.value},
            )
            touched.append(self.execute(db, settlement.request_id))

        return touched
