from __future__ import annotations

from typing import Optional


class RedemptionError(Exception):
    """
    Base of the redemption error taxonomy.

    http_status is the status the v1 routes translate the error into.
    """

    http_status: int = 400

    def __init__(self, message: str, *, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id


class ValidationError(RedemptionError):
    """Bad input, rejected before any state change."""

    http_status = 422


class NotAnAssignedApprover(ValidationError):
    http_status = 403


class NotFoundError(RedemptionError):
    http_status = 404


class ConflictError(RedemptionError):
    """Concurrent modification or duplicate write. Safe to retry after re-reading state."""

    http_status = 409


class DuplicateDecision(ConflictError):
    pass


class SettlementInProgress(ConflictError):
    pass


class ExternalExecutionError(RedemptionError):
    """A LedgerExecutor call failed. Retried internally by the settlement retry policy."""

    http_status = 502

    def __init__(self, message: str, *, entity_id: Optional[str] = None, tx_hash: Optional[str] = None):
        super().__init__(message, entity_id=entity_id)
        self.tx_hash = tx_hash


class FatalSettlementError(RedemptionError):
    """Retries exhausted or post-burn transfer failure. Needs manual resolution."""

    http_status = 409

    def __init__(self, message: str, *, entity_id: Optional[str] = None, post_burn: bool = False):
        super().__init__(message, entity_id=entity_id)
        self.post_burn = post_burn


class SchedulingError(RedemptionError):
    http_status = 409


class NoOpenWindow(SchedulingError):
    pass


class WindowSlaBreached(SchedulingError):
    pass
