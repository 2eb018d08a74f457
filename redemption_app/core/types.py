#redemption_app/core/types.py
from __future__ import annotations
from enum import Enum


class RedemptionType(str, Enum):
    standard = "standard"
    interval = "interval"


class RedemptionStatus(str, Enum):
    draft = "draft"
    pending_approval = "pending_approval"
    approved = "approved"
    rejected = "rejected"
    queued = "queued"
    processing = "processing"
    settled = "settled"
    failed = "failed"
    cancelled = "cancelled"


class ConsensusType(str, Enum):
    all = "all"
    majority = "majority"
    threshold = "threshold"


class AssignmentStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class Decision(str, Enum):
    approve = "approve"
    reject = "reject"


class LegStatus(str, Enum):
    not_started = "not_started"
    pending = "pending"
    confirmed = "confirmed"
    failed = "failed"


class LegKind(str, Enum):
    burn = "burn"
    transfer = "transfer"


class SettlementStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    failed_post_burn = "failed_post_burn"


class WindowStatus(str, Enum):
    upcoming = "upcoming"
    open = "open"
    closed = "closed"
    processing = "processing"
    completed = "completed"


class NotificationEvent(str, Enum):
    REQUEST_SUBMITTED = "REQUEST_SUBMITTED"
    REQUEST_APPROVED = "REQUEST_APPROVED"
    REQUEST_REJECTED = "REQUEST_REJECTED"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"
    REQUEST_QUEUED = "REQUEST_QUEUED"
    SETTLEMENT_COMPLETED = "SETTLEMENT_COMPLETED"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"
    WINDOW_OPENED = "WINDOW_OPENED"
    WINDOW_CLOSED = "WINDOW_CLOSED"
    WINDOW_PRICED = "WINDOW_PRICED"
    WINDOW_COMPLETED = "WINDOW_COMPLETED"
    WINDOW_SLA_BREACHED = "WINDOW_SLA_BREACHED"


TERMINAL_REQUEST_STATUSES = frozenset(
    {
        RedemptionStatus.settled,
        RedemptionStatus.failed,
        RedemptionStatus.rejected,
        RedemptionStatus.cancelled,
    }
)

TERMINAL_SETTLEMENT_STATUSES = frozenset(
    {
        SettlementStatus.completed,
        SettlementStatus.failed,
        SettlementStatus.failed_post_burn,
    }
)


class Verdict(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class DecisionOutcome(str, Enum):
    recorded = "recorded"
    finalized = "finalized"
    already_finalized = "already_finalized"
