# Importing every model registers it on Base.metadata (tests, alembic).
from redemption_app.models.approval import ApprovalConfig, ApproverAssignment  # noqa: F401
from redemption_app.models.distribution import Distribution, DistributionRedemption  # noqa: F401
from redemption_app.models.idempotency_key import IdempotencyKeyRecord  # noqa: F401
from redemption_app.models.nav_record import NavRecord  # noqa: F401
from redemption_app.models.redemption_request import RedemptionRequest  # noqa: F401
from redemption_app.models.redemption_window import RedemptionWindow  # noqa: F401
from redemption_app.models.settlement import Settlement, SettlementAttempt  # noqa: F401
