"""redemption core tables

Revision ID: 0001_redemption_core
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_redemption_core"
down_revision = None
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=True)
AMOUNT = sa.Numeric(28, 8)
TS = sa.DateTime(timezone=True)


def upgrade():
    op.create_table(
        "approval_configs",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("resource_key", sa.String(length=128), nullable=False, unique=True),
        sa.Column("consensus_type", sa.String(length=16), nullable=False, server_default=sa.text("'threshold'")),
        sa.Column("required_approvals", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("eligible_roles", sa.JSON(), nullable=False),
        sa.Column("auto_approve_threshold", AMOUNT, nullable=True),
        sa.Column("requires_all_approvers", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", TS, nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "distributions",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("investor_id", sa.String(length=128), nullable=False),
        sa.Column("token_type", sa.String(length=64), nullable=False),
        sa.Column("token_amount", AMOUNT, nullable=False),
        sa.Column("remaining_amount", AMOUNT, nullable=False),
        sa.Column("fully_redeemed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("to_address", sa.String(length=128), nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint("remaining_amount >= 0", name="ck_distribution_remaining_nonnegative"),
    )
    op.create_index("ix_distributions_investor_id", "distributions", ["investor_id"])

    op.create_table(
        "redemption_windows",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("token_type", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=True),
        sa.Column("submission_start", TS, nullable=False),
        sa.Column("submission_end", TS, nullable=False),
        sa.Column("start", TS, nullable=False),
        sa.Column("end", TS, nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'upcoming'")),
        sa.Column("nav", AMOUNT, nullable=True),
        sa.Column("nav_date", TS, nullable=True),
        sa.Column("max_redemption_amount", AMOUNT, nullable=True),
        sa.Column("enable_pro_rata_distribution", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("queue_unprocessed_requests", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("allocation_precision", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("current_requests", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_request_value", AMOUNT, nullable=False, server_default=sa.text("0")),
        sa.Column("approved_value", AMOUNT, nullable=False, server_default=sa.text("0")),
        sa.Column("queued_value", AMOUNT, nullable=False, server_default=sa.text("0")),
        sa.Column("rejected_value", AMOUNT, nullable=False, server_default=sa.text("0")),
        sa.Column("processing_started_at", TS, nullable=True),
        sa.Column("completed_at", TS, nullable=True),
        sa.Column("sla_alerted_at", TS, nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint("submission_end > submission_start", name="ck_window_submission_period"),
        sa.CheckConstraint("allocation_precision >= 0", name="ck_window_allocation_precision"),
    )
    op.create_index("ix_window_token_status", "redemption_windows", ["token_type", "status"])

    op.create_table(
        "redemption_requests",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("investor_id", sa.String(length=128), nullable=True),
        sa.Column("investor_name", sa.String(length=256), nullable=True),
        sa.Column("is_bulk_redemption", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("investor_count", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("token_amount", AMOUNT, nullable=False),
        sa.Column("requested_amount", AMOUNT, nullable=False),
        sa.Column("token_type", sa.String(length=64), nullable=False),
        sa.Column("conversion_rate", AMOUNT, nullable=False),
        sa.Column("source_wallet_address", sa.String(length=128), nullable=False),
        sa.Column("destination_wallet_address", sa.String(length=128), nullable=False),
        sa.Column("redemption_type", sa.String(length=16), nullable=False, server_default=sa.text("'standard'")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'draft'")),
        sa.Column("required_approvals", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "approval_config_id",
            UUID,
            sa.ForeignKey("approval_configs.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("rejected_by", sa.String(length=128), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column(
            "window_id",
            UUID,
            sa.ForeignKey("redemption_windows.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("carried_from_window_id", UUID, nullable=True),
        sa.Column(
            "parent_request_id",
            UUID,
            sa.ForeignKey("redemption_requests.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "distribution_id",
            UUID,
            sa.ForeignKey("distributions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("nav_used", AMOUNT, nullable=True),
        sa.Column("nav_date", TS, nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("submitted_at", TS, nullable=True),
        sa.Column("approved_at", TS, nullable=True),
        sa.Column("rejected_at", TS, nullable=True),
        sa.Column("settled_at", TS, nullable=True),
        sa.Column("cancelled_at", TS, nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint("token_amount > 0", name="ck_redemption_token_amount_positive"),
        sa.CheckConstraint("required_approvals >= 1", name="ck_redemption_required_approvals"),
    )
    op.create_index("ix_redemption_requests_investor_id", "redemption_requests", ["investor_id"])
    op.create_index("ix_redemption_status", "redemption_requests", ["status"])
    op.create_index("ix_redemption_window_status", "redemption_requests", ["window_id", "status"])
    op.create_index("ix_redemption_token_type", "redemption_requests", ["token_type"])

    op.create_table(
        "approver_assignments",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column(
            "request_id",
            UUID,
            sa.ForeignKey("redemption_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("approver_id", sa.String(length=128), nullable=False),
        sa.Column("role", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("signature", sa.String(length=256), nullable=True),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("late_decision", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("decided_at", TS, nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("request_id", "approver_id", name="uq_assignment_request_approver"),
    )
    op.create_index("ix_assignment_approver_status", "approver_assignments", ["approver_id", "status"])

    op.create_table(
        "settlements",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column(
            "request_id",
            UUID,
            sa.ForeignKey("redemption_requests.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("settlement_type", sa.String(length=16), nullable=False),
        sa.Column("token_amount", AMOUNT, nullable=False),
        sa.Column("nav_used", AMOUNT, nullable=False),
        sa.Column("nav_date", TS, nullable=True),

        sa.Column("burn_status", sa.String(length=16), nullable=False, server_default=sa.text("'not_started'")),
        sa.Column("burn_tx_hash", sa.String(length=128), nullable=True),
        sa.Column("burn_gas_used", sa.Integer(), nullable=True),
        sa.Column("burn_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("burn_failures", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("burn_submitted_at", TS, nullable=True),
        sa.Column("burn_confirmed_at", TS, nullable=True),
        sa.Column("burn_last_error", sa.Text(), nullable=True),

        sa.Column("transfer_status", sa.String(length=16), nullable=False, server_default=sa.text("'not_started'")),
        sa.Column("transfer_tx_hash", sa.String(length=128), nullable=True),
        sa.Column("transfer_amount", AMOUNT, nullable=False),
        sa.Column("transfer_currency", sa.String(length=16), nullable=False),
        sa.Column("transfer_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("transfer_failures", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("transfer_submitted_at", TS, nullable=True),
        sa.Column("transfer_confirmed_at", TS, nullable=True),
        sa.Column("transfer_last_error", sa.Text(), nullable=True),

        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_retry_at", TS, nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("lease_owner", sa.String(64), nullable=True),
        sa.Column("lease_expires_at", TS, nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("completed_at", TS, nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.UniqueConstraint("request_id", name="uq_settlement_request"),
    )
    op.create_index("ix_settlement_status", "settlements", ["status"])

    op.create_table(
        "settlement_attempts",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column(
            "settlement_id",
            UUID,
            sa.ForeignKey("settlements.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("leg", sa.String(length=16), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("tx_hash", sa.String(length=128), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_settlement_attempt_leg", "settlement_attempts", ["settlement_id", "leg"])

    op.create_table(
        "distribution_redemptions",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column(
            "distribution_id",
            UUID,
            sa.ForeignKey("distributions.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "redemption_request_id",
            UUID,
            sa.ForeignKey("redemption_requests.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("amount_redeemed", AMOUNT, nullable=False),
        sa.Column("remaining_after", AMOUNT, nullable=False),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("amount_redeemed > 0", name="ck_distribution_redemption_positive"),
    )
    op.create_index("ix_distribution_redemption_dist", "distribution_redemptions", ["distribution_id"])

    op.create_table(
        "nav_records",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("token_type", sa.String(length=64), nullable=False),
        sa.Column("nav", AMOUNT, nullable=False),
        sa.Column("nav_date", TS, nullable=False),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("validated", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("validated_by", sa.String(length=128), nullable=True),
        sa.Column("validated_at", TS, nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_nav_token_date", "nav_records", ["token_type", "nav_date"])

    op.create_table(
        "idempotency_key_records",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("principal_id", sa.String(length=128), nullable=False),
        sa.Column("endpoint_key", sa.String(length=128), nullable=False),
        sa.Column("idem_key", sa.String(length=128), nullable=False),
        sa.Column("request_hash", sa.String(length=128), nullable=False),
        sa.Column("response_status", sa.Integer(), nullable=False, server_default=sa.text("200")),
        sa.Column("response_json", sa.JSON(), nullable=False),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("principal_id", "endpoint_key", "idem_key", name="uq_idem_scope"),
    )
    op.create_index("ix_idem_lookup", "idempotency_key_records", ["principal_id", "endpoint_key"])


def downgrade():
    op.drop_index("ix_idem_lookup", table_name="idempotency_key_records")
    op.drop_table("idempotency_key_records")
    op.drop_index("ix_nav_token_date", table_name="nav_records")
    op.drop_table("nav_records")
    op.drop_index("ix_distribution_redemption_dist", table_name="distribution_redemptions")
    op.drop_table("distribution_redemptions")
    op.drop_index("ix_settlement_attempt_leg", table_name="settlement_attempts")
    op.drop_table("settlement_attempts")
    op.drop_index("ix_settlement_status", table_name="settlements")
    op.drop_table("settlements")
    op.drop_index("ix_assignment_approver_status", table_name="approver_assignments")
    op.drop_table("approver_assignments")
    op.drop_index("ix_redemption_token_type", table_name="redemption_requests")
    op.drop_index("ix_redemption_window_status", table_name="redemption_requests")
    op.drop_index("ix_redemption_status", table_name="redemption_requests")
    op.drop_index("ix_redemption_requests_investor_id", table_name="redemption_requests")
    op.drop_table("redemption_requests")
    op.drop_index("ix_window_token_status", table_name="redemption_windows")
    op.drop_table("redemption_windows")
    op.drop_index("ix_distributions_investor_id", table_name="distributions")
    op.drop_table("distributions")
    op.drop_table("approval_configs")
