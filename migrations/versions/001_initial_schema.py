"""Create users, projects, escrow ledger, disputes, payment events and reconciliation tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUM_TYPES = (
    "userrole",
    "payoutstatus",
    "projectstatus",
    "milestonestatus",
    "applicationstatus",
    "escrowstatus",
    "escrowmilestonestatus",
    "escrowaction",
    "disputecategory",
    "disputestatus",
    "disputedecision",
    "paymenteventstatus",
    "reconciliationkind",
    "reconciliationstatus",
)


def _money(name: str, nullable: bool = False, zero_default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(12, 2),
        nullable=nullable,
        server_default="0.00" if zero_default else None,
    )


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.func.now(),
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("role", sa.Enum("employer", "freelancer", "admin", name="userrole"), nullable=False),
        sa.Column("display_name", sa.String(128), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("payout_account_id", sa.String(128), nullable=True),
        sa.Column(
            "payout_status",
            sa.Enum("none", "pending", "active", name="payoutstatus"),
            nullable=False,
            server_default="none",
        ),
        _timestamp("created_at"),
    )
    op.create_index("ix_users_payout_account_id", "users", ["payout_account_id"])

    op.create_table(
        "projects",
        sa.Column("project_id", sa.Uuid(), primary_key=True),
        sa.Column("employer_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("freelancer_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        _money("budget"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("deadline", sa.Date(), nullable=True),
        sa.Column("required_skills", JSONB(), nullable=False, server_default="[]"),
        sa.Column(
            "status",
            sa.Enum(
                "open", "active", "in_progress", "completed", "cancelled", "rejected", "disputed",
                name="projectstatus",
            ),
            nullable=False,
            server_default="open",
        ),
        _money("total_paid", zero_default=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        _timestamp("rejected_at", nullable=True),
        sa.Column("rejected_by", sa.Uuid(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("budget > 0", name="ck_projects_budget_positive"),
        sa.CheckConstraint("total_paid >= 0 AND total_paid <= budget", name="ck_projects_total_paid_range"),
    )
    op.create_index("ix_projects_employer_id", "projects", ["employer_id"])
    op.create_index("ix_projects_freelancer_id", "projects", ["freelancer_id"])

    op.create_table(
        "milestones",
        sa.Column("milestone_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "project_id", sa.Uuid(), sa.ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        _money("amount"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "submitted", "approved", "rejected", "paid", "disputed", name="milestonestatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("submission_description", sa.Text(), nullable=True),
        sa.Column("submission_attachments", JSONB(), nullable=True),
        _timestamp("submitted_at", nullable=True),
        sa.Column("feedback", sa.Text(), nullable=True),
        _timestamp("reviewed_at", nullable=True),
        sa.Column("payment_id", sa.String(128), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_milestones_amount_positive"),
    )
    op.create_index("ix_milestones_project_id", "milestones", ["project_id"])

    op.create_table(
        "applications",
        sa.Column("application_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "project_id", sa.Uuid(), sa.ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("applicant_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("proposal", sa.Text(), nullable=False),
        sa.Column("resume_url", sa.String(2048), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "approved", "rejected", name="applicationstatus"),
            nullable=False,
            server_default="pending",
        ),
        _timestamp("created_at"),
        sa.UniqueConstraint("project_id", "applicant_id", name="uq_application_project_applicant"),
    )
    op.create_index("ix_applications_project_id", "applications", ["project_id"])

    op.create_table(
        "escrows",
        sa.Column("escrow_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "project_id",
            sa.Uuid(),
            sa.ForeignKey("projects.project_id", ondelete="RESTRICT"),
            unique=True,
            nullable=False,
        ),
        _money("amount"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column(
            "status",
            sa.Enum("pending", "funded", "released", "refunded", "cancelled", name="escrowstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("payment_intent_id", sa.String(128), unique=True, nullable=True),
        sa.Column("client_secret", sa.String(256), nullable=True),
        _money("released_amount", zero_default=True),
        _money("refunded_amount", zero_default=True),
        _timestamp("created_at"),
        _timestamp("funded_at", nullable=True),
        _timestamp("released_at", nullable=True),
        _timestamp("refunded_at", nullable=True),
        sa.CheckConstraint(
            "released_amount >= 0 AND refunded_amount >= 0 AND released_amount + refunded_amount <= amount",
            name="ck_escrows_conservation",
        ),
    )

    op.create_table(
        "escrow_milestones",
        sa.Column(
            "milestone_id",
            sa.Uuid(),
            sa.ForeignKey("milestones.milestone_id", ondelete="RESTRICT"),
            primary_key=True,
        ),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        _money("amount"),
        sa.Column(
            "status",
            sa.Enum("pending", "released", "refunded", name="escrowmilestonestatus"),
            nullable=False,
            server_default="pending",
        ),
        _timestamp("release_date", nullable=True),
        sa.Column("approved_by", sa.Uuid(), nullable=True),
        _timestamp("approved_at", nullable=True),
        sa.Column("transfer_id", sa.String(128), nullable=True),
    )
    op.create_index("ix_escrow_milestones_escrow_id", "escrow_milestones", ["escrow_id"])

    op.create_table(
        "escrow_refunds",
        sa.Column("refund_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("processor_refund_id", sa.String(128), unique=True, nullable=False),
        _money("amount"),
        sa.Column("reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_escrow_refunds_escrow_id", "escrow_refunds", ["escrow_id"])

    op.create_table(
        "escrow_audit_log",
        sa.Column("escrow_audit_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "action",
            sa.Enum(
                "created", "funded", "released", "refunded", "disputed", "resolved", "settled", "cancelled",
                name="escrowaction",
            ),
            nullable=False,
        ),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        _money("amount"),
        _timestamp("timestamp"),
        sa.Column("metadata", JSONB(), nullable=True),
    )
    op.create_index("ix_escrow_audit_log_escrow_id", "escrow_audit_log", ["escrow_id"])

    op.create_table(
        "disputes",
        sa.Column("dispute_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "project_id", sa.Uuid(), sa.ForeignKey("projects.project_id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column(
            "milestone_id", sa.Uuid(), sa.ForeignKey("milestones.milestone_id", ondelete="RESTRICT"), nullable=True
        ),
        sa.Column("raised_by", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "category",
            sa.Enum("quality", "payment", "deadline", "other", name="disputecategory"),
            nullable=False,
        ),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("evidence", JSONB(), nullable=False, server_default="[]"),
        sa.Column("messages", JSONB(), nullable=False, server_default="[]"),
        sa.Column(
            "status",
            sa.Enum("open", "in_review", "resolved", "rejected", name="disputestatus"),
            nullable=False,
            server_default="open",
        ),
        sa.Column("project_prior_status", sa.String(32), nullable=False),
        sa.Column("milestone_prior_status", sa.String(32), nullable=True),
        sa.Column(
            "decision",
            sa.Enum("employer_favor", "freelancer_favor", "compromise", "refund", name="disputedecision"),
            nullable=True,
        ),
        _money("refund_amount", nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.Uuid(), nullable=True),
        _timestamp("resolved_at", nullable=True),
        sa.Column("refund_reference", sa.String(128), nullable=True),
        sa.Column("settlement_reference", sa.String(128), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_disputes_project_id", "disputes", ["project_id"])
    # At most one unresolved dispute per project.
    op.create_index(
        "uq_disputes_one_active_per_project",
        "disputes",
        ["project_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('open', 'in_review')"),
    )

    op.create_table(
        "payment_events",
        sa.Column("payment_event_id", sa.Uuid(), primary_key=True),
        sa.Column("event_id", sa.String(128), unique=True, nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("payload", JSONB(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("received", "processed", "ignored", "failed", name="paymenteventstatus"),
            nullable=False,
            server_default="received",
        ),
        sa.Column("error", sa.Text(), nullable=True),
        _timestamp("received_at"),
        _timestamp("processed_at", nullable=True),
    )

    op.create_table(
        "reconciliation_records",
        sa.Column("record_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "kind", sa.Enum("release", "refund", "settlement", "late_funding", name="reconciliationkind"), nullable=False
        ),
        sa.Column(
            "status",
            sa.Enum("open", "resolved", name="reconciliationstatus"),
            nullable=False,
            server_default="open",
        ),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("escrow_id", sa.Uuid(), nullable=False),
        sa.Column("milestone_id", sa.Uuid(), nullable=True),
        sa.Column("dispute_id", sa.Uuid(), nullable=True),
        sa.Column("processor_reference", sa.String(128), nullable=False),
        _money("amount"),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("resolved_at", nullable=True),
    )
    op.create_index("ix_reconciliation_records_project_id", "reconciliation_records", ["project_id"])


def downgrade() -> None:
    op.drop_table("reconciliation_records")
    op.drop_table("payment_events")
    op.drop_table("disputes")
    op.drop_table("escrow_audit_log")
    op.drop_table("escrow_refunds")
    op.drop_table("escrow_milestones")
    op.drop_table("escrows")
    op.drop_table("applications")
    op.drop_table("milestones")
    op.drop_table("projects")
    op.drop_table("users")
    for name in ENUM_TYPES:
        op.execute(f"DROP TYPE IF EXISTS {name}")
