"""Initial schema: users, visa requests, proposals, escrows, cases, notifications.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Enum types are created up front because several tables share them
ENUMS: dict[str, tuple[str, ...]] = {
    "userrole": ("client", "agent", "admin"),
    "userstatus": ("active", "suspended", "deactivated"),
    "priority": ("low", "medium", "high", "urgent"),
    "visarequeststatus": ("pending", "in-progress", "completed", "rejected", "cancelled"),
    "proposalstatus": ("pending", "accepted", "rejected", "withdrawn"),
    "escrowstatus": (
        "pending", "deposited", "in_progress", "disputed", "completed", "refunded", "cancelled",
    ),
    "paymentmethod": ("stripe", "paypal", "bank_transfer", "other"),
    "escrowmilestonestatus": ("pending", "completed", "disputed"),
    "disputestatus": ("open", "resolved", "escalated"),
    "disputeoutcome": ("resume", "release", "refund"),
    "casestatus": ("active", "completed", "cancelled", "disputed", "on-hold"),
    "casemilestonestatus": ("pending", "in-progress", "completed", "approved", "rejected"),
    "notificationkind": (
        "message", "proposal", "visa_request", "payment", "review", "system", "document", "status_update",
    ),
    "notificationcategory": ("info", "success", "warning", "error"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _uuid_fk(target: str, ondelete: str = "RESTRICT") -> sa.ForeignKey:
    return sa.ForeignKey(target, ondelete=ondelete)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _money(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("public_key", sa.String(128), nullable=False, unique=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("email", sa.String(254), nullable=False, unique=True),
        sa.Column("role", _enum("userrole"), nullable=False),
        sa.Column("status", _enum("userstatus"), nullable=False, server_default="active"),
        _ts("created_at"),
    )

    op.create_table(
        "visa_requests",
        sa.Column("request_id", sa.Uuid(), primary_key=True),
        sa.Column("client_id", sa.Uuid(), _uuid_fk("users.user_id"), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("visa_type", sa.String(32), nullable=False),
        sa.Column("country", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("budget", sa.String(32), nullable=False),
        sa.Column("timeline", sa.String(32), nullable=False),
        sa.Column("priority", _enum("priority"), nullable=False, server_default="medium"),
        sa.Column("status", _enum("visarequeststatus"), nullable=False, server_default="pending"),
        sa.Column("proposal_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_visa_requests_client_id", "visa_requests", ["client_id"])

    op.create_table(
        "proposals",
        sa.Column("proposal_id", sa.Uuid(), primary_key=True),
        sa.Column("request_id", sa.Uuid(), _uuid_fk("visa_requests.request_id"), nullable=False),
        sa.Column("agent_id", sa.Uuid(), _uuid_fk("users.user_id"), nullable=False),
        _money("budget"),
        sa.Column("timeline", sa.String(32), nullable=False),
        sa.Column("cover_letter", sa.Text(), nullable=False),
        sa.Column("proposal_text", sa.Text(), nullable=False),
        sa.Column("status", _enum("proposalstatus"), nullable=False, server_default="pending"),
        _ts("submitted_at"),
        _ts("responded_at", nullable=True),
        sa.UniqueConstraint("request_id", "agent_id", name="uq_proposal_request_agent"),
    )
    op.create_index("ix_proposals_request_id", "proposals", ["request_id"])
    op.create_index("ix_proposals_agent_id", "proposals", ["agent_id"])

    op.create_table(
        "proposal_milestones",
        sa.Column("proposal_milestone_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "proposal_id", sa.Uuid(), _uuid_fk("proposals.proposal_id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        _money("amount"),
        _ts("due_date"),
        sa.Column("deliverables", postgresql.JSONB(), nullable=False, server_default="[]"),
    )
    op.create_index("ix_proposal_milestones_proposal_id", "proposal_milestones", ["proposal_id"])

    op.create_table(
        "escrows",
        sa.Column("escrow_id", sa.Uuid(), primary_key=True),
        sa.Column("client_id", sa.Uuid(), _uuid_fk("users.user_id"), nullable=False),
        sa.Column("agent_id", sa.Uuid(), _uuid_fk("users.user_id"), nullable=False),
        sa.Column("proposal_id", sa.Uuid(), _uuid_fk("proposals.proposal_id"), nullable=False, unique=True),
        sa.Column("visa_request_id", sa.Uuid(), _uuid_fk("visa_requests.request_id"), nullable=False),
        _money("amount"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("status", _enum("escrowstatus"), nullable=False, server_default="pending"),
        sa.Column("payment_method", _enum("paymentmethod"), nullable=False),
        sa.Column("payment_intent_id", sa.String(128), nullable=True),
        _money("fee_platform"),
        _money("fee_payment"),
        _money("fee_total"),
        _money("refund_amount", nullable=True),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("refund_id", sa.String(128), nullable=True),
        _ts("refunded_at", nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_escrows_client_id", "escrows", ["client_id"])
    op.create_index("ix_escrows_agent_id", "escrows", ["agent_id"])
    op.create_index("ix_escrows_visa_request_id", "escrows", ["visa_request_id"])
    op.create_index("ix_escrows_status", "escrows", ["status"])
    op.create_index("ix_escrows_payment_intent_id", "escrows", ["payment_intent_id"])

    op.create_table(
        "escrow_milestones",
        sa.Column("milestone_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), _uuid_fk("escrows.escrow_id"), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        _money("amount"),
        sa.Column("status", _enum("escrowmilestonestatus"), nullable=False, server_default="pending"),
        _ts("completed_at", nullable=True),
        sa.Column("evidence", postgresql.JSONB(), nullable=False, server_default="[]"),
    )
    op.create_index("ix_escrow_milestones_escrow_id", "escrow_milestones", ["escrow_id"])

    op.create_table(
        "escrow_disputes",
        sa.Column("dispute_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), _uuid_fk("escrows.escrow_id"), nullable=False, unique=True),
        sa.Column("reason", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("evidence", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("created_by", sa.Uuid(), _uuid_fk("users.user_id"), nullable=False),
        sa.Column("status", _enum("disputestatus"), nullable=False, server_default="open"),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("outcome", _enum("disputeoutcome"), nullable=True),
        sa.Column("resolved_by", sa.Uuid(), _uuid_fk("users.user_id"), nullable=True),
        _ts("resolved_at", nullable=True),
        _ts("created_at"),
    )

    op.create_table(
        "escrow_timeline",
        sa.Column("entry_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), _uuid_fk("escrows.escrow_id"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("event", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("by", sa.Uuid(), _uuid_fk("users.user_id"), nullable=False),
        _ts("date"),
        sa.Column("data", postgresql.JSONB(), nullable=True),
        sa.UniqueConstraint("escrow_id", "sequence", name="uq_escrow_timeline_sequence"),
    )
    op.create_index("ix_escrow_timeline_escrow_id", "escrow_timeline", ["escrow_id"])

    op.create_table(
        "cases",
        sa.Column("case_id", sa.Uuid(), primary_key=True),
        sa.Column("request_id", sa.Uuid(), _uuid_fk("visa_requests.request_id"), nullable=False),
        sa.Column("proposal_id", sa.Uuid(), _uuid_fk("proposals.proposal_id"), nullable=False, unique=True),
        sa.Column("escrow_id", sa.Uuid(), _uuid_fk("escrows.escrow_id"), nullable=True, unique=True),
        sa.Column("client_id", sa.Uuid(), _uuid_fk("users.user_id"), nullable=False),
        sa.Column("agent_id", sa.Uuid(), _uuid_fk("users.user_id"), nullable=False),
        sa.Column("status", _enum("casestatus"), nullable=False, server_default="active"),
        sa.Column("priority", _enum("priority"), nullable=False, server_default="medium"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_milestone", sa.Integer(), nullable=False, server_default="1"),
        _money("total_amount"),
        _money("paid_amount"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("client_notes", sa.Text(), nullable=True),
        sa.Column("agent_notes", sa.Text(), nullable=True),
        _ts("start_date"),
        _ts("estimated_completion_date"),
        _ts("actual_completion_date", nullable=True),
        _ts("last_activity"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _ts("created_at"),
    )
    op.create_index("ix_cases_request_id", "cases", ["request_id"])
    op.create_index("ix_cases_client_id", "cases", ["client_id"])
    op.create_index("ix_cases_agent_id", "cases", ["agent_id"])
    op.create_index("ix_cases_status", "cases", ["status"])

    op.create_table(
        "case_milestones",
        sa.Column("case_milestone_id", sa.Uuid(), primary_key=True),
        sa.Column("case_id", sa.Uuid(), _uuid_fk("cases.case_id"), nullable=False),
        sa.Column(
            "escrow_milestone_id", sa.Uuid(), _uuid_fk("escrow_milestones.milestone_id"),
            nullable=True, unique=True,
        ),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        _money("amount"),
        sa.Column("status", _enum("casemilestonestatus"), nullable=False, server_default="pending"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("due_date"),
        _ts("started_at", nullable=True),
        _ts("completed_at", nullable=True),
        _ts("approved_at", nullable=True),
        sa.Column("deliverables", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("submitted_files", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("client_feedback", sa.Text(), nullable=True),
        sa.Column("agent_notes", sa.Text(), nullable=True),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_case_milestones_case_id", "case_milestones", ["case_id"])

    op.create_table(
        "case_documents",
        sa.Column("document_id", sa.Uuid(), primary_key=True),
        sa.Column("case_id", sa.Uuid(), _uuid_fk("cases.case_id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("uploaded_by", sa.Uuid(), _uuid_fk("users.user_id"), nullable=False),
        _ts("uploaded_at"),
    )
    op.create_index("ix_case_documents_case_id", "case_documents", ["case_id"])

    op.create_table(
        "case_timeline",
        sa.Column("entry_id", sa.Uuid(), primary_key=True),
        sa.Column("case_id", sa.Uuid(), _uuid_fk("cases.case_id"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("performed_by", sa.Uuid(), _uuid_fk("users.user_id"), nullable=False),
        _ts("performed_at"),
        sa.Column("data", postgresql.JSONB(), nullable=True),
        sa.UniqueConstraint("case_id", "sequence", name="uq_case_timeline_sequence"),
    )
    op.create_index("ix_case_timeline_case_id", "case_timeline", ["case_id"])

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.Uuid(), primary_key=True),
        sa.Column("recipient_id", sa.Uuid(), _uuid_fk("users.user_id", ondelete="CASCADE"), nullable=False),
        sa.Column("sender_id", sa.Uuid(), _uuid_fk("users.user_id", ondelete="SET NULL"), nullable=True),
        sa.Column("type", _enum("notificationkind"), nullable=False),
        sa.Column("event", sa.String(64), nullable=False),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("message", sa.String(500), nullable=False),
        sa.Column("data", postgresql.JSONB(), nullable=True),
        sa.Column("link", sa.String(2048), nullable=True),
        sa.Column("priority", _enum("priority"), nullable=False, server_default="medium"),
        sa.Column("category", _enum("notificationcategory"), nullable=False, server_default="info"),
        sa.Column("channels", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("read_at", nullable=True),
        sa.Column("email_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
    )
    op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"])
    op.create_index("ix_notifications_created_at", "notifications", ["created_at"])


def downgrade() -> None:
    for table in (
        "notifications",
        "case_timeline",
        "case_documents",
        "case_milestones",
        "cases",
        "escrow_timeline",
        "escrow_disputes",
        "escrow_milestones",
        "escrows",
        "proposal_milestones",
        "proposals",
        "visa_requests",
        "users",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
