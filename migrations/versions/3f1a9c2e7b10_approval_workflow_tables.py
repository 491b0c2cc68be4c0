"""approval workflow tables: chains, levels, requests, steps, user directory

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

revision = "3f1a9c2e7b10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("role", sa.String(50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("idx_users_tenant", "users", ["tenant_id"])
    op.create_index("idx_users_tenant_role", "users", ["tenant_id", "role"])

    op.create_table(
        "approval_chains",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("conditions", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "entity_type IN ('CONTRACT','QUOTE')",
            name="chk_approval_chain_entity_type",
        ),
    )
    op.create_index(
        "idx_approval_chains_tenant_entity", "approval_chains", ["tenant_id", "entity_type"]
    )
    op.create_index(
        "uq_approval_chains_default",
        "approval_chains",
        ["tenant_id", "entity_type"],
        unique=True,
        postgresql_where=sa.text("is_default"),
    )

    op.create_table(
        "approval_chain_levels",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("chain_id", sa.String(36), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("approver_type", sa.String(50), nullable=False),
        sa.Column("approver_user_id", sa.String(36), nullable=True),
        sa.Column("approver_role_id", sa.String(100), nullable=True),
        sa.Column("min_approvers", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("allow_delegation", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("threshold_min", sa.Numeric(15, 2), nullable=True),
        sa.Column("threshold_max", sa.Numeric(15, 2), nullable=True),
        sa.Column("timeout_hours", sa.Integer(), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["chain_id"], ["approval_chains.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chain_id", "level", name="uq_chain_level_number"),
        sa.CheckConstraint("level > 0", name="chk_chain_level_positive"),
        sa.CheckConstraint("min_approvers > 0", name="chk_chain_level_min_approvers"),
        sa.CheckConstraint(
            "approver_type IN ('USER','ROLE','MANAGER','ORGANIZATION_HEAD')",
            name="chk_chain_level_approver_type",
        ),
    )

    op.create_table(
        "approval_requests",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("chain_id", sa.String(36), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(36), nullable=False),
        sa.Column("entity_value", sa.Numeric(15, 2), nullable=True),
        sa.Column("requester_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(50), nullable=False, server_default="PENDING"),
        sa.Column("current_level", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("current_level > 0", name="chk_request_level_positive"),
        sa.CheckConstraint(
            "status IN ('PENDING','IN_PROGRESS','APPROVED','REJECTED','CANCELLED','EXPIRED')",
            name="chk_approval_request_status",
        ),
    )
    op.create_index(
        "idx_approval_requests_chain_status", "approval_requests", ["chain_id", "status"]
    )
    op.create_index("idx_approval_requests_status", "approval_requests", ["status"])
    op.create_index(
        "uq_approval_requests_open_entity",
        "approval_requests",
        ["tenant_id", "entity_type", "entity_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('PENDING', 'IN_PROGRESS')"),
    )

    op.create_table(
        "approval_steps",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("request_id", sa.String(36), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("approver_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(50), nullable=False, server_default="PENDING"),
        sa.Column("action", sa.String(50), nullable=False, server_default="SUBMIT"),
        sa.Column("delegated_from", sa.String(36), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_overdue", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("escalated_from", sa.String(36), nullable=True),
        sa.ForeignKeyConstraint(["request_id"], ["approval_requests.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("level > 0", name="chk_step_level_positive"),
        sa.CheckConstraint(
            "status IN ('PENDING','APPROVED','REJECTED','CANCELLED')",
            name="chk_approval_step_status",
        ),
    )
    op.create_index("idx_approval_steps_approver", "approval_steps", ["approver_id", "status"])
    op.create_index(
        "idx_approval_steps_request_level", "approval_steps", ["request_id", "level"]
    )


def downgrade() -> None:
    op.drop_table("approval_steps")
    op.drop_table("approval_requests")
    op.drop_table("approval_chain_levels")
    op.drop_table("approval_chains")
    op.drop_table("users")
