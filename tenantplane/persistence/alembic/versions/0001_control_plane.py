"""control plane catalog

Revision ID: 0001_control_plane
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_control_plane"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tenant_registry",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("external_org_id", sa.String(), nullable=True),
        sa.Column("connection_descriptor", sa.Text(), nullable=True),
        sa.Column("database_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("plan", sa.String(length=32), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("slug", name="uq_tenant_registry_slug"),
        # NULLs never collide, so unlinked tenants can coexist.
        sa.UniqueConstraint("external_org_id", name="uq_tenant_registry_external_org"),
    )
    op.create_index("ix_tenant_registry_status", "tenant_registry", ["status"])

    op.create_table(
        "global_users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("external_user_id", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenant_registry.id"), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="member"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("email", name="uq_global_users_email"),
        sa.UniqueConstraint("external_user_id", name="uq_global_users_external_user"),
    )
    op.create_index("ix_global_users_tenant_id", "global_users", ["tenant_id"])

    op.create_table(
        "idempotency_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("idem_key", sa.String(length=512), nullable=False),
        sa.Column("operation", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("result_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("idem_key", name="uq_idempotency_records_key"),
    )
    # Retention purge and stuck-row scans both filter on status then age.
    op.create_index(
        "ix_idempotency_records_status_created",
        "idempotency_records",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_idempotency_records_status_created", table_name="idempotency_records")
    op.drop_table("idempotency_records")
    op.drop_index("ix_global_users_tenant_id", table_name="global_users")
    op.drop_table("global_users")
    op.drop_index("ix_tenant_registry_status", table_name="tenant_registry")
    op.drop_table("tenant_registry")
