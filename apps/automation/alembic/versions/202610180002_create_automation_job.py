"""create automation job

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "automation_job",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_type", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="Pending"),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("dedupe_key", sa.String(length=255), nullable=True),
        sa.Column("claimed_by", sa.String(length=128), nullable=True),
        sa.Column("claim_token", sa.Uuid(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedupe_key", name="uq_automation_job_dedupe_key"),
    )
    op.create_index(
        "ix_automation_job_status_created_at",
        "automation_job",
        ["status", "created_at"],
        unique=False,
    )
    op.create_index("ix_automation_job_tenant_id", "automation_job", ["tenant_id"], unique=False)
    op.create_index("ix_automation_job_lease_expires_at", "automation_job", ["lease_expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_automation_job_lease_expires_at", table_name="automation_job")
    op.drop_index("ix_automation_job_tenant_id", table_name="automation_job")
    op.drop_index("ix_automation_job_status_created_at", table_name="automation_job")
    op.drop_table("automation_job")
