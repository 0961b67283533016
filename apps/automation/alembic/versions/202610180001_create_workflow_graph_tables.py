"""create workflow graph tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "workflow_graph",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_graph_tenant_id", "workflow_graph", ["tenant_id"], unique=False)

    op.create_table(
        "workflow_node",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("graph_id", sa.Uuid(), nullable=False),
        sa.Column("node_type", sa.String(length=64), nullable=False),
        sa.Column("label", sa.Text(), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["graph_id"], ["workflow_graph.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_node_graph_id", "workflow_node", ["graph_id"], unique=False)

    op.create_table(
        "workflow_edge",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("graph_id", sa.Uuid(), nullable=False),
        sa.Column("source_node_id", sa.Uuid(), nullable=False),
        sa.Column("source_port", sa.String(length=64), nullable=False, server_default="output"),
        sa.Column("target_node_id", sa.Uuid(), nullable=False),
        sa.Column("target_port", sa.String(length=64), nullable=False, server_default="input"),
        sa.Column("label", sa.String(length=64), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["graph_id"], ["workflow_graph.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_edge_graph_id", "workflow_edge", ["graph_id"], unique=False)

    op.create_table(
        "workflow_schedule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("graph_id", sa.Uuid(), nullable=False),
        sa.Column("node_id", sa.Uuid(), nullable=True),
        sa.Column("kind", sa.String(length=16), nullable=False, server_default="repeating"),
        sa.Column("cron_expression", sa.String(length=128), nullable=True),
        sa.Column("trigger_payload", sa.JSON(), nullable=False),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("run_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("entity_type", sa.String(length=64), nullable=True),
        sa.Column("entity_id", sa.String(length=128), nullable=True),
        sa.Column("source_event_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["graph_id"], ["workflow_graph.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_schedule_due", "workflow_schedule", ["is_active", "next_run_at"], unique=False)
    op.create_index(
        "ix_workflow_schedule_entity",
        "workflow_schedule",
        ["tenant_id", "entity_type", "entity_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_workflow_schedule_entity", table_name="workflow_schedule")
    op.drop_index("ix_workflow_schedule_due", table_name="workflow_schedule")
    op.drop_table("workflow_schedule")

    op.drop_index("ix_workflow_edge_graph_id", table_name="workflow_edge")
    op.drop_table("workflow_edge")

    op.drop_index("ix_workflow_node_graph_id", table_name="workflow_node")
    op.drop_table("workflow_node")

    op.drop_index("ix_workflow_graph_tenant_id", table_name="workflow_graph")
    op.drop_table("workflow_graph")
