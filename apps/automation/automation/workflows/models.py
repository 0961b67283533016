from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from automation.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowGraph(Base):
    __tablename__ = "workflow_graph"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    nodes: Mapped[list[WorkflowNode]] = relationship(
        "WorkflowNode",
        back_populates="graph",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="WorkflowNode.position",
    )
    edges: Mapped[list[WorkflowEdge]] = relationship(
        "WorkflowEdge",
        back_populates="graph",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="WorkflowEdge.position",
    )


class WorkflowNode(Base):
    __tablename__ = "workflow_node"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    graph_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("workflow_graph.id", ondelete="CASCADE"),
        nullable=False,
    )
    node_type: Mapped[str] = mapped_column(String(64), nullable=False)
    label: Mapped[str] = mapped_column(Text, nullable=False, default="")
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    graph: Mapped[WorkflowGraph] = relationship("WorkflowGraph", back_populates="nodes")


class WorkflowEdge(Base):
    __tablename__ = "workflow_edge"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    graph_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("workflow_graph.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_node_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    source_port: Mapped[str] = mapped_column(String(64), nullable=False, default="output", server_default="output")
    target_node_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    target_port: Mapped[str] = mapped_column(String(64), nullable=False, default="input", server_default="input")
    label: Mapped[str | None] = mapped_column(String(64), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    graph: Mapped[WorkflowGraph] = relationship("WorkflowGraph", back_populates="edges")


class WorkflowSchedule(Base):
    """A repeating cron schedule or a one-shot delayed action for a graph."""

    __tablename__ = "workflow_schedule"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    graph_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("workflow_graph.id", ondelete="CASCADE"),
        nullable=False,
    )
    node_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="repeating", server_default="repeating")
    cron_expression: Mapped[str | None] = mapped_column(String(128), nullable=True)
    trigger_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    run_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    source_event_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


Index("ix_workflow_graph_tenant_id", WorkflowGraph.tenant_id)
Index("ix_workflow_node_graph_id", WorkflowNode.graph_id)
Index("ix_workflow_edge_graph_id", WorkflowEdge.graph_id)
Index("ix_workflow_schedule_due", WorkflowSchedule.is_active, WorkflowSchedule.next_run_at)
Index("ix_workflow_schedule_entity", WorkflowSchedule.tenant_id, WorkflowSchedule.entity_type, WorkflowSchedule.entity_id)
