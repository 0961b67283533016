from __future__ import annotations

import logging
import uuid

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from automation.workflows.errors import (
    CycleDetectedError,
    GraphNotFoundError,
    GraphValidationError,
    PersistenceError,
    UnknownNodeTypeError,
    WorkflowEngineError,
)
from automation.workflows.graph import Edge, Graph, Node, find_cycle
from automation.workflows.handlers import NodeHandlerRegistry, default_registry
from automation.workflows.models import WorkflowEdge, WorkflowGraph, WorkflowNode, WorkflowSchedule
from automation.workflows.schedules import REPEATING, create_repeating_schedule, validate_cron
from automation.workflows.schemas import GraphCreate, NodeType


logger = logging.getLogger("automation.workflows.store")


class GraphStore:
    def __init__(self, registry: NodeHandlerRegistry | None = None) -> None:
        self.registry = registry or default_registry()

    def load_graph(self, session: Session, graph_id: uuid.UUID | str) -> Graph:
        row = self.get_graph_row(session, graph_id)
        for item in row.nodes:
            try:
                NodeType(item.node_type)
            except ValueError as exc:
                raise UnknownNodeTypeError(item.node_type) from exc
        graph = Graph.from_model(row)
        self.registry.validate(node.node_type for node in graph.nodes)
        return graph

    def get_graph_row(
        self,
        session: Session,
        graph_id: uuid.UUID | str,
        tenant_id: uuid.UUID | None = None,
    ) -> WorkflowGraph:
        try:
            key = graph_id if isinstance(graph_id, uuid.UUID) else uuid.UUID(str(graph_id))
        except ValueError as exc:
            raise GraphNotFoundError(graph_id) from exc

        stmt = select(WorkflowGraph).where(WorkflowGraph.id == key)
        if tenant_id is not None:
            stmt = stmt.where(WorkflowGraph.tenant_id == tenant_id)
        try:
            row = session.scalar(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError("load graph", exc) from exc
        if row is None:
            raise GraphNotFoundError(key)
        return row

    def validate(self, dto: GraphCreate) -> None:
        self.registry.validate(node.node_type for node in dto.nodes)
        graph = Graph.build(
            [Node(id=str(node.id), node_type=node.node_type) for node in dto.nodes],
            [Edge(source=str(edge.source_node_id), target=str(edge.target_node_id)) for edge in dto.edges],
        )
        cycle_at = find_cycle(graph)
        if cycle_at is not None:
            raise CycleDetectedError(cycle_at)
        if not any(node.node_type.is_trigger for node in dto.nodes):
            raise GraphValidationError("graph needs at least one trigger node")
        for node in dto.nodes:
            if node.node_type is NodeType.TRIGGER_SCHEDULE and node.is_enabled:
                cron = node.config.get("cron")
                if not isinstance(cron, str) or not cron.strip():
                    raise GraphValidationError(f"schedule trigger {node.id} needs a 'cron' expression")
                validate_cron(cron.strip())

    def save_graph(self, session: Session, tenant_id: uuid.UUID, dto: GraphCreate) -> WorkflowGraph:
        self.validate(dto)

        row = WorkflowGraph(
            tenant_id=tenant_id,
            name=dto.name,
            description=dto.description,
            is_enabled=dto.is_enabled,
        )
        row.nodes = [
            WorkflowNode(
                id=node.id,
                node_type=node.node_type.value,
                label=node.label,
                config=node.config,
                is_enabled=node.is_enabled,
                position=index,
            )
            for index, node in enumerate(dto.nodes)
        ]
        row.edges = [
            WorkflowEdge(
                source_node_id=edge.source_node_id,
                source_port=edge.source_port,
                target_node_id=edge.target_node_id,
                target_port=edge.target_port,
                label=edge.label,
                position=index,
            )
            for index, edge in enumerate(dto.edges)
        ]
        try:
            session.add(row)
            session.flush()
            self.sync_schedules(session, row)
            session.commit()
        except WorkflowEngineError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError("save graph", exc) from exc
        session.refresh(row)

        logger.info("workflow.graph_saved", extra={"graph_id": str(row.id), "tenant_id": str(tenant_id)})
        return row

    def sync_schedules(self, session: Session, row: WorkflowGraph) -> list[WorkflowSchedule]:
        """Keep one repeating schedule per enabled ``trigger_schedule`` node with a cron."""
        session.execute(
            delete(WorkflowSchedule).where(
                WorkflowSchedule.graph_id == row.id,
                WorkflowSchedule.kind == REPEATING,
                WorkflowSchedule.node_id.is_not(None),
            )
        )
        schedules: list[WorkflowSchedule] = []
        for node in row.nodes:
            if node.node_type != NodeType.TRIGGER_SCHEDULE.value or not node.is_enabled:
                continue
            cron = (node.config or {}).get("cron")
            if not isinstance(cron, str) or not cron.strip():
                raise GraphValidationError(f"schedule trigger {node.id} needs a 'cron' expression")
            payload = (node.config or {}).get("payload")
            schedules.append(
                create_repeating_schedule(
                    session,
                    tenant_id=row.tenant_id,
                    graph_id=row.id,
                    node_id=node.id,
                    cron_expression=cron.strip(),
                    trigger_payload=payload if isinstance(payload, dict) else {},
                )
            )
        return schedules
