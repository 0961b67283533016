from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from automation.api.errors import engine_error_response, error_response, parse_tenant_id
from automation.core.database import get_db
from automation.jobs.models import WORKFLOW_RUN
from automation.jobs.queue import add_job
from automation.workflows.errors import WorkflowEngineError
from automation.workflows.events import event_publisher
from automation.workflows.models import WorkflowSchedule
from automation.workflows.schedules import create_repeating_schedule
from automation.workflows.schemas import (
    EventPublishRequest,
    EventPublishResponse,
    GraphCreate,
    GraphRead,
    GraphRunRequest,
    NodeType,
    ScheduleCreate,
    ScheduleRead,
)
from automation.workflows.store import GraphStore

router = APIRouter(prefix="/api/workflows", tags=["workflows"])
events_router = APIRouter(prefix="/api", tags=["events"])
graph_store = GraphStore()


@router.post("/graphs", response_model=GraphRead, status_code=status.HTTP_201_CREATED)
def create_graph(
    request: Request,
    dto: GraphCreate,
    db: Session = Depends(get_db),
    x_tenant_id: str | None = Header(default=None),
) -> GraphRead | JSONResponse:
    try:
        tenant_id = parse_tenant_id(x_tenant_id)
        row = graph_store.save_graph(db, tenant_id, dto)
        return GraphRead.model_validate(row)
    except WorkflowEngineError as exc:
        return engine_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_graph_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/graphs/{graph_id}", response_model=GraphRead)
def get_graph(
    request: Request,
    graph_id: uuid.UUID,
    db: Session = Depends(get_db),
    x_tenant_id: str | None = Header(default=None),
) -> GraphRead | JSONResponse:
    try:
        tenant_id = parse_tenant_id(x_tenant_id)
        return GraphRead.model_validate(graph_store.get_graph_row(db, graph_id, tenant_id))
    except WorkflowEngineError as exc:
        return engine_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_graph_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/graphs/{graph_id}/runs", response_model=dict[str, Any], status_code=status.HTTP_202_ACCEPTED)
def run_graph(
    request: Request,
    graph_id: uuid.UUID,
    dto: GraphRunRequest,
    db: Session = Depends(get_db),
    x_tenant_id: str | None = Header(default=None),
) -> dict[str, Any] | JSONResponse:
    try:
        tenant_id = parse_tenant_id(x_tenant_id)
        row = graph_store.get_graph_row(db, graph_id, tenant_id)
        if not row.is_enabled:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="graph is disabled")

        node_ids = {node.id for node in row.nodes}
        entry_node_id = dto.entry_node_id
        if entry_node_id is not None and entry_node_id not in node_ids:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="entry node not in graph")
        if entry_node_id is None:
            manual = [
                node.id for node in row.nodes if node.node_type == NodeType.TRIGGER_MANUAL.value and node.is_enabled
            ]
            entry_node_id = manual[0] if manual else None

        payload: dict[str, Any] = {"graph_id": str(row.id), "trigger": dto.trigger}
        if entry_node_id is not None:
            payload["entry_node_id"] = str(entry_node_id)
        job_id, _ = add_job(db, WORKFLOW_RUN, payload, tenant_id)
        db.commit()
        return {"job_id": str(job_id), "status": "Pending"}
    except WorkflowEngineError as exc:
        return engine_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_run_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/schedules", response_model=ScheduleRead, status_code=status.HTTP_201_CREATED)
def create_schedule(
    request: Request,
    dto: ScheduleCreate,
    db: Session = Depends(get_db),
    x_tenant_id: str | None = Header(default=None),
) -> ScheduleRead | JSONResponse:
    try:
        tenant_id = parse_tenant_id(x_tenant_id)
        graph_store.get_graph_row(db, dto.graph_id, tenant_id)
        schedule = create_repeating_schedule(
            db,
            tenant_id=tenant_id,
            graph_id=dto.graph_id,
            cron_expression=dto.cron_expression.strip(),
            trigger_payload=dto.trigger_payload,
        )
        db.commit()
        db.refresh(schedule)
        return ScheduleRead.model_validate(schedule)
    except WorkflowEngineError as exc:
        db.rollback()
        return engine_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_schedule_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/schedules", response_model=list[ScheduleRead])
def list_schedules(
    request: Request,
    graph_id: uuid.UUID | None = Query(default=None),
    active_only: bool = Query(default=True),
    db: Session = Depends(get_db),
    x_tenant_id: str | None = Header(default=None),
) -> list[ScheduleRead] | JSONResponse:
    try:
        tenant_id = parse_tenant_id(x_tenant_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_schedule_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )

    stmt = select(WorkflowSchedule).where(WorkflowSchedule.tenant_id == tenant_id)
    if graph_id is not None:
        stmt = stmt.where(WorkflowSchedule.graph_id == graph_id)
    if active_only:
        stmt = stmt.where(WorkflowSchedule.is_active.is_(True))
    rows = db.scalars(stmt.order_by(WorkflowSchedule.next_run_at, WorkflowSchedule.id)).all()
    return [ScheduleRead.model_validate(row) for row in rows]


@events_router.post("/events", response_model=EventPublishResponse, status_code=status.HTTP_202_ACCEPTED)
def publish_event(
    request: Request,
    dto: EventPublishRequest,
    x_tenant_id: str | None = Header(default=None),
) -> EventPublishResponse | JSONResponse:
    try:
        tenant_id = parse_tenant_id(x_tenant_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="event_publish_failed",
            message=str(exc.detail),
            details=exc.detail,
        )

    envelope = event_publisher.publish(dto.entity_type, dto.entity_id, dto.event_type, tenant_id, dto.payload)
    return EventPublishResponse(
        event_id=envelope["event_id"],
        event_type=envelope["event_type"],
        occurred_at=envelope["occurred_at"],
    )
