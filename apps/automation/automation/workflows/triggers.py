from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from automation.jobs.models import WORKFLOW_RUN
from automation.jobs.queue import add_job
from automation.workflows.context import resolve_path
from automation.workflows.models import WorkflowGraph, WorkflowNode, utcnow
from automation.workflows.schedules import cancel_delayed_for_entity, create_delayed_action
from automation.workflows.schemas import EVENT_TRIGGER_TYPES, NodeType


logger = logging.getLogger("automation.workflows.triggers")

_ENVELOPE_KEYS = ("event_id", "event_type", "entity_type", "entity_id", "tenant_id")


def is_entity_event(payload: Any) -> bool:
    return isinstance(payload, dict) and all(isinstance(payload.get(key), str) and payload.get(key) for key in _ENVELOPE_KEYS)


def trigger_matches(node: WorkflowNode, envelope: dict[str, Any]) -> bool:
    try:
        node_type = NodeType(node.node_type)
    except ValueError:
        return False
    config = node.config or {}
    event_type = envelope["event_type"]
    payload = envelope.get("payload") or {}

    if node_type is NodeType.TRIGGER_ON_EVENT:
        if config.get("event_name") != event_type:
            return False
    elif node_type is NodeType.TRIGGER_ON_FIELD_CHANGE:
        if event_type not in {"updated", "field_changed"}:
            return False
        field_name = config.get("field")
        changed = payload.get("changed_fields") or []
        if field_name and field_name not in changed:
            return False
    elif node_type in EVENT_TRIGGER_TYPES:
        if EVENT_TRIGGER_TYPES[node_type] != event_type:
            return False
    else:
        return False

    entity_type = config.get("entity_type")
    if entity_type and entity_type != envelope["entity_type"]:
        return False

    filters = config.get("filters") or {}
    if not isinstance(filters, dict):
        return False
    for path, expected in filters.items():
        found, actual = resolve_path(payload, str(path))
        if not found or actual != expected:
            return False
    return True


def trigger_data(envelope: dict[str, Any]) -> dict[str, Any]:
    payload = envelope.get("payload") or {}
    return {
        "event_id": envelope["event_id"],
        "event_type": envelope["event_type"],
        "entity_type": envelope["entity_type"],
        "entity_id": envelope["entity_id"],
        "occurred_at": envelope.get("occurred_at"),
        "changed_fields": payload.get("changed_fields", []),
        "data": payload,
    }


class WorkflowTriggerService:
    """Turns entity events into workflow runs for every matching trigger node."""

    def enqueue_for_event(self, session: Session, envelope: dict[str, Any]) -> list[uuid.UUID]:
        if not is_entity_event(envelope):
            return []
        try:
            tenant_id = uuid.UUID(envelope["tenant_id"])
        except ValueError:
            logger.warning("workflow.trigger_skipped", extra={"event_id": envelope["event_id"], "error": "invalid tenant id"})
            return []

        event_id = envelope["event_id"]
        correlation_id = envelope.get("correlation_id") if isinstance(envelope.get("correlation_id"), str) else None

        if envelope["event_type"] == "deleted":
            cancelled = cancel_delayed_for_entity(session, tenant_id, envelope["entity_type"], envelope["entity_id"])
            if cancelled:
                logger.info("workflow.delayed_cancelled", extra={"event_id": event_id, "claimed": cancelled})

        graphs = session.scalars(
            select(WorkflowGraph).where(WorkflowGraph.tenant_id == tenant_id, WorkflowGraph.is_enabled.is_(True))
        ).all()

        queued: list[uuid.UUID] = []
        data = trigger_data(envelope)
        for graph in graphs:
            for node in graph.nodes:
                if not node.is_enabled or not trigger_matches(node, envelope):
                    continue

                delay_minutes = (node.config or {}).get("delay_minutes") or 0
                if isinstance(delay_minutes, (int, float)) and not isinstance(delay_minutes, bool) and delay_minutes > 0:
                    create_delayed_action(
                        session,
                        tenant_id=tenant_id,
                        graph_id=graph.id,
                        node_id=node.id,
                        run_at=self._occurred_at(envelope) + timedelta(minutes=delay_minutes),
                        trigger_payload=data,
                        entity_type=envelope["entity_type"],
                        entity_id=envelope["entity_id"],
                        source_event_id=event_id,
                    )
                    continue

                job_id, created = add_job(
                    session,
                    WORKFLOW_RUN,
                    {"graph_id": str(graph.id), "trigger": data, "entry_node_id": str(node.id)},
                    tenant_id,
                    dedupe_key=f"event:{event_id}:{graph.id}:{node.id}",
                    correlation_id=correlation_id,
                )
                if created:
                    queued.append(job_id)

        session.commit()
        return queued

    def _occurred_at(self, envelope: dict[str, Any]) -> datetime:
        raw = envelope.get("occurred_at")
        if isinstance(raw, str):
            try:
                return datetime.fromisoformat(raw)
            except ValueError:
                pass
        return utcnow()
