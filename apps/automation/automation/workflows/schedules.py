from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from croniter import croniter
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from automation.workflows.errors import GraphValidationError
from automation.workflows.models import WorkflowSchedule, utcnow


REPEATING = "repeating"
DELAYED = "delayed"


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_cron(expression: str) -> None:
    if not croniter.is_valid(expression):
        raise GraphValidationError(f"invalid cron expression '{expression}'")


def next_cron_run(expression: str, after: datetime) -> datetime:
    """First fire time strictly after ``after``; supports ``@hourly``/``@daily`` style shortcuts."""
    return as_utc(croniter(expression, as_utc(after)).get_next(datetime))


def create_repeating_schedule(
    session: Session,
    *,
    tenant_id: uuid.UUID,
    graph_id: uuid.UUID,
    cron_expression: str,
    trigger_payload: dict[str, Any] | None = None,
    node_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> WorkflowSchedule:
    validate_cron(cron_expression)
    schedule = WorkflowSchedule(
        tenant_id=tenant_id,
        graph_id=graph_id,
        node_id=node_id,
        kind=REPEATING,
        cron_expression=cron_expression,
        trigger_payload=dict(trigger_payload or {}),
        next_run_at=next_cron_run(cron_expression, now or utcnow()),
    )
    session.add(schedule)
    session.flush()
    return schedule


def create_delayed_action(
    session: Session,
    *,
    tenant_id: uuid.UUID,
    graph_id: uuid.UUID,
    node_id: uuid.UUID,
    run_at: datetime,
    trigger_payload: dict[str, Any],
    entity_type: str | None,
    entity_id: str | None,
    source_event_id: str | None,
) -> tuple[WorkflowSchedule, bool]:
    if source_event_id is not None:
        existing = session.scalar(
            select(WorkflowSchedule).where(
                WorkflowSchedule.source_event_id == source_event_id,
                WorkflowSchedule.node_id == node_id,
                WorkflowSchedule.kind == DELAYED,
            )
        )
        if existing is not None:
            return existing, False

    schedule = WorkflowSchedule(
        tenant_id=tenant_id,
        graph_id=graph_id,
        node_id=node_id,
        kind=DELAYED,
        trigger_payload=dict(trigger_payload),
        next_run_at=as_utc(run_at),
        entity_type=entity_type,
        entity_id=entity_id,
        source_event_id=source_event_id,
    )
    session.add(schedule)
    session.flush()
    return schedule, True


def cancel_delayed_for_entity(session: Session, tenant_id: uuid.UUID, entity_type: str, entity_id: str) -> int:
    """Deactivate pending delayed actions for one entity, e.g. after it was deleted."""
    outcome = session.execute(
        update(WorkflowSchedule)
        .where(
            WorkflowSchedule.tenant_id == tenant_id,
            WorkflowSchedule.kind == DELAYED,
            WorkflowSchedule.entity_type == entity_type,
            WorkflowSchedule.entity_id == entity_id,
            WorkflowSchedule.is_active.is_(True),
            WorkflowSchedule.consumed_at.is_(None),
        )
        .values(is_active=False, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return outcome.rowcount or 0
