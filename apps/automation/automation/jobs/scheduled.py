from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from croniter import croniter
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from automation.core.config import get_settings
from automation.jobs.models import WORKFLOW_RUN
from automation.jobs.queue import JobQueue, add_job
from automation.metrics import observe_schedule_fire
from automation.workflows.errors import PersistenceError
from automation.workflows.models import WorkflowSchedule, utcnow
from automation.workflows.schedules import REPEATING, as_utc, next_cron_run


logger = logging.getLogger("automation.scheduler")
tracer = trace.get_tracer("automation.scheduler")


class ScheduledTriggerRunner:
    """Turns due schedule rows into workflow run jobs.

    Every due row is advanced (or consumed) and its job staged in the same
    transaction, and each job carries the dedupe key
    ``schedule:{schedule_id}:{due_at}``. A crash between the two writes rolls
    both back, and a replayed tick can never enqueue the same due time twice.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        queue: JobQueue,
        *,
        max_per_tick: int | None = None,
        grace_period_seconds: int | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self.queue = queue
        self.max_per_tick = settings.scheduler_max_per_tick if max_per_tick is None else max_per_tick
        grace = settings.scheduler_grace_period_seconds if grace_period_seconds is None else grace_period_seconds
        self.grace_period = timedelta(seconds=grace)

    def tick(self, now: datetime | None = None) -> list[uuid.UUID]:
        now = as_utc(now or utcnow())
        queued: list[uuid.UUID] = []
        with tracer.start_as_current_span("scheduler.tick") as span, self._session_factory() as session:
            try:
                due = session.scalars(
                    select(WorkflowSchedule)
                    .where(WorkflowSchedule.is_active.is_(True), WorkflowSchedule.next_run_at <= now)
                    .order_by(WorkflowSchedule.next_run_at, WorkflowSchedule.id)
                    .limit(self.max_per_tick)
                    .with_for_update(skip_locked=True)
                ).all()
                for schedule in due:
                    job_id = self._fire(session, schedule, now)
                    if job_id is not None:
                        queued.append(job_id)
                session.commit()
            except IntegrityError as exc:
                # Another runner fired the same due time first; its jobs stand.
                session.rollback()
                logger.warning("scheduler.tick_conflict", extra={"error": str(exc)[:500]})
                queued = []
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError("scheduler tick", exc) from exc
            span.set_attribute("claimed", len(queued))

        self.queue.fail_expired_leases(now)
        if queued:
            logger.info("scheduler.tick", extra={"claimed": len(queued)})
        return queued

    def _fire(self, session: Session, schedule: WorkflowSchedule, now: datetime) -> uuid.UUID | None:
        due_at = as_utc(schedule.next_run_at)
        extra = {"schedule_id": str(schedule.id), "graph_id": str(schedule.graph_id), "due_at": due_at.isoformat()}

        if schedule.kind == REPEATING:
            expression = schedule.cron_expression or ""
            if not croniter.is_valid(expression):
                schedule.is_active = False
                observe_schedule_fire(schedule.kind, "invalid")
                logger.warning("schedule.invalid", extra={**extra, "error": f"invalid cron expression '{expression}'"})
                return None
            schedule.next_run_at = next_cron_run(expression, now)
            if now - due_at > self.grace_period:
                observe_schedule_fire(schedule.kind, "missed")
                logger.warning("schedule.missed", extra=extra)
                return None
        else:
            schedule.is_active = False
            schedule.consumed_at = now
        schedule.last_run_at = now
        schedule.run_count = (schedule.run_count or 0) + 1

        payload: dict[str, Any] = {
            "graph_id": str(schedule.graph_id),
            "trigger": {
                **(schedule.trigger_payload or {}),
                "schedule_id": str(schedule.id),
                "scheduled_for": due_at.isoformat(),
                "fired_at": now.isoformat(),
            },
        }
        if schedule.node_id is not None:
            payload["entry_node_id"] = str(schedule.node_id)

        job_id, created = add_job(
            session,
            WORKFLOW_RUN,
            payload,
            schedule.tenant_id,
            dedupe_key=f"schedule:{schedule.id}:{due_at.isoformat()}",
        )
        observe_schedule_fire(schedule.kind, "fired" if created else "duplicate")
        logger.info("schedule.fired", extra={**extra, "job_id": str(job_id)})
        return job_id if created else None
