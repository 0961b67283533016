from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI

from automation.api.routes import router as api_router
from automation.core.config import get_settings
from automation.core.database import get_db, get_session_factory
from automation.core.events import WILDCARD, InternalEvent, event_bus
from automation.jobs.scheduler import JobScheduler, build_scheduler
from automation.logging import configure_logging
from automation.middleware.correlation_id import CorrelationIdMiddleware
from automation.middleware.request_logging import RequestLoggingMiddleware
from automation.otel import instrument_app, setup_otel
from automation.workflows.triggers import WorkflowTriggerService, is_entity_event


configure_logging()
logger = logging.getLogger("automation.lifecycle")
workflow_trigger_service = WorkflowTriggerService()
_subscriptions_registered = False
_scheduler: JobScheduler | None = None


@contextmanager
def _session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = get_session_factory()()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_entity_event(event: InternalEvent) -> None:
    if not is_entity_event(event.payload):
        return
    try:
        with _session_scope() as session:
            queued_job_ids = workflow_trigger_service.enqueue_for_event(session, event.payload)
        if queued_job_ids:
            logger.info("workflow.jobs_enqueued", extra={"event_name": event.name, "claimed": len(queued_job_ids)})
    except Exception as exc:
        logger.exception("workflow.auto_enqueue_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered, _scheduler
    if not _subscriptions_registered:
        event_bus.subscribe(WILDCARD, _on_entity_event)
        _subscriptions_registered = True

    settings = get_settings()
    if settings.scheduler_enabled and _scheduler is None:
        _scheduler = build_scheduler(settings)
        _scheduler.start()
    try:
        yield
    finally:
        if _scheduler is not None:
            _scheduler.stop(timeout=settings.node_timeout_seconds * 2)
            _scheduler = None


app = FastAPI(title="CRM Automation", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("automation", True)

instrument_app(app)
