from celery import Celery

from automation.core.config import get_settings
from automation.core.database import get_session_factory
from automation.jobs.dispatch import build_dispatcher
from automation.jobs.queue import JobQueue
from automation.jobs.scheduled import ScheduledTriggerRunner
from automation.jobs.worker import Worker, default_worker_id
from automation.workflows.capabilities import build_capabilities

settings = get_settings()

celery_app = Celery("automation", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "automation-scheduler-tick": {
        "task": "automation.jobs.scheduler_tick",
        "schedule": settings.scheduler_tick_seconds,
    },
}


@celery_app.task(name="automation.jobs.process_batch")
def process_batch_task() -> int:
    current = get_settings()
    session_factory = get_session_factory()
    queue = JobQueue(session_factory, lease_seconds=current.job_lease_seconds)
    worker = Worker(
        default_worker_id(0),
        queue,
        build_dispatcher(session_factory, build_capabilities(current)),
        batch_size=current.worker_batch_size,
    )
    return worker.run_once()


@celery_app.task(name="automation.jobs.scheduler_tick")
def scheduler_tick_task() -> list[str]:
    current = get_settings()
    session_factory = get_session_factory()
    runner = ScheduledTriggerRunner(
        session_factory,
        JobQueue(session_factory, lease_seconds=current.job_lease_seconds),
        max_per_tick=current.scheduler_max_per_tick,
        grace_period_seconds=current.scheduler_grace_period_seconds,
    )
    return [str(job_id) for job_id in runner.tick()]
