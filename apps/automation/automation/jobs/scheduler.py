from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from sqlalchemy.orm import Session

from automation.core.config import Settings, get_settings
from automation.core.database import get_session_factory
from automation.jobs.dispatch import build_dispatcher
from automation.jobs.queue import JobQueue
from automation.jobs.scheduled import ScheduledTriggerRunner
from automation.jobs.worker import WorkerPool
from automation.workflows.capabilities import Capabilities, build_capabilities


logger = logging.getLogger("automation.scheduler")


class JobScheduler:
    """Owns the worker pool and the scheduled trigger runner thread."""

    def __init__(self, pool: WorkerPool, runner: ScheduledTriggerRunner, *, tick_seconds: float = 60.0) -> None:
        self.pool = pool
        self.runner = runner
        self.tick_seconds = tick_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self.pool.is_running or (self._thread is not None and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self.pool.start()
        self._thread = threading.Thread(target=self._run_ticks, name="automation-scheduler", daemon=True)
        self._thread.start()
        logger.info("scheduler.started", extra={"workers": self.pool.size})

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.pool.stop(timeout)
        logger.info("scheduler.stopped")

    def _run_ticks(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.runner.tick()
            except Exception as exc:
                logger.exception("scheduler.tick_failed", extra={"error": str(exc)[:500]})
            self._stop_event.wait(self.tick_seconds)


def build_scheduler(
    settings: Settings | None = None,
    session_factory: Callable[[], Session] | None = None,
    capabilities: Capabilities | None = None,
) -> JobScheduler:
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    capabilities = capabilities or build_capabilities(settings)
    queue = JobQueue(session_factory, lease_seconds=settings.job_lease_seconds)
    pool = WorkerPool(
        queue,
        build_dispatcher(session_factory, capabilities),
        size=settings.worker_count,
        batch_size=settings.worker_batch_size,
        poll_interval=settings.worker_poll_interval_seconds,
    )
    runner = ScheduledTriggerRunner(
        session_factory,
        queue,
        max_per_tick=settings.scheduler_max_per_tick,
        grace_period_seconds=settings.scheduler_grace_period_seconds,
    )
    return JobScheduler(pool, runner, tick_seconds=settings.scheduler_tick_seconds)
