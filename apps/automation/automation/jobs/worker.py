from __future__ import annotations

import logging
import os
import socket
import threading
import time

from opentelemetry import trace

from automation.context import (
    reset_correlation_id,
    reset_tenant_id,
    reset_worker_id,
    set_correlation_id,
    set_tenant_id,
    set_worker_id,
)
from automation.jobs.dispatch import JobDispatcher, JobExecutionError
from automation.jobs.models import COMPLETED, FAILED
from automation.jobs.queue import ClaimedJob, JobQueue
from automation.metrics import observe_job, observe_worker_poll_error
from automation.workflows.errors import PersistenceError


logger = logging.getLogger("automation.worker")
tracer = trace.get_tracer("automation.worker")


def default_worker_id(index: int) -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{index}"


class Worker:
    """Claims one batch at a time and drives each job to a terminal status."""

    def __init__(
        self,
        worker_id: str,
        queue: JobQueue,
        dispatcher: JobDispatcher,
        *,
        batch_size: int = 10,
        poll_interval: float = 1.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.worker_id = worker_id
        self.queue = queue
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.stop_event = stop_event or threading.Event()

    def run_once(self) -> int:
        try:
            jobs = self.queue.claim(self.batch_size, self.worker_id)
        except PersistenceError as exc:
            observe_worker_poll_error("persistence")
            logger.warning("worker.claim_failed", extra={"worker_id": self.worker_id, "error": str(exc)[:500]})
            return 0

        processed = 0
        for index, job in enumerate(jobs):
            if self.stop_event.is_set():
                self._release(jobs[index:])
                break
            self.process(job)
            processed += 1
        return processed

    def _release(self, jobs: list[ClaimedJob]) -> None:
        try:
            self.queue.release(jobs)
        except PersistenceError as exc:
            # Left in Processing; the lease sweep fails them once the lease runs out.
            observe_worker_poll_error("persistence")
            logger.error("worker.release_failed", extra={"worker_id": self.worker_id, "error": str(exc)[:500]})

    def process(self, job: ClaimedJob) -> str:
        correlation_token = set_correlation_id(job.correlation_id or str(job.id))
        worker_token = set_worker_id(self.worker_id)
        tenant_token = set_tenant_id(str(job.tenant_id))
        started = time.perf_counter()
        status = FAILED
        try:
            with tracer.start_as_current_span("jobs.process") as span:
                span.set_attribute("job_id", str(job.id))
                span.set_attribute("job_type", job.job_type)
                span.set_attribute("worker_id", self.worker_id)
                span.set_attribute("correlation_id", job.correlation_id or str(job.id))
                logger.info("job.started", extra={"job_id": str(job.id), "job_type": job.job_type})

                result = None
                error: str | None = None
                try:
                    result = self.dispatcher.dispatch(job)
                    status = COMPLETED
                except JobExecutionError as exc:
                    error = exc.message
                    result = exc.result
                except Exception as exc:
                    logger.exception(
                        "job.handler_crashed",
                        extra={"job_id": str(job.id), "job_type": job.job_type, "error": str(exc)[:500]},
                    )
                    error = str(exc) or exc.__class__.__name__
                span.set_attribute("status", status)

                try:
                    if status == COMPLETED:
                        self.queue.complete(job.id, result, claim_token=job.claim_token)
                    else:
                        self.queue.fail(job.id, error or "job failed", result=result, claim_token=job.claim_token)
                except PersistenceError as exc:
                    # The lease sweep fails the job later if this write never lands.
                    observe_worker_poll_error("persistence")
                    logger.error(
                        "job.finish_failed",
                        extra={"job_id": str(job.id), "status": status, "error": str(exc)[:500]},
                    )

                duration = time.perf_counter() - started
                observe_job(job.job_type, status, duration)
                logger.info(
                    "job.finished",
                    extra={
                        "job_id": str(job.id),
                        "job_type": job.job_type,
                        "status": status,
                        "error": error[:500] if error else None,
                        "duration_ms": round(duration * 1000, 2),
                    },
                )
        finally:
            reset_tenant_id(tenant_token)
            reset_worker_id(worker_token)
            reset_correlation_id(correlation_token)
        return status

    def run(self) -> None:
        logger.info("worker.started", extra={"worker_id": self.worker_id})
        while not self.stop_event.is_set():
            try:
                processed = self.run_once()
            except Exception as exc:
                observe_worker_poll_error("unexpected")
                logger.exception("worker.loop_error", extra={"worker_id": self.worker_id, "error": str(exc)[:500]})
                processed = 0
            if processed == 0:
                self.stop_event.wait(self.poll_interval)
        logger.info("worker.stopped", extra={"worker_id": self.worker_id})


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        dispatcher: JobDispatcher,
        *,
        size: int = 4,
        batch_size: int = 10,
        poll_interval: float = 1.0,
    ) -> None:
        if size < 1:
            raise ValueError("worker pool size must be at least 1")
        self.queue = queue
        self.dispatcher = dispatcher
        self.size = size
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self.workers: list[Worker] = []

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self.workers = [
            Worker(
                default_worker_id(index),
                self.queue,
                self.dispatcher,
                batch_size=self.batch_size,
                poll_interval=self.poll_interval,
                stop_event=self._stop_event,
            )
            for index in range(self.size)
        ]
        self._threads = [
            threading.Thread(target=worker.run, name=f"automation-worker-{index}")
            for index, worker in enumerate(self.workers)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("worker_pool.started", extra={"workers": self.size})

    def stop(self, timeout: float | None = None) -> None:
        """Let in-flight jobs finish; the unstarted rest of each claimed batch goes back to Pending.

        Worker threads are not daemons, so a process that returns from here
        early still waits for them before exiting.
        """
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = [thread for thread in self._threads if thread.is_alive()]
        if self._threads:
            logger.warning("worker_pool.stop_timeout", extra={"workers": len(self._threads)})
        else:
            logger.info("worker_pool.stopped")
