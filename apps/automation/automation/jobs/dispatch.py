from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from sqlalchemy.orm import Session

from automation.jobs.models import NOTIFICATION_EMAIL, NOTIFICATION_SMS, WORKFLOW_RUN
from automation.jobs.queue import ClaimedJob
from automation.workflows.capabilities import Capabilities
from automation.workflows.context import ExecutionContext
from automation.workflows.errors import CapabilityError, WorkflowEngineError
from automation.workflows.executor import GraphExecutor
from automation.workflows.store import GraphStore


class JobExecutionError(Exception):
    """A job ran and failed; ``result`` is persisted alongside the error."""

    def __init__(self, message: str, result: dict[str, Any] | None = None) -> None:
        self.message = message
        self.result = result
        super().__init__(message)


class JobHandler(Protocol):
    def __call__(self, job: ClaimedJob) -> dict[str, Any] | None: ...


class JobDispatcher:
    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def supports(self, job_type: str) -> bool:
        return job_type in self._handlers

    def dispatch(self, job: ClaimedJob) -> dict[str, Any] | None:
        handler = self._handlers.get(job.job_type)
        if handler is None:
            raise JobExecutionError(f"unknown job type '{job.job_type}'")
        return handler(job)


class WorkflowRunJobHandler:
    """Loads the job's graph and runs it with the stored trigger payload."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: GraphStore,
        executor: GraphExecutor,
        capabilities: Capabilities,
    ) -> None:
        self._session_factory = session_factory
        self.store = store
        self.executor = executor
        self.capabilities = capabilities

    def __call__(self, job: ClaimedJob) -> dict[str, Any]:
        graph_id = job.payload.get("graph_id")
        if not graph_id:
            raise JobExecutionError("job payload is missing graph_id")
        trigger = job.payload.get("trigger") or {}
        if not isinstance(trigger, dict):
            raise JobExecutionError("job trigger payload must be an object")
        entry_node_id = job.payload.get("entry_node_id")

        try:
            with self._session_factory() as session:
                graph = self.store.load_graph(session, graph_id)
        except WorkflowEngineError as exc:
            raise JobExecutionError(exc.message, result={"error_code": exc.code}) from exc

        if graph.tenant_id != str(job.tenant_id):
            raise JobExecutionError(f"graph {graph_id} does not belong to tenant {job.tenant_id}")

        context = ExecutionContext.for_trigger(
            trigger,
            self.capabilities,
            tenant_id=str(job.tenant_id),
            graph_id=graph.id,
        )
        outcome = self.executor.execute(graph, context, entry_node_id=str(entry_node_id) if entry_node_id else None)
        if not outcome.succeeded:
            raise JobExecutionError(outcome.error or "workflow run failed", result=outcome.to_dict())
        return outcome.to_dict()


class NotificationJobHandler:
    """Delivers a queued email or SMS through the notifier capability."""

    def __init__(self, capabilities: Capabilities, channel: str) -> None:
        self.capabilities = capabilities
        self.channel = channel

    def __call__(self, job: ClaimedJob) -> dict[str, Any]:
        payload = job.payload
        recipient = payload.get("to")
        if not isinstance(recipient, str) or not recipient:
            raise JobExecutionError("notification job requires a recipient")

        tenant_id = str(job.tenant_id)
        try:
            if self.channel == "email":
                return self.capabilities.notifier.send_email(
                    tenant_id,
                    recipient,
                    str(payload.get("subject") or ""),
                    str(payload.get("body") or ""),
                )
            return self.capabilities.notifier.send_sms(
                tenant_id,
                recipient,
                str(payload.get("message") or ""),
                str(payload.get("provider") or "twilio"),
            )
        except CapabilityError as exc:
            raise JobExecutionError(str(exc)) from exc


def build_dispatcher(
    session_factory: Callable[[], Session],
    capabilities: Capabilities,
    *,
    store: GraphStore | None = None,
    executor: GraphExecutor | None = None,
) -> JobDispatcher:
    store = store or GraphStore()
    executor = executor or GraphExecutor(store.registry)
    dispatcher = JobDispatcher()
    dispatcher.register(WORKFLOW_RUN, WorkflowRunJobHandler(session_factory, store, executor, capabilities))
    dispatcher.register(NOTIFICATION_EMAIL, NotificationJobHandler(capabilities, "email"))
    dispatcher.register(NOTIFICATION_SMS, NotificationJobHandler(capabilities, "sms"))
    return dispatcher

