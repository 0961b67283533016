from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

automation_jobs_total = Counter(
    "automation_jobs_total",
    "Total processed jobs by terminal status",
    ["job_type", "status"],
)

automation_job_duration_seconds = Histogram(
    "automation_job_duration_seconds",
    "Job processing duration in seconds",
    ["job_type"],
)

automation_jobs_enqueued_total = Counter(
    "automation_jobs_enqueued_total",
    "Total enqueued jobs",
    ["job_type"],
)

automation_job_claims_total = Counter(
    "automation_job_claims_total",
    "Total jobs claimed by workers",
)

automation_worker_poll_errors_total = Counter(
    "automation_worker_poll_errors_total",
    "Worker poll failures by reason",
    ["reason"],
)

automation_expired_leases_total = Counter(
    "automation_expired_leases_total",
    "Processing jobs failed after their lease expired",
)

workflow_runs_total = Counter(
    "workflow_runs_total",
    "Total graph runs by outcome",
    ["status"],
)

workflow_node_executions_total = Counter(
    "workflow_node_executions_total",
    "Total node executions by node type and status",
    ["node_type", "status"],
)

workflow_node_duration_seconds = Histogram(
    "workflow_node_duration_seconds",
    "Node execution duration in seconds",
    ["node_type"],
)

workflow_node_retries_total = Counter(
    "workflow_node_retries_total",
    "Total node retry attempts",
    ["node_type"],
)

workflow_schedule_fires_total = Counter(
    "workflow_schedule_fires_total",
    "Scheduled trigger firings by kind and outcome",
    ["kind", "outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_job(job_type: str, status: str, duration: float) -> None:
    automation_jobs_total.labels(job_type=job_type, status=status).inc()
    automation_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_job_enqueued(job_type: str) -> None:
    automation_jobs_enqueued_total.labels(job_type=job_type).inc()


def observe_job_claims(count: int) -> None:
    if count > 0:
        automation_job_claims_total.inc(count)


def observe_worker_poll_error(reason: str) -> None:
    automation_worker_poll_errors_total.labels(reason=reason).inc()


def observe_expired_leases(count: int) -> None:
    if count > 0:
        automation_expired_leases_total.inc(count)


def observe_workflow_run(status: str) -> None:
    workflow_runs_total.labels(status=status).inc()


def observe_node_execution(node_type: str, status: str, duration: float) -> None:
    workflow_node_executions_total.labels(node_type=node_type, status=status).inc()
    workflow_node_duration_seconds.labels(node_type=node_type).observe(duration)


def observe_node_retry(node_type: str) -> None:
    workflow_node_retries_total.labels(node_type=node_type).inc()


def observe_schedule_fire(kind: str, outcome: str) -> None:
    workflow_schedule_fires_total.labels(kind=kind, outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
