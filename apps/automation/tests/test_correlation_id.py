from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from automation.core.config import get_settings
from automation.core.database import Base, get_db
from automation.jobs.dispatch import build_dispatcher
from automation.jobs.models import NOTIFICATION_EMAIL
from automation.jobs.queue import JobQueue
from automation.jobs.worker import Worker
from automation.main import app
from automation.workflows.capabilities import Capabilities, MockTextGenerator, OutboxNotifier
from automation.workflows.events import published_events


@pytest.fixture()
def session_factory() -> Generator[Callable[[], Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    published_events.clear()
    get_settings.cache_clear()
    yield
    published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def client(session_factory: Callable[[], Session]) -> Generator[TestClient, None, None]:
    session = session_factory()

    def override_get_db() -> Generator[Session, None, None]:
        yield session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
        session.close()


def _manual_graph(client: TestClient, tenant_id: uuid.UUID, correlation_id: str) -> dict:
    response = client.post(
        "/api/workflows/graphs",
        json={"name": "Manual", "nodes": [{"node_type": "trigger_manual"}]},
        headers={"X-Tenant-Id": str(tenant_id), "X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient, tenant_id: uuid.UUID) -> None:
    response = client.get(f"/api/workflows/graphs/{uuid.uuid4()}", headers={"X-Tenant-Id": str(tenant_id)})

    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient, tenant_id: uuid.UUID) -> None:
    response = client.get(
        f"/api/workflows/graphs/{uuid.uuid4()}",
        headers={"X-Tenant-Id": str(tenant_id), "X-Correlation-Id": "abc-123"},
    )

    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_event_envelope_includes_correlation_id(client: TestClient, tenant_id: uuid.UUID) -> None:
    response = client.post(
        "/api/events",
        json={"entity_type": "lead", "entity_id": "lead-1", "event_type": "created"},
        headers={"X-Tenant-Id": str(tenant_id), "X-Correlation-Id": "corr-event-1"},
    )

    assert response.status_code == 202
    envelope = next(item for item in published_events if item["event_id"] == response.json()["event_id"])
    assert envelope["correlation_id"] == "corr-event-1"
    assert envelope["tenant_id"] == str(tenant_id)


def test_queued_run_keeps_request_correlation_id(client: TestClient, tenant_id: uuid.UUID) -> None:
    graph = _manual_graph(client, tenant_id, "corr-graph-1")

    run = client.post(
        f"/api/workflows/graphs/{graph['id']}/runs",
        json={},
        headers={"X-Tenant-Id": str(tenant_id), "X-Correlation-Id": "corr-run-1"},
    )

    assert run.status_code == 202
    job = client.get(f"/api/jobs/{run.json()['job_id']}", headers={"X-Tenant-Id": str(tenant_id)})
    assert job.json()["correlation_id"] == "corr-run-1"


def test_worker_binds_job_correlation_id(session_factory: Callable[[], Session], tenant_id: uuid.UUID) -> None:
    queue = JobQueue(session_factory, lease_seconds=60)
    queue.enqueue(NOTIFICATION_EMAIL, {"to": "ops@example.com"}, tenant_id, correlation_id="corr-job-1")
    unlabelled_id = queue.enqueue(NOTIFICATION_EMAIL, {"to": "team@example.com"}, tenant_id)
    notifier = OutboxNotifier()
    capabilities = Capabilities(text=MockTextGenerator(), notifier=notifier)

    Worker("worker-1", queue, build_dispatcher(session_factory, capabilities)).run_once()

    correlation_ids = {item["to"]: item["correlation_id"] for item in notifier.deliveries}
    assert correlation_ids["ops@example.com"] == "corr-job-1"
    assert correlation_ids["team@example.com"] == str(unlabelled_id)
