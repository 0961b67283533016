from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from automation.core.config import get_settings
from automation.core.database import Base, get_db
from automation.jobs.dispatch import build_dispatcher
from automation.jobs.queue import JobQueue
from automation.jobs.worker import Worker
from automation.main import app
from automation.otel import setup_inmemory_otel
from automation.workflows.capabilities import Capabilities, MockTextGenerator


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("automation")
    exporter.clear()
    return exporter


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


def test_request_span_contains_correlation_id(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
    tenant_id: uuid.UUID,
) -> None:
    response = client.post(
        "/api/events",
        json={"entity_type": "lead", "entity_id": "lead-1", "event_type": "created"},
        headers={"X-Tenant-Id": str(tenant_id), "X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 202

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_job_span_contains_job_id_and_correlation(
    client: TestClient,
    session_factory: Callable[[], Session],
    span_exporter: InMemorySpanExporter,
    tenant_id: uuid.UUID,
) -> None:
    headers = {"X-Tenant-Id": str(tenant_id), "X-Correlation-Id": "otel-job-corr-1"}
    graph = client.post(
        "/api/workflows/graphs",
        json={
            "name": "Traced",
            "nodes": [{"node_type": "trigger_manual"}, {"node_type": "ai_generate", "config": {"prompt": "hello"}}],
        },
        headers=headers,
    ).json()
    run = client.post(f"/api/workflows/graphs/{graph['id']}/runs", json={}, headers=headers)
    assert run.status_code == 202
    job_id = run.json()["job_id"]

    capabilities = Capabilities(text=MockTextGenerator())
    Worker("otel-worker", JobQueue(session_factory, lease_seconds=60), build_dispatcher(session_factory, capabilities)).run_once()

    spans = span_exporter.get_finished_spans()
    job_spans = [span for span in spans if span.name == "jobs.process"]
    assert any(
        span.attributes.get("job_id") == job_id
        and span.attributes.get("job_type") == "workflow.run"
        and span.attributes.get("correlation_id") == "otel-job-corr-1"
        and span.attributes.get("status") == "Completed"
        for span in job_spans
    )

    run_spans = [span for span in spans if span.name == "workflow.run"]
    assert any(
        span.attributes.get("graph_id") == graph["id"]
        and span.attributes.get("correlation_id") == "otel-job-corr-1"
        and span.attributes.get("status") == "completed"
        for span in run_spans
    )
    assert any(span.name == "workflow.node" and span.attributes.get("node_type") == "ai_generate" for span in spans)
