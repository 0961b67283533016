from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from automation.core.auth import AuthUser, get_current_user as auth_get_current_user
from automation.core.config import get_settings
from automation.core.database import Base, get_db
from automation.jobs.dispatch import build_dispatcher
from automation.jobs.queue import JobQueue
from automation.jobs.worker import Worker
from automation.main import app
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def client(session_factory: Callable[[], Session]) -> Generator[TestClient, None, None]:
    session = session_factory()

    def override_get_db() -> Generator[Session, None, None]:
        yield session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
        session.close()


def test_metrics_endpoint_exposes_http_and_job_metrics(
    client: TestClient,
    session_factory: Callable[[], Session],
    tenant_id: uuid.UUID,
) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    headers = {"X-Tenant-Id": str(tenant_id)}
    graph = client.post(
        "/api/workflows/graphs",
        json={"name": "Metrics", "nodes": [{"node_type": "trigger_manual"}]},
        headers=headers,
    )
    assert graph.status_code == 201
    run = client.post(f"/api/workflows/graphs/{graph.json()['id']}/runs", json={}, headers=headers)
    assert run.status_code == 202

    capabilities = Capabilities(text=MockTextGenerator())
    Worker("metrics-worker", JobQueue(session_factory, lease_seconds=60), build_dispatcher(session_factory, capabilities)).run_once()

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "automation_jobs_total" in body
    assert "automation_job_duration_seconds" in body
    assert "automation_jobs_enqueued_total" in body
    assert "workflow_runs_total" in body
    assert "workflow_node_executions_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/workflows/graphs/{graph_id}/runs"' in body
    assert 'job_type="workflow.run"' in body


def test_metrics_require_permission(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="someone", roles=["user"])

    response = client.get("/metrics")

    assert response.status_code == 403


def test_metrics_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404


def test_metrics_accept_signed_role_token(client: TestClient) -> None:
    app.dependency_overrides.pop(auth_get_current_user)
    settings = get_settings()
    token = jwt.encode({"sub": "ops", "roles": ["system.metrics.read"]}, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    granted = client.get("/metrics", headers={"Authorization": f"Bearer {token}"})
    forged = client.get("/metrics", headers={"Authorization": "Bearer not-a-token"})

    assert granted.status_code == 200
    assert forged.status_code == 403
