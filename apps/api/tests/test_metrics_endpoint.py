from __future__ import annotations

import threading
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.lifecycle import opportunity_locks
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            permissions={"crm.opportunities.read", "crm.opportunities.write"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_opportunity(client: TestClient) -> dict:
    response = client.post(
        "/api/crm/opportunities",
        json={"company_name": "Metrics Co", "deal_name": "Metrics Co - Website Project", "deal_value": 100},
    )
    assert response.status_code == 201
    return response.json()["opportunity"]


def test_metrics_endpoint_exposes_http_and_transition_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    opportunity = _create_opportunity(client)
    responded = client.post(f"/api/crm/opportunities/{opportunity['id']}/stage", json={"stage": "responded"})
    assert responded.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_opportunity_transitions_total" in body
    assert "crm_generated_tasks_total" in body
    assert "crm_transition_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/opportunities/{opportunity_id}/stage"' in body
    assert 'to_stage="responded",outcome="changed"' in body or 'outcome="changed",to_stage="responded"' in body
    assert 'stage="responded"' in body


def test_lock_timeouts_are_counted(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSITION_LOCK_TIMEOUT_SECONDS", "0.01")
    get_settings.cache_clear()
    opportunity = _create_opportunity(client)
    opportunity_id = uuid.UUID(opportunity["id"])
    acquired = threading.Event()
    release = threading.Event()

    def _hold() -> None:
        with opportunity_locks.hold(opportunity_id, timeout=1):
            acquired.set()
            release.wait(timeout=5)

    worker = threading.Thread(target=_hold)
    worker.start()
    assert acquired.wait(timeout=1)
    try:
        response = client.post(f"/api/crm/opportunities/{opportunity['id']}/stage", json={"stage": "meeting"})
    finally:
        release.set()
        worker.join(timeout=5)

    assert response.status_code == 409
    assert response.json()["details"]["reason"] == "lock_timeout"
    assert 'reason="lock_timeout"' in client.get("/metrics").text
    assert opportunity_locks.tracked() == 0


def test_metrics_require_role(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="someone", roles=["user"])

    response = client.get("/metrics")

    assert response.status_code == 403
