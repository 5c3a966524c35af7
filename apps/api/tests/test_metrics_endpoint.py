from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from foodcrm.authz.matrix import SYSTEM_ROLES, permissions_for_role
from foodcrm.core.auth import ActorUser
from foodcrm.core.config import get_settings
from foodcrm.core.database import Base, get_db
from foodcrm.core.rbac import get_current_actor
from foodcrm.main import app
from foodcrm.middleware.rate_limit import reset_rate_limiter


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

    def override_get_current_actor(request: Request) -> ActorUser:
        role = request.headers.get("x-test-role", "admin")
        return ActorUser(
            user_id=f"{role}-metrics",
            organization_id=None,
            roles=[role],
            permissions={f"{resource}.{action}" for resource, action in permissions_for_role(role)},
            role_level=SYSTEM_ROLES[role].level,
            correlation_id="metrics-corr-1",
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_domain_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["service"] == "Food Service CRM API"

    organization = client.post("/api/organizations", json={"name": "Metrics Market", "type": "distributor"})
    assert organization.status_code == 201

    opportunity = client.post(
        "/api/opportunities",
        json={"name": "Metrics deal", "organization_id": organization.json()["id"], "value": "100.00"},
    )
    assert opportunity.status_code == 201
    won = client.post(f"/api/opportunities/{opportunity.json()['id']}/stage", json={"stage": "closed_won"})
    assert won.status_code == 200

    denied = client.post(
        "/api/organizations",
        json={"name": "Viewer Attempt", "type": "restaurant"},
        headers={"x-test-role": "viewer"},
    )
    assert denied.status_code == 403

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_opportunity_stage_transitions_total" in body
    assert "crm_authz_denials_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/opportunities/{id}/stage"' in body
    assert 'to_stage="closed_won"' in body
    assert 'resource="organizations"' in body


def test_metrics_require_system_monitor(client: TestClient) -> None:
    manager = client.get("/metrics", headers={"x-test-role": "manager"})
    assert manager.status_code == 200

    rep = client.get("/metrics", headers={"x-test-role": "sales_rep"})
    assert rep.status_code == 403
    assert rep.json() == {"detail": "Missing permission: system.monitor"}


def test_metrics_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
