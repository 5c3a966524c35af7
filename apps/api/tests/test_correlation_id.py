from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from foodcrm import audit, events
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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor(request: Request) -> ActorUser:
        return ActorUser(
            user_id="manager-1",
            organization_id=None,
            roles=["manager"],
            permissions={f"{resource}.{action}" for resource, action in permissions_for_role("manager")},
            role_level=SYSTEM_ROLES["manager"].level,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_organization(client: TestClient, name: str, correlation_id: str) -> dict:
    response = client.post(
        "/api/organizations",
        json={"name": name, "type": "restaurant"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/contacts/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert response.json()["correlation_id"] == header_value
    assert response.headers.get("x-request-id") == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/contacts/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_oversized_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "x" * 200})
    assert response.status_code == 200
    replaced = response.headers.get("x-correlation-id")
    assert replaced and replaced != "x" * 200
    uuid.UUID(replaced)


def test_audit_and_events_use_request_correlation_id(client: TestClient) -> None:
    organization = _create_organization(client, "Corr Diner", "corr-audit-1")

    entries = audit.entries_for("crm.organization", organization["id"])
    assert entries
    assert entries[-1]["correlation_id"] == "corr-audit-1"

    created_events = events.events_of_type("crm.organization.created")
    assert created_events[-1]["correlation_id"] == "corr-audit-1"


def test_stage_change_events_carry_correlation_id(client: TestClient) -> None:
    organization = _create_organization(client, "Corr Cafe", "corr-setup")
    opportunity = client.post(
        "/api/opportunities",
        json={"name": "Coffee program", "organization_id": organization["id"], "value": "900.00"},
    )
    assert opportunity.status_code == 201

    won = client.post(
        f"/api/opportunities/{opportunity.json()['id']}/stage",
        json={"stage": "closed_won"},
        headers={"X-Correlation-Id": "corr-stage-1"},
    )
    assert won.status_code == 200
    assert events.events_of_type("crm.opportunity.closed_won")[-1]["correlation_id"] == "corr-stage-1"
    assert events.events_of_type("crm.opportunity.stage_changed")[-1]["correlation_id"] == "corr-stage-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    _create_organization(client, "Rate Limit Bistro 1", "corr-rate-1")

    second = client.post(
        "/api/organizations",
        json={"name": "Rate Limit Bistro 2", "type": "restaurant"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    assert second.json()["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
