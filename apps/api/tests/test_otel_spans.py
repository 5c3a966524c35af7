from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from foodcrm.authz.matrix import SYSTEM_ROLES, permissions_for_role
from foodcrm.core.auth import ActorUser
from foodcrm.core.config import get_settings
from foodcrm.core.database import Base, get_db
from foodcrm.core.rbac import get_current_actor
from foodcrm.main import app
from foodcrm.middleware.rate_limit import reset_rate_limiter
from foodcrm.otel import setup_inmemory_otel


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


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


def _create_opportunity(client: TestClient) -> dict:
    organization = client.post("/api/organizations", json={"name": "Trace Kitchen", "type": "restaurant"})
    assert organization.status_code == 201
    response = client.post(
        "/api/opportunities",
        json={"name": "Trace deal", "organization_id": organization.json()["id"], "value": "300.00"},
    )
    assert response.status_code == 201
    return response.json()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/organizations",
        json={"name": "Span Diner", "type": "restaurant"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_stage_transition_span_records_stages(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    opportunity = _create_opportunity(client)

    moved = client.post(f"/api/opportunities/{opportunity['id']}/stage", json={"stage": "proposal"})
    assert moved.status_code == 200

    transition_spans = [
        span for span in span_exporter.get_finished_spans() if span.name == "crm.opportunity.transition_stage"
    ]
    assert transition_spans
    assert any(
        span.attributes.get("opportunity_id") == opportunity["id"]
        and span.attributes.get("from_stage") == "prospecting"
        and span.attributes.get("to_stage") == "proposal"
        for span in transition_spans
    )
