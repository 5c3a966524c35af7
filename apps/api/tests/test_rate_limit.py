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
from foodcrm.middleware.rate_limit import SlidingWindowLimiter, reset_rate_limiter


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor(request: Request) -> ActorUser:
        return ActorUser(
            user_id="admin-1",
            organization_id=None,
            roles=["admin"],
            permissions={f"{resource}.{action}" for resource, action in permissions_for_role("admin")},
            role_level=SYSTEM_ROLES["admin"].level,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_mutating_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = [
        client.post("/api/organizations", json={"name": f"Rate Limit Deli {index}", "type": "restaurant"})
        for index in range(5)
    ]

    assert [response.status_code for response in responses[:3]] == [201, 201, 201]
    limited = [response for response in responses if response.status_code == 429]
    assert limited

    body = limited[0].json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["details"] is None
    assert body["correlation_id"] is not None
    assert int(limited[0].headers["Retry-After"]) >= 1


def test_route_groups_have_separate_buckets(client: TestClient) -> None:
    for index in range(3):
        client.post("/api/organizations", json={"name": f"Bucket Cafe {index}", "type": "food_service"})
    assert client.post("/api/organizations", json={"name": "Bucket Cafe 9", "type": "food_service"}).status_code == 429

    product = client.post("/api/products", json={"sku": "BKT-1", "name": "Bucket", "unit_price": "3.00"})
    assert product.status_code == 201


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = client.post("/api/organizations", json={"name": "Readable Diner", "type": "restaurant"})
    assert create.status_code == 201

    responses = [client.get("/api/organizations") for _ in range(10)]
    assert all(response.status_code == 200 for response in responses)


def test_limiter_can_be_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()

    statuses = [
        client.post("/api/organizations", json={"name": f"Unlimited Grill {index}", "type": "restaurant"}).status_code
        for index in range(5)
    ]
    assert statuses == [201] * 5


def test_limiter_forgets_subjects_idle_for_a_window() -> None:
    now = [1000.0]
    limiter = SlidingWindowLimiter(window_seconds=60, clock=lambda: now[0])

    assert limiter.hit(("ip:10.0.0.1", "organizations"), limit=2) is None
    assert limiter.hit(("ip:10.0.0.2", "contacts"), limit=2) is None
    assert len(limiter.tracked_keys()) == 2

    now[0] += 61
    assert limiter.hit(("ip:10.0.0.3", "organizations"), limit=2) is None
    assert limiter.tracked_keys() == {("ip:10.0.0.3", "organizations")}


def test_limiter_reports_wait_until_oldest_hit_expires() -> None:
    now = [500.0]
    limiter = SlidingWindowLimiter(window_seconds=60, clock=lambda: now[0])
    key = ("user:rep-1", "opportunities")

    assert limiter.hit(key, limit=1) is None
    now[0] += 20
    assert limiter.hit(key, limit=1) == 40.0
    now[0] += 41
    assert limiter.hit(key, limit=1) is None
