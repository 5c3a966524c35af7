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
from foodcrm.auth.models import AppUser
from foodcrm.authz.matrix import SYSTEM_ROLES, permissions_for_role
from foodcrm.core.auth import ActorUser
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
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()


@pytest.fixture()
def target_user(db_session: Session) -> uuid.UUID:
    user = AppUser(email="new.hire@foodcrm.com", first_name="New", last_name="Hire", email_verified=True)
    db_session.add(user)
    db_session.commit()
    return user.id


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor(request: Request) -> ActorUser:
        role = request.headers.get("x-test-role", "admin")
        return ActorUser(
            user_id=f"{role}-1",
            organization_id=None,
            roles=[role],
            permissions={f"{resource}.{action}" for resource, action in permissions_for_role(role)},
            role_level=SYSTEM_ROLES[role].level,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        test_client.post("/api/rbac/initialize")
        yield test_client
    app.dependency_overrides.clear()


def test_initialize_requires_system_configure(client: TestClient) -> None:
    again = client.post("/api/rbac/initialize")
    assert again.status_code == 200
    assert again.json() == {"roles_created": 0, "permissions_created": 0, "links_created": 0}

    denied = client.post("/api/rbac/initialize", headers={"x-test-role": "manager"})
    assert denied.status_code == 403
    assert denied.json()["code"] == "rbac_roles_initialize_failed"


def test_list_roles_includes_permission_keys(client: TestClient) -> None:
    response = client.get("/api/rbac/roles", headers={"x-test-role": "viewer"})
    assert response.status_code == 200
    by_name = {role["name"]: role for role in response.json()}
    assert set(by_name) == {"admin", "manager", "sales_rep", "viewer"}
    assert "system.configure" in by_name["admin"]["permissions"]
    assert "system.monitor" in by_name["manager"]["permissions"]


def test_manager_cannot_grant_role_above_own_level(client: TestClient, target_user: uuid.UUID) -> None:
    denied = client.post(
        f"/api/rbac/users/{target_user}/roles",
        json={"role_name": "admin"},
        headers={"x-test-role": "manager"},
    )
    assert denied.status_code == 403
    body = denied.json()
    assert body["code"] == "rbac_role_assign_failed"
    assert body["message"] == "Failed to assign role: Cannot manage role above own access level: admin"

    granted = client.post(
        f"/api/rbac/users/{target_user}/roles",
        json={"role_name": "sales_rep"},
        headers={"x-test-role": "manager", "X-Correlation-Id": "corr-grant"},
    )
    assert granted.status_code == 201
    assert granted.json()["assigned_by"] == "manager-1"
    assert events.events_of_type("authz.role_assigned")[0]["correlation_id"] == "corr-grant"


def test_sales_rep_cannot_assign_roles(client: TestClient, target_user: uuid.UUID) -> None:
    denied = client.post(
        f"/api/rbac/users/{target_user}/roles",
        json={"role_name": "viewer"},
        headers={"x-test-role": "sales_rep"},
    )
    assert denied.status_code == 403
    assert denied.json()["message"] == "Failed to assign role: Missing permission: users.update"


def test_assign_check_revoke_and_audit_log(client: TestClient, target_user: uuid.UUID) -> None:
    assigned = client.post(f"/api/rbac/users/{target_user}/roles", json={"role_name": "manager"})
    assert assigned.status_code == 201

    roles = client.get(f"/api/rbac/users/{target_user}/roles")
    assert [row["role_name"] for row in roles.json()] == ["manager"]

    effective = client.get(f"/api/rbac/users/{target_user}/permissions")
    assert effective.status_code == 200
    assert effective.json()["access_level"] == "manager"
    assert "contacts.delete" in effective.json()["permissions"]

    check = client.post(
        "/api/rbac/check",
        json={"user_id": str(target_user), "resource": "products", "action": "delete"},
    )
    assert check.json() == {"allowed": False, "reason": "missing permission products.delete"}

    revoked = client.request("DELETE", f"/api/rbac/users/{target_user}/roles", json={"role_name": "manager"})
    assert revoked.status_code == 200
    assert revoked.json() == {"status": "revoked", "revoked_assignments": 1}

    missing = client.request("DELETE", f"/api/rbac/users/{target_user}/roles", json={"role_name": "manager"})
    assert missing.status_code == 404
    assert missing.json()["code"] == "rbac_role_revoke_failed"

    log = client.get("/api/rbac/audit-log", params={"user_id": str(target_user)})
    assert log.status_code == 200
    assert [entry["action"] for entry in log.json()] == ["role_revoked", "role_assigned"]

    viewer_log = client.get("/api/rbac/audit-log", headers={"x-test-role": "viewer"})
    assert viewer_log.status_code == 403
