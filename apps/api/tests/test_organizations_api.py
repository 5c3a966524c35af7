from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from foodcrm import audit, events
from foodcrm.authz.matrix import SYSTEM_ROLES, permissions_for_role
from foodcrm.core.auth import ActorUser
from foodcrm.core.database import Base, get_db
from foodcrm.core.rbac import get_current_actor
from foodcrm.crm.models import Organization
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
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "admin"}

    def override_get_current_actor(request: Request) -> ActorUser:
        role = state["current"]
        return ActorUser(
            user_id=f"{role}-1",
            organization_id=None,
            roles=[role],
            permissions={f"{resource}.{action}" for resource, action in permissions_for_role(role)},
            role_level=SYSTEM_ROLES[role].level,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(role: str) -> None:
        state["current"] = role

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create(test_client: TestClient, name: str, **extra: object) -> dict:
    payload = {"name": name, "type": "restaurant"}
    payload.update(extra)
    response = test_client.post("/api/organizations", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_duplicate_name_returns_error_envelope(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create(test_client, "Golden Wok")

    response = test_client.post(
        "/api/organizations",
        json={"name": "golden wok", "type": "restaurant"},
        headers={"X-Correlation-Id": "corr-org-dup"},
    )
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "crm_organization_create_failed"
    assert body["message"] == "Failed to create organization: Organization with this name already exists"
    assert body["details"] == "Organization with this name already exists"
    assert body["correlation_id"] == "corr-org-dup"


def test_sales_rep_cannot_create_organization(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("sales_rep")

    response = test_client.post("/api/organizations", json={"name": "Denied Diner", "type": "restaurant"})
    assert response.status_code == 403
    assert response.json()["message"] == "Failed to create organization: Missing permission: organizations.create"


def test_search_filters_by_text_type_and_priority(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create(test_client, "Harbor Seafood", city="Boston", priority="A")
    _create(test_client, "Harbor Supply", type="distributor", priority="B")
    _create(test_client, "Mountain Cafe", city="Denver")

    by_text = test_client.get("/api/organizations/search", params={"q": "harbor"})
    assert by_text.status_code == 200
    assert [row["name"] for row in by_text.json()["data"]] == ["Harbor Seafood", "Harbor Supply"]

    by_type = test_client.get("/api/organizations", params={"q": "harbor", "type": "distributor"})
    assert [row["name"] for row in by_type.json()["data"]] == ["Harbor Supply"]

    by_city = test_client.get("/api/organizations", params={"q": "denver"})
    assert by_city.json()["total"] == 1

    paged = test_client.get("/api/organizations", params={"limit": 2, "page": 2})
    body = paged.json()
    assert body["total"] == 3
    assert body["page"] == 2
    assert [row["name"] for row in body["data"]] == ["Mountain Cafe"]


def test_hierarchy_and_cycle_rejection(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    parent = _create(test_client, "Regional Group")
    child = _create(test_client, "City Outlet", parent_organization_id=parent["id"])

    hierarchy = test_client.get(f"/api/organizations/{parent['id']}/hierarchy")
    assert hierarchy.status_code == 200
    assert [row["id"] for row in hierarchy.json()["children"]] == [child["id"]]

    cycle = test_client.patch(
        f"/api/organizations/{parent['id']}",
        json={"parent_organization_id": child["id"]},
    )
    assert cycle.status_code == 422
    assert cycle.json()["code"] == "crm_organization_update_failed"

    blocked = test_client.delete(f"/api/organizations/{parent['id']}")
    assert blocked.status_code == 409
    assert blocked.json()["code"] == "crm_organization_delete_failed"


def test_merge_via_api(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    target = _create(test_client, "Merge Target")
    source = _create(test_client, "Merge Source", city="Reno")
    contact = test_client.post(
        "/api/contacts",
        json={"organization_id": source["id"], "first_name": "Lee", "last_name": "Chan"},
    )
    assert contact.status_code == 201

    set_actor("manager")
    denied = test_client.post(
        "/api/organizations/merge",
        json={"target_id": target["id"], "source_id": source["id"]},
    )
    assert denied.status_code == 403

    set_actor("admin")
    merged = test_client.post(
        "/api/organizations/merge",
        json={"target_id": target["id"], "source_id": source["id"]},
    )
    assert merged.status_code == 200
    assert merged.json()["city"] == "Reno"

    assert test_client.get(f"/api/organizations/{source['id']}").status_code == 404
    contacts = test_client.get(f"/api/organizations/{target['id']}/contacts")
    assert [row["id"] for row in contacts.json()] == [contact.json()["id"]]


def test_bulk_segment_and_duplicates(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    first = _create(test_client, "Taco Stand")
    second = _create(test_client, "Noodle Bar")

    bulk = test_client.post(
        "/api/organizations/bulk/segment",
        json={"organization_ids": [first["id"], second["id"]], "segment": "quick_service"},
    )
    assert bulk.status_code == 200
    assert {row["segment"] for row in bulk.json()} == {"quick_service"}

    # rows created before name checks existed
    db_session.add(Organization(name="TACO STAND", type="restaurant", priority="C", tags=[]))
    db_session.commit()

    duplicates = test_client.get("/api/organizations/duplicates")
    assert duplicates.status_code == 200
    groups = duplicates.json()
    assert len(groups) == 1
    assert {row["name"] for row in groups[0]} == {"Taco Stand", "TACO STAND"}


def test_analytics_requires_analytics_permission(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    _create(test_client, "Counted One", annual_revenue="1000.00", state="TX")
    _create(test_client, "Counted Two", annual_revenue="3000.00", state="TX")

    analytics = test_client.get("/api/organizations/analytics")
    assert analytics.status_code == 200
    body = analytics.json()
    assert body["total_organizations"] == 2
    assert body["by_state"] == {"TX": 2}
    assert body["average_revenue"] == "2000.00"

    set_actor("viewer")
    denied = test_client.get("/api/organizations/analytics")
    assert denied.status_code == 403
    assert denied.json()["code"] == "crm_organization_analyze_failed"


def test_patch_with_null_tags_is_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create(test_client, "Tagged Taqueria", tags=["tacos"])

    response = test_client.patch(f"/api/organizations/{created['id']}", json={"tags": None})
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "crm_organization_update_failed"
    assert body["message"] == "Failed to update organization: tags must not be null"

    unchanged = test_client.get(f"/api/organizations/{created['id']}")
    assert unchanged.json()["tags"] == ["tacos"]
    assert unchanged.json()["row_version"] == 1
