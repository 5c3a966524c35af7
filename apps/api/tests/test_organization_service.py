from __future__ import annotations

import uuid
from collections.abc import Generator
from typing import Any

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from foodcrm import audit, events
from foodcrm.core.auth import ActorUser
from foodcrm.core.database import Base
from foodcrm.crm.models import Contact, Organization
from foodcrm.crm.schemas import ContactCreate, ContactUpdate, OrganizationCreate, OrganizationUpdate
from foodcrm.crm.service import ContactService, OrganizationService


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
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(
        user_id="org-admin",
        organization_id=None,
        roles=["admin"],
        permissions={"organizations.create", "organizations.update", "organizations.delete"},
        role_level=100,
        correlation_id="corr-org",
    )


def _org(service: OrganizationService, session: Session, actor: ActorUser, name: str, **extra: Any) -> Organization:
    created = service.create_organization(
        session,
        actor,
        OrganizationCreate(name=name, type="restaurant", **extra),
    )
    organization = session.get(Organization, created.id)
    assert organization is not None
    return organization


def test_create_organization_records_audit_and_event(db_session: Session, actor: ActorUser) -> None:
    service = OrganizationService()
    created = service.create_organization(
        db_session,
        actor,
        OrganizationCreate(name="  Harbor Grill  ", type="restaurant", priority="A", tags=["seafood"]),
    )

    assert created.name == "Harbor Grill"
    assert created.priority == "A"
    assert created.row_version == 1
    assert created.created_by == "org-admin"

    entries = audit.entries_for("crm.organization", str(created.id))
    assert [entry["action"] for entry in entries] == ["create"]
    assert entries[0]["correlation_id"] == "corr-org"
    assert events.events_of_type("crm.organization.created")[0]["payload"]["name"] == "Harbor Grill"


def test_duplicate_name_is_rejected_case_and_whitespace_insensitive(db_session: Session, actor: ActorUser) -> None:
    service = OrganizationService()
    _org(service, db_session, actor, "Blue Plate Diner")

    with pytest.raises(HTTPException) as exc_info:
        service.create_organization(db_session, actor, OrganizationCreate(name="  blue plate DINER ", type="restaurant"))
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail == "Organization with this name already exists"


def test_parent_assignment_rejects_self_reference(db_session: Session, actor: ActorUser) -> None:
    service = OrganizationService()
    org = _org(service, db_session, actor, "Solo")

    with pytest.raises(HTTPException) as exc_info:
        service.update_organization(db_session, actor, org.id, OrganizationUpdate(parent_organization_id=org.id))
    assert exc_info.value.status_code == 422
    assert exc_info.value.detail == "Organization cannot be its own parent"


def test_parent_assignment_rejects_indirect_cycle(db_session: Session, actor: ActorUser) -> None:
    service = OrganizationService()
    root = _org(service, db_session, actor, "Root Group")
    middle = _org(service, db_session, actor, "Middle Group", parent_organization_id=root.id)
    leaf = _org(service, db_session, actor, "Leaf Kitchen", parent_organization_id=middle.id)

    assert service.creates_cycle(db_session, root.id, leaf.id) is True
    assert service.creates_cycle(db_session, leaf.id, root.id) is False

    with pytest.raises(HTTPException) as exc_info:
        service.update_organization(db_session, actor, root.id, OrganizationUpdate(parent_organization_id=leaf.id))
    assert exc_info.value.status_code == 422
    assert exc_info.value.detail == "Circular reference detected in organization hierarchy"

    db_session.refresh(root)
    assert root.parent_organization_id is None


def test_update_checks_row_version(db_session: Session, actor: ActorUser) -> None:
    service = OrganizationService()
    org = _org(service, db_session, actor, "Versioned Bistro")

    updated = service.update_organization(
        db_session,
        actor,
        org.id,
        OrganizationUpdate(city="Portland", row_version=1),
    )
    assert updated.row_version == 2
    assert updated.city == "Portland"
    update_entry = audit.entries_for("crm.organization", str(org.id))[-1]
    assert update_entry["action"] == "update"
    assert {"city", "row_version"} <= set(update_entry["changed_fields"])
    assert "name" not in update_entry["changed_fields"]

    with pytest.raises(HTTPException) as exc_info:
        service.update_organization(db_session, actor, org.id, OrganizationUpdate(city="Salem", row_version=1))
    assert exc_info.value.status_code == 409


def test_delete_with_children_is_blocked(db_session: Session, actor: ActorUser) -> None:
    service = OrganizationService()
    parent = _org(service, db_session, actor, "Parent Co")
    _org(service, db_session, actor, "Child Cafe", parent_organization_id=parent.id)

    with pytest.raises(HTTPException) as exc_info:
        service.delete_organization(db_session, actor, parent.id)
    assert exc_info.value.status_code == 409


def test_hierarchy_lists_parent_children_and_siblings(db_session: Session, actor: ActorUser) -> None:
    service = OrganizationService()
    parent = _org(service, db_session, actor, "Holding")
    first = _org(service, db_session, actor, "First Outlet", parent_organization_id=parent.id)
    second = _org(service, db_session, actor, "Second Outlet", parent_organization_id=parent.id)

    hierarchy = service.get_organization_hierarchy(db_session, first.id)
    assert hierarchy.parent is not None and hierarchy.parent.id == parent.id
    assert [row.id for row in hierarchy.siblings] == [second.id]
    assert hierarchy.children == []


def test_merge_moves_contacts_and_soft_deletes_source(db_session: Session, actor: ActorUser) -> None:
    service = OrganizationService()
    contacts = ContactService()
    target = _org(service, db_session, actor, "Target Foods", priority="C")
    source = _org(service, db_session, actor, "Source Foods", priority="A", city="Austin", tags=["bbq"])
    contact = contacts.create_contact(
        db_session,
        actor,
        ContactCreate(organization_id=source.id, first_name="Ana", last_name="Ruiz", email="ana@sourcefoods.com"),
    )

    merged = service.merge_organizations(db_session, actor, target.id, source.id)

    assert merged.id == target.id
    assert merged.city == "Austin"
    assert merged.priority == "A"
    assert merged.tags == ["bbq"]

    moved = db_session.get(Contact, contact.id)
    assert moved is not None
    assert moved.organization_id == target.id

    db_session.refresh(source)
    assert source.deleted_at is not None
    assert source.merged_into_id == target.id

    merged_events = events.events_of_type("crm.organization.merged")
    assert merged_events[0]["payload"]["moved_contacts"] == 1


def test_merge_with_itself_is_rejected(db_session: Session, actor: ActorUser) -> None:
    service = OrganizationService()
    org = _org(service, db_session, actor, "Only One")

    with pytest.raises(HTTPException) as exc_info:
        service.merge_organizations(db_session, actor, org.id, org.id)
    assert exc_info.value.status_code == 422


def test_bulk_priority_reports_missing_ids(db_session: Session, actor: ActorUser) -> None:
    service = OrganizationService()
    org = _org(service, db_session, actor, "Bulk Target")
    ghost = uuid.uuid4()

    updated = service.bulk_update_priority(db_session, actor, [org.id], "B")
    assert [row.priority for row in updated] == ["B"]

    with pytest.raises(HTTPException) as exc_info:
        service.bulk_update_priority(db_session, actor, [org.id, ghost], "A")
    assert exc_info.value.status_code == 404
    assert str(ghost) in exc_info.value.detail


@pytest.mark.parametrize("field", ["type", "priority", "tags"])
def test_update_rejects_clearing_required_organization_fields(
    db_session: Session, actor: ActorUser, field: str
) -> None:
    service = OrganizationService()
    org = _org(service, db_session, actor, "Steady Kitchen", tags=["brunch"])

    with pytest.raises(HTTPException) as exc_info:
        service.update_organization(db_session, actor, org.id, OrganizationUpdate(**{field: None}))
    assert exc_info.value.status_code == 422
    assert exc_info.value.detail == f"{field} must not be null"

    db_session.refresh(org)
    assert org.type == "restaurant"
    assert org.tags == ["brunch"]
    assert org.row_version == 1


def test_update_rejects_clearing_contact_names(db_session: Session, actor: ActorUser) -> None:
    organizations = OrganizationService()
    contacts = ContactService()
    org = _org(organizations, db_session, actor, "Name Check Deli")
    contact = contacts.create_contact(
        db_session,
        actor,
        ContactCreate(organization_id=org.id, first_name="Lena", last_name="Park"),
    )

    with pytest.raises(HTTPException) as exc_info:
        contacts.update_contact(db_session, actor, contact.id, ContactUpdate(first_name=None))
    assert exc_info.value.status_code == 422
    assert exc_info.value.detail == "first_name must not be null"
    assert db_session.get(Contact, contact.id).first_name == "Lena"
