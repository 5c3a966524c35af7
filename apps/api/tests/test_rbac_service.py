from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.requests import Request

from foodcrm import audit, events
from foodcrm.auth.models import AppUser
from foodcrm.authz.models import Role, UserRole
from foodcrm.authz.schemas import PermissionCheckContext
from foodcrm.authz.service import RBACService
from foodcrm.core.auth import AuthUser
from foodcrm.core.database import Base
from foodcrm.core.rbac import get_current_actor
from foodcrm.crm.models import Organization


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
def service(db_session: Session) -> RBACService:
    rbac = RBACService()
    rbac.initialize_default_roles(db_session)
    return rbac


@pytest.fixture()
def orgs(db_session: Session) -> dict[str, uuid.UUID]:
    north = Organization(name="North Region", type="distributor", priority="B", tags=[])
    south = Organization(name="South Region", type="distributor", priority="B", tags=[])
    db_session.add_all([north, south])
    db_session.commit()
    return {"north": north.id, "south": south.id}


def _user(db_session: Session, email: str, organization_id: uuid.UUID | None = None, **extra: object) -> AppUser:
    user = AppUser(email=email, first_name="Test", last_name="User", organization_id=organization_id, **extra)
    db_session.add(user)
    db_session.commit()
    return user


def test_initialize_default_roles_is_idempotent(db_session: Session, service: RBACService) -> None:
    again = service.initialize_default_roles(db_session)
    assert (again.roles_created, again.permissions_created, again.links_created) == (0, 0, 0)

    roles = service.list_roles(db_session)
    assert [(role.name, role.level) for role in roles] == [
        ("admin", 100),
        ("manager", 75),
        ("sales_rep", 50),
        ("viewer", 25),
    ]
    viewer = next(role for role in roles if role.name == "viewer")
    assert "contacts.read" in viewer.permissions
    assert "contacts.create" not in viewer.permissions


def test_user_without_roles_is_denied(db_session: Session, service: RBACService) -> None:
    user = _user(db_session, "nobody@foodcrm.com")

    result = service.check_permission(db_session, user.id, "contacts", "read")
    assert result.allowed is False
    assert result.reason == "no active roles"

    effective = service.get_effective_permissions(db_session, user.id)
    assert effective.access_level == "none"
    assert effective.permissions == []
    assert "email_verification_required" in effective.restrictions


def test_assign_role_grants_matrix_permissions(db_session: Session, service: RBACService) -> None:
    user = _user(db_session, "rep@foodcrm.com", email_verified=True)

    assignment = service.assign_user_role(db_session, user.id, "sales_rep", "admin-1", correlation_id="corr-rbac")
    assert assignment.role_name == "sales_rep"
    assert assignment.role_level == 50

    permissions = service.get_user_permissions(db_session, user.id)
    assert "contacts.update" in permissions
    assert "contacts.delete" not in permissions

    denied = service.check_permission(db_session, user.id, "contacts", "delete")
    assert denied.reason == "missing permission contacts.delete"
    assert service.check_permission(db_session, user.id, "contacts", "update").allowed is True

    effective = service.get_effective_permissions(db_session, user.id)
    assert effective.access_level == "sales_rep"
    assert effective.restrictions == ["no_admin_functions"]

    assigned_events = events.events_of_type("authz.role_assigned")
    assert assigned_events[0]["payload"]["role"] == "sales_rep"
    assert assigned_events[0]["correlation_id"] == "corr-rbac"

    log = service.get_permission_audit_log(db_session, user.id)
    assert [entry.action for entry in log] == ["role_assigned"]
    assert log[0].metadata["role"] == "sales_rep"


def test_duplicate_and_past_expiry_assignments_are_rejected(db_session: Session, service: RBACService) -> None:
    user = _user(db_session, "dup@foodcrm.com")
    service.assign_user_role(db_session, user.id, "viewer", "admin-1")

    with pytest.raises(HTTPException) as duplicate:
        service.assign_user_role(db_session, user.id, "viewer", "admin-1")
    assert duplicate.value.status_code == 409

    with pytest.raises(HTTPException) as expired:
        service.assign_user_role(
            db_session,
            user.id,
            "manager",
            "admin-1",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
    assert expired.value.status_code == 422

    with pytest.raises(HTTPException) as unknown:
        service.assign_user_role(db_session, user.id, "chef", "admin-1")
    assert unknown.value.status_code == 404


def test_expired_assignment_stops_granting(db_session: Session, service: RBACService) -> None:
    user = _user(db_session, "temp@foodcrm.com")
    manager = db_session.scalar(select(Role).where(Role.name == "manager"))
    assert manager is not None
    db_session.add(
        UserRole(
            user_id=user.id,
            role_id=manager.id,
            assigned_by="admin-1",
            expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
    )
    db_session.commit()

    assert service.resolve_access(db_session, user.id).roles == []
    assert service.check_permission(db_session, user.id, "contacts", "read").reason == "no active roles"

    # an expired row does not block a fresh assignment
    service.assign_user_role(db_session, user.id, "manager", "admin-1")
    assert service.resolve_access(db_session, user.id).level == 75


def test_revoke_removes_access(db_session: Session, service: RBACService) -> None:
    user = _user(db_session, "leaver@foodcrm.com")
    service.assign_user_role(db_session, user.id, "manager", "admin-1")

    assert service.revoke_user_role(db_session, user.id, "manager", "admin-1") == 1
    assert service.get_user_roles(db_session, user.id) == []
    assert events.events_of_type("authz.role_revoked")

    with pytest.raises(HTTPException) as exc_info:
        service.revoke_user_role(db_session, user.id, "manager", "admin-1")
    assert exc_info.value.status_code == 404


def test_organization_scoped_assignments(
    db_session: Session,
    service: RBACService,
    orgs: dict[str, uuid.UUID],
) -> None:
    user = _user(db_session, "scoped@foodcrm.com", orgs["north"])
    service.assign_user_role(db_session, user.id, "sales_rep", "admin-1", organization_id=orgs["north"])

    inside = service.check_permission(
        db_session,
        user.id,
        "opportunities",
        "update",
        PermissionCheckContext(organization_id=orgs["north"]),
    )
    assert inside.allowed is True

    outside = service.check_permission(
        db_session,
        user.id,
        "opportunities",
        "update",
        PermissionCheckContext(organization_id=orgs["south"]),
    )
    assert outside.allowed is False
    assert outside.reason == "no active roles"

    # a global grant applies everywhere, but crossing organizations still needs admin
    service.assign_user_role(db_session, user.id, "viewer", "admin-1")
    cross = service.check_permission(
        db_session,
        user.id,
        "contacts",
        "read",
        PermissionCheckContext(organization_id=orgs["south"]),
    )
    assert cross.reason == "cross-organization access requires admin"


def test_resource_ownership_requires_manager(db_session: Session, service: RBACService) -> None:
    rep = _user(db_session, "owner-rep@foodcrm.com")
    boss = _user(db_session, "boss@foodcrm.com")
    service.assign_user_role(db_session, rep.id, "sales_rep", "admin-1")
    service.assign_user_role(db_session, boss.id, "manager", "admin-1")
    context = PermissionCheckContext(resource_owner_id="someone-else")

    assert service.check_permission(db_session, rep.id, "opportunities", "update", context).reason == (
        "resource is owned by another user"
    )
    own = PermissionCheckContext(resource_owner_id=str(rep.id))
    assert service.check_permission(db_session, rep.id, "opportunities", "update", own).allowed is True
    assert service.check_permission(db_session, boss.id, "opportunities", "update", context).reason == "granted"


def test_current_actor_carries_access_level_restrictions(db_session: Session, service: RBACService) -> None:
    user = _user(db_session, "unverified.rep@foodcrm.com", email_verified=False)
    service.assign_user_role(db_session, user.id, "sales_rep", "admin-1")
    request = Request({"type": "http", "method": "GET", "path": "/api/contacts", "headers": []})

    actor = get_current_actor(request, db_session, AuthUser(sub=str(user.id), session_id="s-1"))

    assert actor.roles == ["sales_rep"]
    assert actor.role_level == 50
    assert actor.restrictions == ["no_admin_functions", "email_verification_required"]
