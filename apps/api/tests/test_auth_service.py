from __future__ import annotations

import uuid
from collections.abc import Generator
from typing import Any

import httpx
import pyotp
import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from foodcrm import audit, events
from foodcrm.auth.identity import IdentityError, IdentityUser
from foodcrm.auth.models import AppUser, LoginAttempt, UserSession
from foodcrm.auth.passwords import check_password_breach, validate_password_strength
from foodcrm.auth.schemas import RegisterRequest
from foodcrm.auth.service import AuthService
from foodcrm.authz.service import RBACService
from foodcrm.core.config import Settings
from foodcrm.core.database import Base

GOOD_PASSWORD = "Br1sket!Smoke"


class FakeIdentityProvider:
    def __init__(self, *, confirm_on_create: bool = True) -> None:
        self.confirm_on_create = confirm_on_create
        self.users: dict[str, dict[str, Any]] = {}
        self.deleted: list[str] = []
        self.reset_requests: list[str] = []

    def sign_in(self, email: str, password: str) -> IdentityUser:
        record = self.users.get(email)
        if record is None or record["password"] != password:
            raise IdentityError("Invalid login credentials")
        return IdentityUser(id=record["id"], email=email, email_confirmed=record["confirmed"])

    def create_user(self, email: str, password: str, metadata: dict[str, Any]) -> IdentityUser:
        if email in self.users:
            raise IdentityError("User already registered")
        record = {"id": str(uuid.uuid4()), "password": password, "confirmed": self.confirm_on_create, "metadata": metadata}
        self.users[email] = record
        return IdentityUser(id=record["id"], email=email, email_confirmed=record["confirmed"])

    def delete_user(self, user_id: str) -> None:
        self.deleted.append(user_id)
        self.users = {email: row for email, row in self.users.items() if row["id"] != user_id}

    def update_password(self, user_id: str, password: str) -> None:
        for record in self.users.values():
            if record["id"] == user_id:
                record["password"] = password

    def send_password_reset(self, email: str) -> None:
        self.reset_requests.append(email)

    def confirm(self, email: str) -> None:
        self.users[email]["confirmed"] = True


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
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture()
def service(db_session: Session, identity: FakeIdentityProvider) -> AuthService:
    RBACService().initialize_default_roles(db_session)
    return AuthService(identity)


def _register(service: AuthService, db_session: Session, email: str = "maria@bayviewhotel.com", **extra: Any):
    payload = {"email": email, "password": GOOD_PASSWORD, "first_name": "Maria", "last_name": "Rossi"}
    payload.update(extra)
    return service.register_user(db_session, RegisterRequest(**payload))


def test_password_policy_reports_every_failure() -> None:
    weak = validate_password_strength("password", min_length=8)
    assert weak.is_valid is False
    assert "Password must contain at least one uppercase letter" in weak.errors
    assert "Password must contain at least one number" in weak.errors
    assert "Password contains common words and is not secure" in weak.errors

    personal = validate_password_strength("Rossi#2024x", {"email": "m@x.com", "last_name": "Rossi"}, min_length=8)
    assert personal.errors == ["Password cannot contain personal information"]
    assert personal.score == 4

    strong = validate_password_strength(GOOD_PASSWORD, min_length=8)
    assert strong.is_valid is True
    assert strong.score == 5


def test_breach_check_uses_range_lookup() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        # sha1("password") is 5BAA6 followed by this suffix
        return httpx.Response(200, text="1E4C9B93F3F0682250B6CF8331B7EE68FD8:3861493\nFFFFF:1")

    settings = Settings(password_breach_check_enabled=True)
    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        assert check_password_breach("password", settings=settings, client=client) is True
        assert check_password_breach("Br1sket!Smoke", settings=settings, client=client) is False
    assert seen[0].endswith("/5BAA6")

    assert check_password_breach("password", settings=Settings(password_breach_check_enabled=False)) is False


def test_register_creates_profile_and_default_role(
    db_session: Session,
    service: AuthService,
    identity: FakeIdentityProvider,
) -> None:
    registered = _register(service, db_session, email="Maria@BayviewHotel.com")

    assert registered.user.email == "maria@bayviewhotel.com"
    assert registered.user.roles == ["sales_rep"]
    assert "contacts.create" in registered.user.permissions
    assert registered.email_verification_required is False
    assert str(registered.user.id) == identity.users["maria@bayviewhotel.com"]["id"]
    assert events.events_of_type("auth.user.registered")[0]["payload"]["role"] == "sales_rep"

    with pytest.raises(HTTPException) as duplicate:
        _register(service, db_session, email="maria@bayviewhotel.com")
    assert duplicate.value.status_code == 409


def test_register_rejects_weak_password(db_session: Session, service: AuthService, identity: FakeIdentityProvider) -> None:
    with pytest.raises(HTTPException) as exc_info:
        _register(service, db_session, password="maria123")
    assert exc_info.value.status_code == 422
    assert exc_info.value.detail.startswith("Password validation failed: ")
    assert "Password cannot contain personal information" in exc_info.value.detail
    assert identity.users == {}


def test_register_rolls_back_when_role_assignment_fails(db_session: Session, identity: FakeIdentityProvider) -> None:
    # no default roles seeded, so assigning sales_rep fails
    service = AuthService(identity)

    with pytest.raises(HTTPException) as exc_info:
        _register(service, db_session)
    assert exc_info.value.status_code == 404
    assert exc_info.value.detail == "Role not found: sales_rep"

    assert db_session.scalar(select(func.count()).select_from(AppUser)) == 0
    assert len(identity.deleted) == 1
    assert identity.users == {}


def test_login_issues_session_and_counts_logins(db_session: Session, service: AuthService) -> None:
    _register(service, db_session)

    response = service.login_user(db_session, "maria@bayviewhotel.com", GOOD_PASSWORD, "10.0.0.5", "Mozilla/5.0 (iPhone)")
    assert response.mfa_required is False
    assert response.tokens is not None
    assert response.user is not None and response.user.login_count == 1

    user_session = db_session.get(UserSession, response.tokens.session_id)
    assert user_session is not None
    assert user_session.device_type == "mobile"
    assert user_session.ip_address == "10.0.0.5"
    assert events.events_of_type("auth.user.logged_in")


def test_repeated_failures_lock_the_account(db_session: Session, service: AuthService) -> None:
    _register(service, db_session)

    for _ in range(5):
        with pytest.raises(HTTPException) as failed:
            service.login_user(db_session, "maria@bayviewhotel.com", "Wrong!Pass1", "10.0.0.5", None)
        assert failed.value.status_code == 401
        assert failed.value.detail == "Invalid credentials"

    with pytest.raises(HTTPException) as locked:
        service.login_user(db_session, "maria@bayviewhotel.com", GOOD_PASSWORD, "10.0.0.5", None)
    assert locked.value.status_code == 423
    assert locked.value.detail.startswith("Account is locked due to too many failed attempts")

    reasons = db_session.scalars(select(LoginAttempt.failure_reason).order_by(LoginAttempt.attempted_at)).all()
    assert reasons.count("invalid_credentials") == 5
    assert reasons[-1] == "account_locked"


def test_unverified_email_blocks_login_until_confirmed(db_session: Session) -> None:
    RBACService().initialize_default_roles(db_session)
    identity = FakeIdentityProvider(confirm_on_create=False)
    service = AuthService(identity)
    registered = _register(service, db_session)
    assert registered.email_verification_required is True

    with pytest.raises(HTTPException) as exc_info:
        service.login_user(db_session, "maria@bayviewhotel.com", GOOD_PASSWORD, None, None)
    assert exc_info.value.status_code == 403
    assert exc_info.value.detail == "Email verification required. Please check your email."

    identity.confirm("maria@bayviewhotel.com")
    response = service.login_user(db_session, "maria@bayviewhotel.com", GOOD_PASSWORD, None, None)
    assert response.user is not None and response.user.email_verified is True


def test_inactive_user_cannot_log_in(db_session: Session, service: AuthService) -> None:
    registered = _register(service, db_session)
    user = db_session.get(AppUser, registered.user.id)
    assert user is not None
    user.is_active = False
    db_session.commit()

    with pytest.raises(HTTPException) as exc_info:
        service.login_user(db_session, "maria@bayviewhotel.com", GOOD_PASSWORD, None, None)
    assert exc_info.value.detail == "Account is inactive"


def test_mfa_enrollment_and_login(db_session: Session, service: AuthService) -> None:
    registered = _register(service, db_session)
    user_id = registered.user.id

    secret, uri = service.generate_mfa_secret(db_session, user_id)
    assert uri.startswith("otpauth://totp/")
    assert "Food%20Service%20CRM" in uri

    with pytest.raises(HTTPException) as invalid:
        service.enable_mfa(db_session, user_id, "abcdef")
    assert invalid.value.status_code == 422
    assert invalid.value.detail == "Invalid MFA token"

    service.enable_mfa(db_session, user_id, pyotp.TOTP(secret).now())
    assert service.get_current_user(db_session, user_id).mfa_enabled is True

    challenge = service.login_user(db_session, "maria@bayviewhotel.com", GOOD_PASSWORD, None, None)
    assert challenge.mfa_required is True
    assert challenge.tokens is None

    with pytest.raises(HTTPException) as wrong_code:
        service.login_user(db_session, "maria@bayviewhotel.com", GOOD_PASSWORD, None, None, mfa_code="12-34-5x")
    assert wrong_code.value.detail == "Invalid MFA code"

    code = pyotp.TOTP(secret).now()
    completed = service.login_user(db_session, "maria@bayviewhotel.com", GOOD_PASSWORD, None, None, mfa_code=code)
    assert completed.tokens is not None

    service.disable_mfa(db_session, user_id, pyotp.TOTP(secret).now())
    user = db_session.get(AppUser, user_id)
    assert user is not None
    assert user.mfa_enabled is False
    assert user.mfa_secret is None


def test_change_password_invalidates_other_sessions(
    db_session: Session,
    service: AuthService,
    identity: FakeIdentityProvider,
) -> None:
    registered = _register(service, db_session)
    first = service.login_user(db_session, "maria@bayviewhotel.com", GOOD_PASSWORD, None, None)
    second = service.login_user(db_session, "maria@bayviewhotel.com", GOOD_PASSWORD, None, None)
    assert first.tokens is not None and second.tokens is not None

    with pytest.raises(HTTPException) as wrong:
        service.change_password(db_session, registered.user.id, "Not!Right1", "Fresh#Herbs42")
    assert wrong.value.status_code == 401

    invalidated = service.change_password(
        db_session,
        registered.user.id,
        GOOD_PASSWORD,
        "Fresh#Herbs42",
        current_session_id=second.tokens.session_id,
    )
    assert invalidated == 1
    assert identity.users["maria@bayviewhotel.com"]["password"] == "Fresh#Herbs42"

    dropped = db_session.get(UserSession, first.tokens.session_id)
    assert dropped is not None and dropped.invalidation_reason == "password_changed"
    kept = db_session.get(UserSession, second.tokens.session_id)
    assert kept is not None and kept.is_active is True


def test_password_reset_does_not_reveal_unknown_addresses(
    db_session: Session,
    service: AuthService,
    identity: FakeIdentityProvider,
) -> None:
    _register(service, db_session)

    service.request_password_reset(db_session, "nobody@bayviewhotel.com")
    service.request_password_reset(db_session, "MARIA@bayviewhotel.com")
    assert identity.reset_requests == ["maria@bayviewhotel.com"]
