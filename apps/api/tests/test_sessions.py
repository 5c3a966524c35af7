from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from foodcrm.auth.models import AppUser, SessionActivity, UserSession
from foodcrm.auth.sessions import SessionConfig, SessionService, detect_device_type
from foodcrm.core.auth import decode_access_token
from foodcrm.core.database import Base, utcnow


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


@pytest.fixture()
def user(db_session: Session) -> AppUser:
    row = AppUser(email="line.cook@summitgrill.com", first_name="Line", last_name="Cook", email_verified=True)
    db_session.add(row)
    db_session.commit()
    return row


def _activities(db_session: Session, session_row: UserSession) -> list[str]:
    return list(
        db_session.scalars(
            select(SessionActivity.activity)
            .where(SessionActivity.session_id == session_row.id)
            .order_by(SessionActivity.created_at)
        ).all()
    )


def test_access_token_carries_session_claims(db_session: Session, user: AppUser) -> None:
    service = SessionService(SessionConfig())
    issued = service.create_session(db_session, user.id, "10.1.1.1", "Mozilla/5.0 (Windows NT 10.0)")

    claims = decode_access_token(issued.access_token)
    assert claims["sub"] == str(user.id)
    assert claims["sid"] == str(issued.session.id)
    assert claims["typ"] == "access"
    assert issued.session.device_type == "desktop"
    assert _activities(db_session, issued.session) == ["created"]

    assert service.validate_session(db_session, issued.access_token).id == issued.session.id
    assert service.validate_session(db_session, "not-a-token") is None


def test_concurrent_session_cap_evicts_least_recently_active(db_session: Session, user: AppUser) -> None:
    service = SessionService(SessionConfig(max_concurrent_sessions=2))
    oldest = service.create_session(db_session, user.id, None, None)
    newer = service.create_session(db_session, user.id, None, None)
    oldest.session.last_activity_at = utcnow() - timedelta(hours=2)
    newer.session.last_activity_at = utcnow() - timedelta(hours=1)
    db_session.commit()

    latest = service.create_session(db_session, user.id, None, None)

    evicted = db_session.get(UserSession, oldest.session.id)
    assert evicted is not None
    assert evicted.is_active is False
    assert evicted.invalidation_reason == "session_limit"
    active_ids = {row.id for row in service.get_active_sessions(db_session, user.id)}
    assert active_ids == {newer.session.id, latest.session.id}


def test_refresh_rotates_tokens(db_session: Session, user: AppUser) -> None:
    service = SessionService(SessionConfig())
    issued = service.create_session(db_session, user.id, "10.1.1.1", None)

    refreshed = service.refresh_session(db_session, issued.refresh_token, "10.1.1.1", "Mozilla/5.0 (iPad)")
    assert refreshed.session.id == issued.session.id
    assert refreshed.refresh_token != issued.refresh_token
    assert refreshed.access_token != issued.access_token
    assert refreshed.session.device_type == "tablet"

    with pytest.raises(HTTPException) as reused:
        service.refresh_session(db_session, issued.refresh_token, "10.1.1.1", None)
    assert reused.value.status_code == 401
    assert reused.value.detail == "Invalid refresh token"

    assert service.validate_session(db_session, issued.access_token) is None
    assert service.validate_session(db_session, refreshed.access_token) is not None
    assert _activities(db_session, issued.session) == ["created", "refreshed"]


def test_refresh_without_rotation_keeps_refresh_token(db_session: Session, user: AppUser) -> None:
    service = SessionService(SessionConfig(rotate_refresh_tokens=False))
    issued = service.create_session(db_session, user.id, None, None)

    refreshed = service.refresh_session(db_session, issued.refresh_token, None, None)
    assert refreshed.refresh_token == issued.refresh_token


def test_expired_access_token_keeps_session_alive(db_session: Session, user: AppUser) -> None:
    service = SessionService(SessionConfig())
    issued = service.create_session(db_session, user.id, None, None)
    issued.session.expires_at = utcnow() - timedelta(minutes=1)
    db_session.commit()

    assert service.validate_session(db_session, issued.access_token) is None
    row = db_session.get(UserSession, issued.session.id)
    assert row is not None and row.is_active is True

    refreshed = service.refresh_session(db_session, issued.refresh_token, None, None)
    assert service.validate_session(db_session, refreshed.access_token) is not None


def test_expired_refresh_token_ends_session(db_session: Session, user: AppUser) -> None:
    service = SessionService(SessionConfig())
    issued = service.create_session(db_session, user.id, None, None)
    issued.session.refresh_expires_at = utcnow() - timedelta(seconds=1)
    db_session.commit()

    with pytest.raises(HTTPException) as exc_info:
        service.refresh_session(db_session, issued.refresh_token, None, None)
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Refresh token expired"

    row = db_session.get(UserSession, issued.session.id)
    assert row is not None
    assert row.is_active is False
    assert row.invalidation_reason == "refresh_expired"


def test_ip_binding_rejects_other_addresses(db_session: Session, user: AppUser) -> None:
    service = SessionService(SessionConfig(require_ip_match=True))
    issued = service.create_session(db_session, user.id, "10.1.1.1", None)

    assert service.validate_session(db_session, issued.access_token, ip_address="10.9.9.9") is None
    assert service.validate_session(db_session, issued.access_token, ip_address="10.1.1.1") is not None

    with pytest.raises(HTTPException) as exc_info:
        service.refresh_session(db_session, issued.refresh_token, "10.9.9.9", None)
    assert exc_info.value.detail == "IP address validation failed"
    assert _activities(db_session, issued.session).count("ip_mismatch") == 2


def test_invalidate_all_except_current(db_session: Session, user: AppUser) -> None:
    service = SessionService(SessionConfig())
    keep = service.create_session(db_session, user.id, None, None)
    service.create_session(db_session, user.id, None, None)
    service.create_session(db_session, user.id, None, None)

    assert service.invalidate_all_user_sessions(db_session, user.id, except_session_id=keep.session.id) == 2
    assert [row.id for row in service.get_active_sessions(db_session, user.id)] == [keep.session.id]

    service.invalidate_session(db_session, keep.session.id)
    assert service.get_active_sessions(db_session, user.id) == []

    with pytest.raises(HTTPException) as exc_info:
        service.invalidate_session(db_session, uuid.uuid4())
    assert exc_info.value.status_code == 404


def test_cleanup_and_analytics(db_session: Session, user: AppUser) -> None:
    service = SessionService(SessionConfig())
    stale = service.create_session(db_session, user.id, "10.1.1.1", "Mozilla/5.0 (Android) Mobile")
    service.create_session(db_session, user.id, "10.2.2.2", "Mozilla/5.0 (Macintosh)")
    stale.session.refresh_expires_at = utcnow() - timedelta(days=1)
    db_session.commit()

    analytics = service.get_session_analytics(db_session, user.id)
    assert analytics["total_sessions"] == 2
    assert analytics["active_sessions"] == 1
    assert analytics["expired_sessions"] == 1
    assert analytics["unique_devices"] == 2
    assert analytics["unique_ip_addresses"] == 2

    assert service.cleanup_expired_sessions(db_session) == 1
    assert service.cleanup_expired_sessions(db_session) == 0
    row = db_session.get(UserSession, stale.session.id)
    assert row is not None and row.invalidation_reason == "expired"


def test_inactive_user_cannot_open_session(db_session: Session, user: AppUser) -> None:
    user.is_active = False
    db_session.commit()

    with pytest.raises(HTTPException) as exc_info:
        SessionService(SessionConfig()).create_session(db_session, user.id, None, None)
    assert exc_info.value.detail == "Invalid user"


def test_detect_device_type() -> None:
    assert detect_device_type(None) == "unknown"
    assert detect_device_type("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0)") == "mobile"
    assert detect_device_type("Mozilla/5.0 (iPad; CPU OS 17_0)") == "tablet"
    assert detect_device_type("curl/8.4") == "desktop"
