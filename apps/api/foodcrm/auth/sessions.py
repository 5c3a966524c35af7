"""Server-side session tracking.

Every login produces a ``UserSession`` row holding SHA-256 hashes of a signed
access token and an opaque refresh token. Requests are only authenticated while
the row is active and unexpired, which is what makes logout and revocation work
for otherwise stateless JWTs.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import HTTPException, status
from jose import jwt
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from foodcrm.auth.models import AppUser, SessionActivity, UserSession
from foodcrm.core.config import Settings, get_settings
from foodcrm.core.database import as_utc, utcnow
from foodcrm.core.errors import store_errors
from foodcrm.metrics import observe_session_event, set_active_sessions

logger = logging.getLogger("foodcrm.auth.sessions")
tracer = trace.get_tracer("foodcrm.auth.sessions")


@dataclass
class SessionConfig:
    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 30 * 24 * 3600
    max_concurrent_sessions: int = 5
    rotate_refresh_tokens: bool = True
    require_ip_match: bool = False
    track_activity: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionConfig:
        return cls(
            access_token_ttl_seconds=settings.session_access_token_ttl_seconds,
            refresh_token_ttl_seconds=settings.session_refresh_token_ttl_seconds,
            max_concurrent_sessions=settings.session_max_concurrent,
            rotate_refresh_tokens=settings.session_rotate_refresh_tokens,
            require_ip_match=settings.session_require_ip_match,
            track_activity=settings.session_track_activity,
        )


@dataclass
class IssuedSession:
    session: UserSession
    access_token: str
    refresh_token: str

    @property
    def expires_at(self) -> datetime:
        return self.session.expires_at

    @property
    def refresh_expires_at(self) -> datetime:
        return self.session.refresh_expires_at


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def detect_device_type(user_agent: str | None) -> str:
    if not user_agent:
        return "unknown"
    lowered = user_agent.lower()
    if "ipad" in lowered or "tablet" in lowered:
        return "tablet"
    if "mobile" in lowered or "iphone" in lowered or "android" in lowered:
        return "mobile"
    return "desktop"


def _is_expired(moment: datetime, now: datetime) -> bool:
    return as_utc(moment) <= now


class SessionService:
    def __init__(self, config: SessionConfig | None = None) -> None:
        self._config = config

    @property
    def config(self) -> SessionConfig:
        return self._config or SessionConfig.from_settings(get_settings())

    def issue_access_token(self, user: AppUser, session_id: uuid.UUID, expires_at: datetime) -> str:
        settings = get_settings()
        claims = {
            "sub": str(user.id),
            "sid": str(session_id),
            "typ": "access",
            "email": user.email,
            "iat": utcnow(),
            "exp": expires_at,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    def create_session(
        self,
        db: Session,
        user_id: uuid.UUID,
        ip_address: str | None,
        user_agent: str | None,
        *,
        config: SessionConfig | None = None,
    ) -> IssuedSession:
        config = config or self.config
        user = db.get(AppUser, user_id)
        if user is None or not user.is_active:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")

        now = utcnow()
        with store_errors(db, "create session"):
            self._expire_stale(db, user.id, now)
            active = list(
                db.scalars(
                    select(UserSession)
                    .where(UserSession.user_id == user.id, UserSession.is_active.is_(True))
                    .order_by(UserSession.last_activity_at.asc(), UserSession.created_at.asc())
                ).all()
            )
            while active and len(active) >= config.max_concurrent_sessions:
                evicted = active.pop(0)
                self._invalidate(db, evicted, "session_limit", now)
                observe_session_event("evicted")

            session_id = uuid.uuid4()
            expires_at = now + timedelta(seconds=config.access_token_ttl_seconds)
            access_token = self.issue_access_token(user, session_id, expires_at)
            refresh_token = secrets.token_hex(32)
            user_session = UserSession(
                id=session_id,
                user_id=user.id,
                access_token_hash=hash_token(access_token),
                refresh_token_hash=hash_token(refresh_token),
                ip_address=ip_address,
                user_agent=user_agent[:500] if user_agent else None,
                device_type=detect_device_type(user_agent),
                created_at=now,
                expires_at=expires_at,
                refresh_expires_at=now + timedelta(seconds=config.refresh_token_ttl_seconds),
                last_activity_at=now,
            )
            db.add(user_session)
            db.flush()
            self._log_activity(db, user_session, "created", ip_address, user_agent)
            db.commit()

        observe_session_event("created")
        logger.info("session.created", extra={"user_id": str(user.id), "session_id": str(session_id)})
        return IssuedSession(session=user_session, access_token=access_token, refresh_token=refresh_token)

    def refresh_session(
        self,
        db: Session,
        refresh_token: str,
        ip_address: str | None,
        user_agent: str | None,
        *,
        config: SessionConfig | None = None,
    ) -> IssuedSession:
        config = config or self.config
        with tracer.start_as_current_span("auth.session.refresh"):
            user_session = db.scalar(
                select(UserSession).where(UserSession.refresh_token_hash == hash_token(refresh_token))
            )
            if user_session is None or not user_session.is_active:
                observe_session_event("refresh_rejected")
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token")

            now = utcnow()
            if _is_expired(user_session.refresh_expires_at, now):
                with store_errors(db, "expire session"):
                    self._invalidate(db, user_session, "refresh_expired", now)
                    db.commit()
                observe_session_event("expired")
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token expired")

            if config.require_ip_match and user_session.ip_address and ip_address != user_session.ip_address:
                with store_errors(db, "record session activity"):
                    self._log_activity(
                        db,
                        user_session,
                        "ip_mismatch",
                        ip_address,
                        user_agent,
                        {"expected_ip": user_session.ip_address},
                    )
                    db.commit()
                observe_session_event("ip_mismatch")
                logger.warning(
                    "session.ip_mismatch",
                    extra={"session_id": str(user_session.id), "ip_address": ip_address},
                )
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="IP address validation failed")

            user = db.get(AppUser, user_session.user_id)
            if user is None or not user.is_active:
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")

            with store_errors(db, "refresh session"):
                expires_at = now + timedelta(seconds=config.access_token_ttl_seconds)
                access_token = self.issue_access_token(user, user_session.id, expires_at)
                if config.rotate_refresh_tokens:
                    refresh_token = secrets.token_hex(32)
                    user_session.refresh_token_hash = hash_token(refresh_token)
                user_session.access_token_hash = hash_token(access_token)
                user_session.expires_at = expires_at
                user_session.refresh_expires_at = now + timedelta(seconds=config.refresh_token_ttl_seconds)
                user_session.last_activity_at = now
                if ip_address:
                    user_session.ip_address = ip_address
                if user_agent:
                    user_session.user_agent = user_agent[:500]
                    user_session.device_type = detect_device_type(user_agent)
                self._log_activity(
                    db,
                    user_session,
                    "refreshed",
                    ip_address,
                    user_agent,
                    {"rotated": config.rotate_refresh_tokens},
                )
                db.commit()

        observe_session_event("refreshed")
        logger.info("session.refreshed", extra={"session_id": str(user_session.id)})
        return IssuedSession(session=user_session, access_token=access_token, refresh_token=refresh_token)

    def validate_session(
        self,
        db: Session,
        access_token: str,
        ip_address: str | None = None,
        *,
        config: SessionConfig | None = None,
    ) -> UserSession | None:
        config = config or self.config
        user_session = db.scalar(
            select(UserSession).where(
                UserSession.access_token_hash == hash_token(access_token),
                UserSession.is_active.is_(True),
            )
        )
        if user_session is None:
            return None

        now = utcnow()
        if _is_expired(user_session.expires_at, now):
            # the refresh token may still revive the session
            if _is_expired(user_session.refresh_expires_at, now):
                with store_errors(db, "expire session"):
                    self._invalidate(db, user_session, "expired", now)
                    db.commit()
                observe_session_event("expired")
            return None

        if config.require_ip_match and user_session.ip_address and ip_address != user_session.ip_address:
            with store_errors(db, "record session activity"):
                self._log_activity(db, user_session, "ip_mismatch", ip_address, None)
                db.commit()
            observe_session_event("ip_mismatch")
            return None

        if config.track_activity:
            with store_errors(db, "track session activity"):
                user_session.last_activity_at = now
                db.commit()
        return user_session

    def invalidate_session(self, db: Session, session_id: uuid.UUID, reason: str = "logout") -> UserSession:
        user_session = db.get(UserSession, session_id)
        if user_session is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
        if user_session.is_active:
            with store_errors(db, "invalidate session"):
                self._invalidate(db, user_session, reason, utcnow())
                db.commit()
            observe_session_event("invalidated")
        return user_session

    def invalidate_all_user_sessions(
        self,
        db: Session,
        user_id: uuid.UUID,
        except_session_id: uuid.UUID | None = None,
        reason: str = "logout_all",
    ) -> int:
        stmt = select(UserSession).where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
        if except_session_id is not None:
            stmt = stmt.where(UserSession.id != except_session_id)
        sessions = list(db.scalars(stmt).all())
        now = utcnow()
        with store_errors(db, "invalidate sessions"):
            for user_session in sessions:
                self._invalidate(db, user_session, reason, now, log=False)
            db.add(
                SessionActivity(
                    session_id=None,
                    user_id=user_id,
                    activity="bulk_invalidated",
                    details={"count": len(sessions), "reason": reason},
                    created_at=now,
                )
            )
            db.commit()
        observe_session_event("bulk_invalidated")
        logger.info("session.bulk_invalidated", extra={"user_id": str(user_id), "reason": reason})
        return len(sessions)

    def get_session(self, db: Session, session_id: uuid.UUID) -> UserSession | None:
        return db.get(UserSession, session_id)

    def get_active_sessions(self, db: Session, user_id: uuid.UUID) -> list[UserSession]:
        now = utcnow()
        rows = db.scalars(
            select(UserSession)
            .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
            .order_by(UserSession.last_activity_at.desc())
        ).all()
        return [row for row in rows if not _is_expired(row.refresh_expires_at, now)]

    def cleanup_expired_sessions(self, db: Session, user_id: uuid.UUID | None = None) -> int:
        now = utcnow()
        with store_errors(db, "clean up expired sessions"):
            cleaned = self._expire_stale(db, user_id, now)
            db.commit()
        remaining = db.scalars(select(UserSession.id).where(UserSession.is_active.is_(True))).all()
        set_active_sessions(len(remaining))
        if cleaned:
            logger.info("session.cleanup", extra={"status": f"expired={cleaned}"})
        return cleaned

    def get_session_analytics(self, db: Session, user_id: uuid.UUID | None = None) -> dict[str, float | int]:
        stmt = select(UserSession)
        if user_id is not None:
            stmt = stmt.where(UserSession.user_id == user_id)
        sessions = list(db.scalars(stmt).all())
        now = utcnow()

        active = [row for row in sessions if row.is_active and not _is_expired(row.refresh_expires_at, now)]
        durations = [
            (as_utc(row.invalidated_at or row.last_activity_at) - as_utc(row.created_at)).total_seconds() / 60
            for row in sessions
        ]
        return {
            "total_sessions": len(sessions),
            "active_sessions": len(active),
            "expired_sessions": len(sessions) - len(active),
            "average_session_duration_minutes": round(sum(durations) / len(durations), 2) if durations else 0.0,
            "unique_devices": len({row.user_agent for row in sessions if row.user_agent}),
            "unique_ip_addresses": len({row.ip_address for row in sessions if row.ip_address}),
        }

    def get_session_activity(self, db: Session, session_id: uuid.UUID) -> list[SessionActivity]:
        return list(
            db.scalars(
                select(SessionActivity)
                .where(SessionActivity.session_id == session_id)
                .order_by(SessionActivity.created_at.asc())
            ).all()
        )

    def _expire_stale(self, db: Session, user_id: uuid.UUID | None, now: datetime) -> int:
        stmt = select(UserSession).where(UserSession.is_active.is_(True))
        if user_id is not None:
            stmt = stmt.where(UserSession.user_id == user_id)
        expired = [row for row in db.scalars(stmt).all() if _is_expired(row.refresh_expires_at, now)]
        for user_session in expired:
            self._invalidate(db, user_session, "expired", now)
        return len(expired)

    def _invalidate(self, db: Session, user_session: UserSession, reason: str, now: datetime, *, log: bool = True) -> None:
        user_session.is_active = False
        user_session.invalidated_at = now
        user_session.invalidation_reason = reason
        if log:
            self._log_activity(db, user_session, "invalidated", None, None, {"reason": reason})

    def _log_activity(
        self,
        db: Session,
        user_session: UserSession,
        activity: str,
        ip_address: str | None,
        user_agent: str | None,
        details: dict | None = None,
    ) -> None:
        db.add(
            SessionActivity(
                session_id=user_session.id,
                user_id=user_session.user_id,
                activity=activity,
                ip_address=ip_address,
                user_agent=user_agent[:500] if user_agent else None,
                details=details,
                created_at=utcnow(),
            )
        )


session_service = SessionService()
