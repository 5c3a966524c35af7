from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

import pyotp
from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from foodcrm import audit, events
from foodcrm.auth import passwords
from foodcrm.auth.identity import IdentityError, IdentityProvider
from foodcrm.auth.models import AppUser, LoginAttempt
from foodcrm.auth.schemas import (
    LoginResponse,
    PasswordStrengthRead,
    RegisterRequest,
    RegistrationResponse,
    TokenPair,
    UserProfile,
)
from foodcrm.auth.sessions import IssuedSession, SessionService, session_service
from foodcrm.authz.service import RBACService, rbac_service
from foodcrm.core.config import get_settings
from foodcrm.core.database import as_utc, utcnow
from foodcrm.core.errors import store_errors
from foodcrm.crm.models import Organization
from foodcrm.metrics import observe_login_attempt

logger = logging.getLogger("foodcrm.auth")
tracer = trace.get_tracer("foodcrm.auth")


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def token_pair(issued: IssuedSession) -> TokenPair:
    return TokenPair(
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        session_id=issued.session.id,
        expires_at=issued.expires_at,
        refresh_expires_at=issued.refresh_expires_at,
    )


def _publish(event_type: str, actor_user_id: str, payload: dict) -> None:
    events.emit(event_type, actor_user_id=actor_user_id, payload=payload)


class AuthService:
    def __init__(
        self,
        identity: IdentityProvider,
        sessions: SessionService | None = None,
        rbac: RBACService | None = None,
    ) -> None:
        self.identity = identity
        self.sessions = sessions or session_service
        self.rbac = rbac or rbac_service

    def validate_password_strength(
        self,
        password: str,
        user_info: dict[str, str | None] | None = None,
    ) -> PasswordStrengthRead:
        check = passwords.validate_password_strength(password, user_info)
        return PasswordStrengthRead(is_valid=check.is_valid, errors=check.errors, score=check.score)

    def check_password_breach(self, password: str) -> bool:
        return passwords.check_password_breach(password)

    def register_user(self, db: Session, dto: RegisterRequest, *, assigned_by: str = "system") -> RegistrationResponse:
        email = _normalize_email(str(dto.email))
        if dto.organization_id is not None:
            organization = db.get(Organization, dto.organization_id)
            if organization is None or organization.deleted_at is not None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
            if not organization.is_active:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Organization is not active")

        if db.scalar(select(AppUser.id).where(func.lower(AppUser.email) == email)) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User with this email already exists")

        self._enforce_password_policy(
            dto.password,
            {"email": email, "first_name": dto.first_name, "last_name": dto.last_name},
            prefix="Password validation failed",
        )

        try:
            identity_user = self.identity.create_user(
                email,
                dto.password,
                {"first_name": dto.first_name, "last_name": dto.last_name},
            )
        except IdentityError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Registration failed: {exc}",
            ) from exc

        user = AppUser(
            id=uuid.UUID(identity_user.id),
            email=email,
            first_name=dto.first_name,
            last_name=dto.last_name,
            phone=dto.phone,
            organization_id=dto.organization_id,
            email_verified=identity_user.email_confirmed,
        )
        try:
            db.add(user)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            self._discard_provider_user(identity_user.id)
            logger.exception("auth.register_failed", extra={"error": str(exc)})
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to register user: {exc.__class__.__name__}",
            ) from exc

        try:
            self.rbac.assign_user_role(db, user.id, dto.role, assigned_by, organization_id=dto.organization_id)
        except HTTPException:
            db.execute(delete(AppUser).where(AppUser.id == user.id))
            db.commit()
            self._discard_provider_user(identity_user.id)
            raise

        audit.record(
            actor_user_id=assigned_by,
            entity_type="auth.user",
            entity_id=str(user.id),
            action="register",
            before=None,
            after={"email": email, "role": dto.role, "organization_id": str(dto.organization_id or "")},
        )
        _publish("auth.user.registered", assigned_by, {"user_id": str(user.id), "role": dto.role})
        logger.info("auth.user_registered", extra={"user_id": str(user.id)})
        return RegistrationResponse(
            user=self.get_current_user(db, user.id),
            email_verification_required=not user.email_verified,
        )

    def login_user(
        self,
        db: Session,
        email: str,
        password: str,
        ip_address: str | None,
        user_agent: str | None,
        mfa_code: str | None = None,
    ) -> LoginResponse:
        email = _normalize_email(email)
        with tracer.start_as_current_span("auth.login") as span:
            locked_until = self._lockout_expiry(db, email)
            if locked_until is not None:
                self._record_attempt(db, email, None, ip_address, user_agent, False, "account_locked")
                raise HTTPException(
                    status_code=status.HTTP_423_LOCKED,
                    detail=f"Account is locked due to too many failed attempts. Try again after {locked_until.isoformat()}",
                )

            try:
                identity_user = self.identity.sign_in(email, password)
            except IdentityError as exc:
                self._record_attempt(db, email, None, ip_address, user_agent, False, "invalid_credentials")
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials") from exc

            user = db.get(AppUser, uuid.UUID(identity_user.id))
            if user is None:
                self._record_attempt(db, email, None, ip_address, user_agent, False, "user_not_found")
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found in system")
            if not user.is_active:
                self._record_attempt(db, email, user.id, ip_address, user_agent, False, "account_inactive")
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account is inactive")
            if user.organization_id is not None:
                organization = db.get(Organization, user.organization_id)
                if organization is None or not organization.is_active:
                    self._record_attempt(db, email, user.id, ip_address, user_agent, False, "organization_inactive")
                    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Organization is inactive")

            if identity_user.email_confirmed and not user.email_verified:
                user.email_verified = True
            if not user.email_verified:
                self._record_attempt(db, email, user.id, ip_address, user_agent, False, "email_not_verified")
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Email verification required. Please check your email.",
                )

            if user.mfa_enabled:
                if not mfa_code:
                    db.commit()
                    span.set_attribute("mfa_required", True)
                    return LoginResponse(mfa_required=True)
                if not self._verify_totp(user.mfa_secret, mfa_code):
                    self._record_attempt(db, email, user.id, ip_address, user_agent, False, "invalid_mfa")
                    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid MFA code")

            with store_errors(db, "log in"):
                user.last_login_at = utcnow()
                user.login_count = user.login_count + 1
                db.add(
                    LoginAttempt(
                        email=email,
                        user_id=user.id,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        success=True,
                    )
                )
                db.commit()
            issued = self.sessions.create_session(db, user.id, ip_address, user_agent)

        observe_login_attempt("success")
        _publish("auth.user.logged_in", str(user.id), {"user_id": str(user.id), "session_id": str(issued.session.id)})
        logger.info(
            "auth.login_succeeded",
            extra={"user_id": str(user.id), "session_id": str(issued.session.id), "ip_address": ip_address},
        )
        return LoginResponse(user=self.get_current_user(db, user.id), tokens=token_pair(issued))

    def logout_user(self, db: Session, session_id: uuid.UUID) -> None:
        user_session = self.sessions.invalidate_session(db, session_id, reason="logout")
        _publish("auth.user.logged_out", str(user_session.user_id), {"session_id": str(session_id)})

    def logout_all(self, db: Session, user_id: uuid.UUID, except_session_id: uuid.UUID | None = None) -> int:
        count = self.sessions.invalidate_all_user_sessions(db, user_id, except_session_id=except_session_id)
        _publish("auth.user.logged_out_everywhere", str(user_id), {"invalidated_sessions": count})
        return count

    def refresh_session(
        self,
        db: Session,
        refresh_token: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> TokenPair:
        return token_pair(self.sessions.refresh_session(db, refresh_token, ip_address, user_agent))

    def request_password_reset(self, db: Session, email: str) -> None:
        email = _normalize_email(email)
        user = db.scalar(select(AppUser).where(func.lower(AppUser.email) == email))
        if user is None:
            # unknown addresses get the same answer as known ones
            return
        try:
            self.identity.send_password_reset(email)
        except IdentityError as exc:
            logger.warning("auth.password_reset_failed", extra={"user_id": str(user.id), "error": str(exc)})

    def change_password(
        self,
        db: Session,
        user_id: uuid.UUID,
        current_password: str,
        new_password: str,
        *,
        current_session_id: uuid.UUID | None = None,
    ) -> int:
        user = self._get_user(db, user_id)
        try:
            self.identity.sign_in(user.email, current_password)
        except IdentityError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Current password is incorrect") from exc

        self._enforce_password_policy(
            new_password,
            {"email": user.email, "first_name": user.first_name, "last_name": user.last_name},
            prefix="New password validation failed",
        )
        try:
            self.identity.update_password(str(user.id), new_password)
        except IdentityError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to change password: {exc}",
            ) from exc

        with store_errors(db, "change password"):
            user.password_changed_at = utcnow()
            db.commit()
        invalidated = self.sessions.invalidate_all_user_sessions(
            db,
            user.id,
            except_session_id=current_session_id,
            reason="password_changed",
        )
        audit.record(
            actor_user_id=str(user.id),
            entity_type="auth.user",
            entity_id=str(user.id),
            action="change_password",
            before=None,
            after={"invalidated_sessions": invalidated},
        )
        return invalidated

    def generate_mfa_secret(self, db: Session, user_id: uuid.UUID) -> tuple[str, str]:
        user = self._get_user(db, user_id)
        secret = pyotp.random_base32()
        with store_errors(db, "generate MFA secret"):
            user.mfa_secret = secret
            db.commit()
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=get_settings().mfa_issuer_name)
        return secret, uri

    def verify_mfa(self, db: Session, user_id: uuid.UUID, code: str) -> bool:
        user = self._get_user(db, user_id)
        if not user.mfa_secret:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="MFA secret not found")
        return self._verify_totp(user.mfa_secret, code)

    def enable_mfa(self, db: Session, user_id: uuid.UUID, code: str) -> None:
        if not self.verify_mfa(db, user_id, code):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid MFA token")
        user = self._get_user(db, user_id)
        with store_errors(db, "enable MFA"):
            user.mfa_enabled = True
            db.commit()
        audit.record(str(user.id), "auth.user", str(user.id), "enable_mfa", {"mfa_enabled": False}, {"mfa_enabled": True})

    def disable_mfa(self, db: Session, user_id: uuid.UUID, code: str) -> None:
        if not self.verify_mfa(db, user_id, code):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid MFA token")
        user = self._get_user(db, user_id)
        with store_errors(db, "disable MFA"):
            user.mfa_enabled = False
            user.mfa_secret = None
            db.commit()
        audit.record(str(user.id), "auth.user", str(user.id), "disable_mfa", {"mfa_enabled": True}, {"mfa_enabled": False})

    def get_current_user(self, db: Session, user_id: uuid.UUID) -> UserProfile:
        user = self._get_user(db, user_id)
        access = self.rbac.resolve_access(db, user.id)
        profile = UserProfile.model_validate(user)
        profile.roles = access.role_names
        profile.permissions = sorted(access.permissions)
        return profile

    def _enforce_password_policy(self, password: str, user_info: dict[str, str | None], *, prefix: str) -> None:
        check = passwords.validate_password_strength(password, user_info)
        if not check.is_valid:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"{prefix}: {', '.join(check.errors)}",
            )
        if passwords.check_password_breach(password):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="This password has been found in data breaches and cannot be used",
            )

    def _lockout_expiry(self, db: Session, email: str) -> datetime | None:
        settings = get_settings()
        window = timedelta(minutes=settings.login_lockout_minutes)
        since = utcnow() - window
        failures = db.scalars(
            select(LoginAttempt.attempted_at)
            .where(
                LoginAttempt.email == email,
                LoginAttempt.success.is_(False),
                LoginAttempt.failure_reason != "account_locked",
                LoginAttempt.attempted_at >= since,
            )
            .order_by(LoginAttempt.attempted_at.desc())
        ).all()
        if len(failures) < settings.login_max_failed_attempts:
            return None
        locked_until = as_utc(failures[0]) + window
        return locked_until if locked_until > utcnow() else None

    def _record_attempt(
        self,
        db: Session,
        email: str,
        user_id: uuid.UUID | None,
        ip_address: str | None,
        user_agent: str | None,
        success: bool,
        failure_reason: str | None,
    ) -> None:
        with store_errors(db, "record login attempt"):
            db.add(
                LoginAttempt(
                    email=email,
                    user_id=user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    success=success,
                    failure_reason=failure_reason,
                )
            )
            db.commit()
        if not success:
            observe_login_attempt(failure_reason or "failure")
            logger.warning(
                "auth.login_failed",
                extra={"reason": failure_reason, "ip_address": ip_address, "user_id": str(user_id or "")},
            )

    def _verify_totp(self, secret: str | None, code: str) -> bool:
        if not secret or not code:
            return False
        code = code.strip().replace(" ", "").replace("-", "")
        if len(code) != 6 or not code.isdigit():
            return False
        return pyotp.TOTP(secret).verify(code, valid_window=1)

    def _discard_provider_user(self, provider_user_id: str) -> None:
        try:
            self.identity.delete_user(provider_user_id)
        except IdentityError as exc:
            logger.error("auth.provider_cleanup_failed", extra={"user_id": provider_user_id, "error": str(exc)})

    def _get_user(self, db: Session, user_id: uuid.UUID) -> AppUser:
        user = db.get(AppUser, user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return user
