from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from foodcrm.api.errors import failure
from foodcrm.auth.identity import IdentityProvider, get_identity_provider
from foodcrm.auth.schemas import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    MfaCodeRequest,
    MfaSetupResponse,
    MfaVerifyResponse,
    PasswordResetRequest,
    PasswordStrengthRead,
    PasswordStrengthRequest,
    RefreshRequest,
    RegisterRequest,
    RegistrationResponse,
    SessionActivityRead,
    SessionAnalytics,
    SessionRead,
    TokenPair,
    UserProfile,
)
from foodcrm.auth.service import AuthService
from foodcrm.core.auth import AuthUser, get_current_user
from foodcrm.core.context import get_request_context
from foodcrm.core.database import get_db

router = APIRouter(prefix="/api/auth", tags=["auth"])


def get_auth_service(identity: IdentityProvider = Depends(get_identity_provider)) -> AuthService:
    return AuthService(identity)


def _session_uuid(auth_user: AuthUser) -> uuid.UUID | None:
    return uuid.UUID(auth_user.session_id) if auth_user.session_id else None


@router.post("/register", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
def register(
    request: Request,
    dto: RegisterRequest,
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> RegistrationResponse | JSONResponse:
    try:
        return auth_service.register_user(db, dto)
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="user", operation="register")


@router.post("/login", response_model=LoginResponse)
def login(
    request: Request,
    dto: LoginRequest,
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse | JSONResponse:
    context = get_request_context(request)
    try:
        return auth_service.login_user(
            db,
            str(dto.email),
            dto.password,
            context.ip_address,
            context.user_agent,
            mfa_code=dto.mfa_code,
        )
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="user", operation="login")


@router.post("/refresh", response_model=TokenPair)
def refresh(
    request: Request,
    dto: RefreshRequest,
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> TokenPair | JSONResponse:
    context = get_request_context(request)
    try:
        return auth_service.refresh_session(db, dto.refresh_token, context.ip_address, context.user_agent)
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="session", operation="refresh")


@router.post("/logout", status_code=status.HTTP_200_OK, response_model=None)
def logout(
    request: Request,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> Any:
    try:
        session_id = _session_uuid(auth_user)
        if session_id is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No active session")
        auth_service.logout_user(db, session_id)
        return {"status": "logged_out"}
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="session", operation="logout")


@router.post("/logout-all", response_model=LogoutAllResponse)
def logout_all(
    request: Request,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> LogoutAllResponse | JSONResponse:
    try:
        count = auth_service.logout_all(db, uuid.UUID(auth_user.sub))
        return LogoutAllResponse(invalidated_sessions=count)
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="session", operation="logout_all")


@router.post("/password-reset", status_code=status.HTTP_202_ACCEPTED, response_model=None)
def request_password_reset(
    request: Request,
    dto: PasswordResetRequest,
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> Any:
    try:
        auth_service.request_password_reset(db, str(dto.email))
        return {"status": "accepted"}
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="password", operation="reset")


@router.post("/password-strength", response_model=PasswordStrengthRead)
def check_password_strength(
    dto: PasswordStrengthRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> PasswordStrengthRead:
    return auth_service.validate_password_strength(
        dto.password,
        {"email": dto.email, "first_name": dto.first_name, "last_name": dto.last_name},
    )


@router.post("/change-password", response_model=LogoutAllResponse)
def change_password(
    request: Request,
    dto: ChangePasswordRequest,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> LogoutAllResponse | JSONResponse:
    try:
        count = auth_service.change_password(
            db,
            uuid.UUID(auth_user.sub),
            dto.current_password,
            dto.new_password,
            current_session_id=_session_uuid(auth_user),
        )
        return LogoutAllResponse(invalidated_sessions=count)
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="password", operation="change")


@router.post("/mfa/setup", response_model=MfaSetupResponse)
def setup_mfa(
    request: Request,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> MfaSetupResponse | JSONResponse:
    try:
        secret, uri = auth_service.generate_mfa_secret(db, uuid.UUID(auth_user.sub))
        return MfaSetupResponse(secret=secret, provisioning_uri=uri)
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="mfa", operation="setup")


@router.post("/mfa/enable", response_model=UserProfile)
def enable_mfa(
    request: Request,
    dto: MfaCodeRequest,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> UserProfile | JSONResponse:
    try:
        user_id = uuid.UUID(auth_user.sub)
        auth_service.enable_mfa(db, user_id, dto.code)
        return auth_service.get_current_user(db, user_id)
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="mfa", operation="enable")


@router.post("/mfa/disable", response_model=UserProfile)
def disable_mfa(
    request: Request,
    dto: MfaCodeRequest,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> UserProfile | JSONResponse:
    try:
        user_id = uuid.UUID(auth_user.sub)
        auth_service.disable_mfa(db, user_id, dto.code)
        return auth_service.get_current_user(db, user_id)
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="mfa", operation="disable")


@router.post("/mfa/verify", response_model=MfaVerifyResponse)
def verify_mfa(
    request: Request,
    dto: MfaCodeRequest,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> MfaVerifyResponse | JSONResponse:
    try:
        return MfaVerifyResponse(valid=auth_service.verify_mfa(db, uuid.UUID(auth_user.sub), dto.code))
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="mfa", operation="verify")


@router.get("/me", response_model=UserProfile)
def me(
    request: Request,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> UserProfile | JSONResponse:
    try:
        return auth_service.get_current_user(db, uuid.UUID(auth_user.sub))
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="user", operation="get")


@router.get("/sessions", response_model=list[SessionRead])
def list_sessions(
    request: Request,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> list[SessionRead] | JSONResponse:
    try:
        current = _session_uuid(auth_user)
        rows = auth_service.sessions.get_active_sessions(db, uuid.UUID(auth_user.sub))
        return [SessionRead.model_validate(row).model_copy(update={"is_current": row.id == current}) for row in rows]
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="session", operation="list")


@router.get("/sessions/analytics", response_model=SessionAnalytics)
def session_analytics(
    request: Request,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> SessionAnalytics | JSONResponse:
    try:
        return SessionAnalytics(**auth_service.sessions.get_session_analytics(db, uuid.UUID(auth_user.sub)))
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="session", operation="analyze")


@router.get("/sessions/{session_id}/activity", response_model=list[SessionActivityRead])
def session_activity(
    request: Request,
    session_id: uuid.UUID,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> list[SessionActivityRead] | JSONResponse:
    try:
        _own_session_or_404(db, auth_service, auth_user, session_id)
        rows = auth_service.sessions.get_session_activity(db, session_id)
        return [SessionActivityRead.model_validate(row) for row in rows]
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="session", operation="get_activity")


@router.delete("/sessions/{session_id}", status_code=status.HTTP_200_OK, response_model=None)
def revoke_session(
    request: Request,
    session_id: uuid.UUID,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> Any:
    try:
        _own_session_or_404(db, auth_service, auth_user, session_id)
        auth_service.sessions.invalidate_session(db, session_id, reason="revoked_by_user")
        return {"status": "revoked"}
    except HTTPException as exc:
        return failure(request, exc, area="auth", entity="session", operation="revoke")


def _own_session_or_404(db: Session, auth_service: AuthService, auth_user: AuthUser, session_id: uuid.UUID) -> None:
    owned = auth_service.sessions.get_session(db, session_id)
    if owned is None or str(owned.user_id) != auth_user.sub:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
