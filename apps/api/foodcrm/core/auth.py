from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from fastapi import Depends, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from starlette.requests import Request

from foodcrm.auth.sessions import session_service
from foodcrm.core.config import get_settings
from foodcrm.core.context import get_request_context
from foodcrm.core.database import get_db


@dataclass
class AuthUser:
    sub: str
    session_id: str | None
    email: str | None = None


@dataclass
class ActorUser:
    user_id: str
    organization_id: uuid.UUID | None
    roles: list[str]
    permissions: set[str]
    role_level: int = 0
    email_verified: bool = True
    correlation_id: str | None = None
    session_id: str | None = None
    restrictions: list[str] = field(default_factory=list)

    def can(self, resource: str, action: str) -> bool:
        if f"{resource}.{action}" in self.permissions:
            return True
        # the wildcard literal only counts for admin-level holders
        return self.role_level >= 100 and bool(
            {"*.*", f"{resource}.*", f"*.{action}"} & self.permissions
        )


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header[7:].strip() if auth_header.startswith("Bearer ") else ""


def decode_access_token(token: str) -> dict:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid access token") from exc
    if payload.get("typ") != "access" or not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid access token")
    return payload


def get_current_user(request: Request, db: Session = Depends(get_db)) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_access_token(token)
    context = get_request_context(request)
    user_session = session_service.validate_session(db, token, ip_address=context.ip_address)
    if user_session is None or str(user_session.user_id) != str(payload["sub"]):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="session expired or invalid",
            headers={"WWW-Authenticate": "Bearer"},
        )

    subject = str(payload["sub"])
    context.user_id = subject
    context.session_id = str(user_session.id)
    return AuthUser(sub=subject, session_id=str(user_session.id), email=payload.get("email"))
