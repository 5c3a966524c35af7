from __future__ import annotations

import uuid

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session
from starlette.requests import Request

from foodcrm.auth.models import AppUser
from foodcrm.authz.service import rbac_service
from foodcrm.core.context import get_correlation_id
from foodcrm.core.auth import ActorUser, AuthUser, get_current_user
from foodcrm.core.database import get_db
from foodcrm.metrics import observe_authz_denial


def get_current_actor(
    request: Request,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
) -> ActorUser:
    """Build the request actor from the validated session and the user's live role assignments."""
    user = db.get(AppUser, uuid.UUID(auth_user.sub))
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="user is unknown or inactive",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access = rbac_service.resolve_access(db, user.id, user.organization_id)
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "correlation_id", None)
    return ActorUser(
        user_id=str(user.id),
        organization_id=user.organization_id,
        roles=access.role_names,
        permissions=set(access.permissions),
        role_level=access.level,
        email_verified=user.email_verified,
        correlation_id=correlation_id or None,
        session_id=auth_user.session_id,
        restrictions=access.restrictions(user.email_verified),
    )


def require_permission(user: ActorUser, resource: str, action: str) -> None:
    if not user.can(resource, action):
        observe_authz_denial(resource, action)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {resource}.{action}")
