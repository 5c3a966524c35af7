from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from foodcrm.api.errors import failure
from foodcrm.authz.matrix import SYSTEM_ROLES
from foodcrm.authz.schemas import (
    EffectivePermissions,
    InitializeRolesResult,
    PermissionAuditEntry,
    PermissionCheckRequest,
    PermissionCheckResult,
    RoleAssignmentRequest,
    RoleRevocationRequest,
    RoleWithPermissions,
    UserRoleRead,
)
from foodcrm.authz.service import rbac_service
from foodcrm.core.auth import ActorUser
from foodcrm.core.database import get_db
from foodcrm.core.rbac import get_current_actor, require_permission

router = APIRouter(prefix="/api/rbac", tags=["rbac"])


def _ensure_can_grant(user: ActorUser, role_name: str) -> None:
    role = SYSTEM_ROLES.get(role_name)
    if role is not None and role.level > user.role_level:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Cannot manage role above own access level: {role_name}",
        )


@router.post("/initialize", response_model=InitializeRolesResult)
def initialize_default_roles(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> InitializeRolesResult | JSONResponse:
    try:
        require_permission(user, "system", "configure")
        return rbac_service.initialize_default_roles(db)
    except HTTPException as exc:
        return failure(request, exc, area="rbac", entity="roles", operation="initialize")


@router.get("/roles", response_model=list[RoleWithPermissions])
def list_roles(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[RoleWithPermissions] | JSONResponse:
    try:
        require_permission(user, "users", "read")
        return rbac_service.list_roles(db)
    except HTTPException as exc:
        return failure(request, exc, area="rbac", entity="roles", operation="list")


@router.get("/users/{user_id}/roles", response_model=list[UserRoleRead])
def get_user_roles(
    request: Request,
    user_id: uuid.UUID,
    organization_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[UserRoleRead] | JSONResponse:
    try:
        require_permission(user, "users", "read")
        return rbac_service.get_user_roles(db, user_id, organization_id)
    except HTTPException as exc:
        return failure(request, exc, area="rbac", entity="user_roles", operation="list")


@router.post("/users/{user_id}/roles", response_model=UserRoleRead, status_code=status.HTTP_201_CREATED)
def assign_user_role(
    request: Request,
    user_id: uuid.UUID,
    dto: RoleAssignmentRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> UserRoleRead | JSONResponse:
    try:
        require_permission(user, "users", "update")
        _ensure_can_grant(user, dto.role_name)
        return rbac_service.assign_user_role(
            db,
            user_id,
            dto.role_name,
            user.user_id,
            expires_at=dto.expires_at,
            organization_id=dto.organization_id,
            correlation_id=user.correlation_id,
        )
    except HTTPException as exc:
        return failure(request, exc, area="rbac", entity="role", operation="assign")


@router.delete("/users/{user_id}/roles", status_code=status.HTTP_200_OK, response_model=None)
def revoke_user_role(
    request: Request,
    user_id: uuid.UUID,
    dto: RoleRevocationRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Any:
    try:
        require_permission(user, "users", "update")
        _ensure_can_grant(user, dto.role_name)
        revoked = rbac_service.revoke_user_role(
            db,
            user_id,
            dto.role_name,
            user.user_id,
            organization_id=dto.organization_id,
            correlation_id=user.correlation_id,
        )
        return {"status": "revoked", "revoked_assignments": revoked}
    except HTTPException as exc:
        return failure(request, exc, area="rbac", entity="role", operation="revoke")


@router.get("/users/{user_id}/permissions", response_model=EffectivePermissions)
def get_effective_permissions(
    request: Request,
    user_id: uuid.UUID,
    organization_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> EffectivePermissions | JSONResponse:
    try:
        if str(user_id) != user.user_id:
            require_permission(user, "users", "read")
        return rbac_service.get_effective_permissions(db, user_id, organization_id)
    except HTTPException as exc:
        return failure(request, exc, area="rbac", entity="permissions", operation="get")


@router.post("/check", response_model=PermissionCheckResult)
def check_permission(
    request: Request,
    dto: PermissionCheckRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> PermissionCheckResult | JSONResponse:
    try:
        if str(dto.user_id) != user.user_id:
            require_permission(user, "users", "read")
        return rbac_service.check_permission(db, dto.user_id, dto.resource, dto.action, dto.context)
    except HTTPException as exc:
        return failure(request, exc, area="rbac", entity="permission", operation="check")


@router.get("/audit-log", response_model=list[PermissionAuditEntry])
def get_permission_audit_log(
    request: Request,
    user_id: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[PermissionAuditEntry] | JSONResponse:
    try:
        require_permission(user, "audit_logs", "read")
        return rbac_service.get_permission_audit_log(db, user_id, limit)
    except HTTPException as exc:
        return failure(request, exc, area="rbac", entity="audit_log", operation="get")
