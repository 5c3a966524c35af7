from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from fastapi import HTTPException, status
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from foodcrm import audit, events
from foodcrm.auth.models import AppUser
from foodcrm.authz.matrix import (
    ADMIN_LEVEL,
    DEFAULT_PERMISSIONS,
    MANAGER_LEVEL,
    RESTRICTIONS_BY_ACCESS_LEVEL,
    SYSTEM_ROLES,
)
from foodcrm.authz.models import Permission, Role, RolePermission, UserRole
from foodcrm.authz.schemas import (
    EffectivePermissions,
    InitializeRolesResult,
    PermissionAuditEntry,
    PermissionCheckContext,
    PermissionCheckResult,
    RoleRead,
    RoleWithPermissions,
    UserRoleRead,
)
from foodcrm.core.database import as_utc, utcnow
from foodcrm.core.errors import store_errors
from foodcrm.models.audit import AuditLog

logger = logging.getLogger("foodcrm.authz")

WILDCARD = "*"
ROLE_ASSIGNMENT_ENTITY = "authz.user_role"


@dataclass
class ResolvedAccess:
    """Union of the permissions granted by a user's live role assignments."""

    roles: list[Role] = field(default_factory=list)
    permissions: set[str] = field(default_factory=set)
    level: int = 0

    @property
    def role_names(self) -> list[str]:
        return sorted({role.name for role in self.roles})

    @property
    def access_level(self) -> str:
        highest = max(self.roles, key=lambda role: role.level, default=None)
        return highest.name if highest is not None else "none"

    def restrictions(self, email_verified: bool) -> list[str]:
        restrictions = list(RESTRICTIONS_BY_ACCESS_LEVEL.get(self.access_level, ()))
        if not email_verified:
            restrictions.append("email_verification_required")
        return restrictions

    def allows(self, resource: str, action: str) -> bool:
        return f"{resource}.{action}" in self.permissions or (
            self.level >= ADMIN_LEVEL
            and bool({f"{WILDCARD}.{WILDCARD}", f"{resource}.{WILDCARD}", f"{WILDCARD}.{action}"} & self.permissions)
        )


def _user_uuid(user_id: uuid.UUID | str) -> uuid.UUID:
    if isinstance(user_id, uuid.UUID):
        return user_id
    try:
        return uuid.UUID(str(user_id))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid user id") from exc


def _to_assignment_read(assignment: UserRole, role: Role) -> UserRoleRead:
    return UserRoleRead(
        id=assignment.id,
        user_id=assignment.user_id,
        role_id=role.id,
        role_name=role.name,
        role_level=role.level,
        organization_id=assignment.organization_id,
        is_active=assignment.is_active,
        assigned_by=assignment.assigned_by,
        assigned_at=assignment.assigned_at,
        expires_at=assignment.expires_at,
        revoked_at=assignment.revoked_at,
        revoked_by=assignment.revoked_by,
    )


class RBACService:
    def initialize_default_roles(self, session: Session) -> InitializeRolesResult:
        roles_created = permissions_created = links_created = 0
        with store_errors(session, "initialize default roles"):
            roles: dict[str, Role] = {}
            for system_role in SYSTEM_ROLES.values():
                role = session.scalar(select(Role).where(Role.name == system_role.name))
                if role is None:
                    role = Role(name=system_role.name, is_system=True)
                    session.add(role)
                    roles_created += 1
                role.level = system_role.level
                role.description = system_role.description
                role.is_active = True
                roles[system_role.name] = role
            session.flush()

            for (resource, action), role_names in DEFAULT_PERMISSIONS.items():
                permission = session.scalar(
                    select(Permission).where(Permission.resource == resource, Permission.action == action)
                )
                if permission is None:
                    permission = Permission(resource=resource, action=action, description=f"{action} {resource}")
                    session.add(permission)
                    session.flush()
                    permissions_created += 1
                for role_name in role_names:
                    role = roles[role_name]
                    link = session.get(RolePermission, (role.id, permission.id))
                    if link is None:
                        session.add(RolePermission(role_id=role.id, permission_id=permission.id))
                        links_created += 1
            session.commit()

        logger.info(
            "authz.roles_initialized",
            extra={"status": f"roles={roles_created} permissions={permissions_created} links={links_created}"},
        )
        return InitializeRolesResult(
            roles_created=roles_created,
            permissions_created=permissions_created,
            links_created=links_created,
        )

    def list_roles(self, session: Session) -> list[RoleWithPermissions]:
        roles = session.scalars(select(Role).order_by(Role.level.desc(), Role.name)).all()
        result: list[RoleWithPermissions] = []
        for role in roles:
            keys = sorted(link.permission.key for link in role.permissions if link.permission.is_active)
            result.append(RoleWithPermissions(**RoleRead.model_validate(role).model_dump(), permissions=keys))
        return result

    def assign_user_role(
        self,
        session: Session,
        user_id: uuid.UUID | str,
        role_name: str,
        assigned_by: str,
        *,
        expires_at: datetime | None = None,
        organization_id: uuid.UUID | None = None,
        correlation_id: str | None = None,
    ) -> UserRoleRead:
        user_uuid = _user_uuid(user_id)
        user = session.get(AppUser, user_uuid)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        if not user.is_active:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="User is not active")

        role = session.scalar(select(Role).where(Role.name == role_name))
        if role is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Role not found: {role_name}")
        if not role.is_active:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Role is not active: {role_name}")
        if expires_at is not None and as_utc(expires_at) <= utcnow():
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Role expiry must be in the future",
            )

        if self._live_assignments_for_role(session, user_uuid, role.id, organization_id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already has this role")

        with store_errors(session, "assign role"):
            assignment = UserRole(
                user_id=user_uuid,
                role_id=role.id,
                organization_id=organization_id,
                assigned_by=assigned_by,
                expires_at=expires_at,
            )
            session.add(assignment)
            session.flush()
            read_model = _to_assignment_read(assignment, role)
            self._record_change(
                session,
                actor_id=assigned_by,
                action="role_assigned",
                user_id=user_uuid,
                role=role,
                organization_id=organization_id,
                correlation_id=correlation_id,
                extra={"expires_at": expires_at.isoformat() if expires_at else None},
            )
            session.commit()
        return read_model

    def revoke_user_role(
        self,
        session: Session,
        user_id: uuid.UUID | str,
        role_name: str,
        revoked_by: str,
        *,
        organization_id: uuid.UUID | None = None,
        correlation_id: str | None = None,
    ) -> int:
        user_uuid = _user_uuid(user_id)
        role = session.scalar(select(Role).where(Role.name == role_name))
        if role is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Role not found: {role_name}")

        stmt = select(UserRole).where(
            UserRole.user_id == user_uuid,
            UserRole.role_id == role.id,
            UserRole.is_active.is_(True),
        )
        if organization_id is None:
            stmt = stmt.where(UserRole.organization_id.is_(None))
        else:
            stmt = stmt.where(UserRole.organization_id == organization_id)
        assignments = list(session.scalars(stmt).all())
        if not assignments:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Role assignment not found")

        with store_errors(session, "revoke role"):
            now = utcnow()
            for assignment in assignments:
                assignment.is_active = False
                assignment.revoked_at = now
                assignment.revoked_by = revoked_by
            self._record_change(
                session,
                actor_id=revoked_by,
                action="role_revoked",
                user_id=user_uuid,
                role=role,
                organization_id=organization_id,
                correlation_id=correlation_id,
                extra={"revoked_assignments": len(assignments)},
            )
            session.commit()
        return len(assignments)

    def get_user_roles(
        self,
        session: Session,
        user_id: uuid.UUID | str,
        organization_id: uuid.UUID | None = None,
    ) -> list[UserRoleRead]:
        return [
            _to_assignment_read(assignment, role)
            for assignment, role in self._live_assignments(session, _user_uuid(user_id), organization_id)
        ]

    def get_user_permissions(
        self,
        session: Session,
        user_id: uuid.UUID | str,
        organization_id: uuid.UUID | None = None,
    ) -> list[str]:
        return sorted(self.resolve_access(session, user_id, organization_id).permissions)

    def resolve_access(
        self,
        session: Session,
        user_id: uuid.UUID | str,
        organization_id: uuid.UUID | None = None,
    ) -> ResolvedAccess:
        access = ResolvedAccess()
        for _, role in self._live_assignments(session, _user_uuid(user_id), organization_id):
            access.roles.append(role)
            access.level = max(access.level, role.level)
            for link in role.permissions:
                if link.permission.is_active:
                    access.permissions.add(link.permission.key)
        return access

    def check_permission(
        self,
        session: Session,
        user_id: uuid.UUID | str,
        resource: str,
        action: str,
        context: PermissionCheckContext | None = None,
    ) -> PermissionCheckResult:
        context = context or PermissionCheckContext()
        user_uuid = _user_uuid(user_id)
        user = session.get(AppUser, user_uuid)
        if user is None or not user.is_active:
            return PermissionCheckResult(allowed=False, reason="unknown or inactive user")

        access = self.resolve_access(session, user_uuid, context.organization_id)
        if not access.roles:
            return PermissionCheckResult(allowed=False, reason="no active roles")
        if not access.allows(resource, action):
            return PermissionCheckResult(allowed=False, reason=f"missing permission {resource}.{action}")

        if context.organization_id is not None and context.organization_id != user.organization_id:
            if access.level < ADMIN_LEVEL:
                return PermissionCheckResult(allowed=False, reason="cross-organization access requires admin")
        if context.resource_owner_id is not None and context.resource_owner_id != str(user_uuid):
            if access.level < MANAGER_LEVEL:
                return PermissionCheckResult(allowed=False, reason="resource is owned by another user")
        return PermissionCheckResult(allowed=True, reason="granted")

    def get_effective_permissions(
        self,
        session: Session,
        user_id: uuid.UUID | str,
        organization_id: uuid.UUID | None = None,
    ) -> EffectivePermissions:
        user_uuid = _user_uuid(user_id)
        user = session.get(AppUser, user_uuid)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

        access = self.resolve_access(session, user_uuid, organization_id)
        restrictions = access.restrictions(user.email_verified)

        unique_roles = {role.id: role for role in access.roles}
        return EffectivePermissions(
            user_id=user_uuid,
            roles=[RoleRead.model_validate(role) for role in sorted(unique_roles.values(), key=lambda r: -r.level)],
            permissions=sorted(access.permissions),
            access_level=access.access_level,
            restrictions=restrictions,
        )

    def get_permission_audit_log(
        self,
        session: Session,
        user_id: uuid.UUID | str | None = None,
        limit: int = 100,
    ) -> list[PermissionAuditEntry]:
        stmt = select(AuditLog).where(AuditLog.entity_type == ROLE_ASSIGNMENT_ENTITY)
        if user_id is not None:
            stmt = stmt.where(AuditLog.entity_id == str(_user_uuid(user_id)))
        rows = session.scalars(stmt.order_by(AuditLog.created_at.desc()).limit(min(max(limit, 1), 500))).all()
        return [PermissionAuditEntry.model_validate(row) for row in rows]

    def _live_assignments(
        self,
        session: Session,
        user_id: uuid.UUID,
        organization_id: uuid.UUID | None,
    ) -> list[tuple[UserRole, Role]]:
        stmt = (
            select(UserRole, Role)
            .join(Role, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id, UserRole.is_active.is_(True), Role.is_active.is_(True))
        )
        if organization_id is not None:
            # global assignments apply inside every organization
            stmt = stmt.where(or_(UserRole.organization_id.is_(None), UserRole.organization_id == organization_id))
        now = utcnow()
        return [
            (assignment, role)
            for assignment, role in session.execute(stmt.order_by(Role.level.desc())).all()
            if assignment.expires_at is None or as_utc(assignment.expires_at) > now
        ]

    def _live_assignments_for_role(
        self,
        session: Session,
        user_id: uuid.UUID,
        role_id: uuid.UUID,
        organization_id: uuid.UUID | None,
    ) -> list[UserRole]:
        scope = UserRole.organization_id.is_(None) if organization_id is None else UserRole.organization_id == organization_id
        rows = session.scalars(
            select(UserRole).where(
                and_(UserRole.user_id == user_id, UserRole.role_id == role_id, UserRole.is_active.is_(True), scope)
            )
        ).all()
        now = utcnow()
        return [row for row in rows if row.expires_at is None or as_utc(row.expires_at) > now]

    def _record_change(
        self,
        session: Session,
        *,
        actor_id: str,
        action: str,
        user_id: uuid.UUID,
        role: Role,
        organization_id: uuid.UUID | None,
        correlation_id: str | None,
        extra: dict,
    ) -> None:
        metadata = {
            "role": role.name,
            "role_level": role.level,
            "organization_id": str(organization_id) if organization_id else None,
            **extra,
        }
        audit.write_audit_log(
            session,
            actor_id=actor_id,
            action=action,
            entity_type=ROLE_ASSIGNMENT_ENTITY,
            entity_id=str(user_id),
            metadata=metadata,
            correlation_id=correlation_id,
        )
        audit.record(
            actor_user_id=actor_id,
            entity_type=ROLE_ASSIGNMENT_ENTITY,
            entity_id=str(user_id),
            action=action,
            before=None,
            after=metadata,
            correlation_id=correlation_id,
        )
        events.emit(
            f"authz.{action}",
            actor_user_id=actor_id,
            payload={"user_id": str(user_id), **metadata},
            correlation_id=correlation_id,
        )
        logger.info("authz.role_change", extra={"user_id": str(user_id), "status": action, "reason": role.name})


rbac_service = RBACService()
