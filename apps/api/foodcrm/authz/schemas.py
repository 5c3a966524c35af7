from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class RoleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    level: int
    is_system: bool
    is_active: bool


class RoleWithPermissions(RoleRead):
    permissions: list[str] = Field(default_factory=list)


class UserRoleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    role_id: UUID
    role_name: str
    role_level: int
    organization_id: UUID | None
    is_active: bool
    assigned_by: str | None
    assigned_at: datetime
    expires_at: datetime | None
    revoked_at: datetime | None
    revoked_by: str | None


class RoleAssignmentRequest(BaseModel):
    role_name: str = Field(min_length=1)
    organization_id: UUID | None = None
    expires_at: datetime | None = None


class RoleRevocationRequest(BaseModel):
    role_name: str = Field(min_length=1)
    organization_id: UUID | None = None


class PermissionCheckContext(BaseModel):
    organization_id: UUID | None = None
    resource_id: str | None = None
    resource_owner_id: str | None = None


class PermissionCheckRequest(BaseModel):
    user_id: UUID
    resource: str = Field(min_length=1)
    action: str = Field(min_length=1)
    context: PermissionCheckContext = Field(default_factory=PermissionCheckContext)


class PermissionCheckResult(BaseModel):
    allowed: bool
    reason: str


class EffectivePermissions(BaseModel):
    user_id: UUID
    roles: list[RoleRead]
    permissions: list[str]
    access_level: str
    restrictions: list[str]


class PermissionAuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor_id: str
    action: str
    entity_type: str
    entity_id: str
    metadata: dict[str, Any] = Field(validation_alias="event_metadata")
    correlation_id: str | None
    created_at: datetime


class InitializeRolesResult(BaseModel):
    roles_created: int
    permissions_created: int
    links_created: int
