from __future__ import annotations

from dataclasses import dataclass

ADMIN = "admin"
MANAGER = "manager"
SALES_REP = "sales_rep"
VIEWER = "viewer"

ADMIN_LEVEL = 100
MANAGER_LEVEL = 75

ALL_ROLES = (ADMIN, MANAGER, SALES_REP, VIEWER)


@dataclass(frozen=True)
class SystemRole:
    name: str
    level: int
    description: str


SYSTEM_ROLES: dict[str, SystemRole] = {
    ADMIN: SystemRole(ADMIN, ADMIN_LEVEL, "System Administrator"),
    MANAGER: SystemRole(MANAGER, MANAGER_LEVEL, "Regional Manager"),
    SALES_REP: SystemRole(SALES_REP, 50, "Sales Representative"),
    VIEWER: SystemRole(VIEWER, 25, "Read-only Viewer"),
}

_CRUD_WRITERS = (ADMIN, MANAGER, SALES_REP)

# (resource, action) -> roles granted it
DEFAULT_PERMISSIONS: dict[tuple[str, str], tuple[str, ...]] = {
    ("users", "create"): (ADMIN,),
    ("users", "read"): ALL_ROLES,
    ("users", "update"): (ADMIN, MANAGER),
    ("users", "delete"): (ADMIN,),
    ("organizations", "create"): (ADMIN, MANAGER),
    ("organizations", "read"): ALL_ROLES,
    ("organizations", "update"): _CRUD_WRITERS,
    ("organizations", "delete"): (ADMIN,),
    ("contacts", "create"): _CRUD_WRITERS,
    ("contacts", "read"): ALL_ROLES,
    ("contacts", "update"): _CRUD_WRITERS,
    ("contacts", "delete"): (ADMIN, MANAGER),
    ("interactions", "create"): _CRUD_WRITERS,
    ("interactions", "read"): ALL_ROLES,
    ("interactions", "update"): _CRUD_WRITERS,
    ("interactions", "delete"): (ADMIN, MANAGER),
    ("opportunities", "create"): _CRUD_WRITERS,
    ("opportunities", "read"): ALL_ROLES,
    ("opportunities", "update"): _CRUD_WRITERS,
    ("opportunities", "delete"): (ADMIN, MANAGER),
    ("products", "create"): (ADMIN, MANAGER),
    ("products", "read"): ALL_ROLES,
    ("products", "update"): (ADMIN, MANAGER),
    ("products", "delete"): (ADMIN,),
    ("analytics", "read"): _CRUD_WRITERS,
    ("reports", "create"): (ADMIN, MANAGER),
    ("reports", "read"): ALL_ROLES,
    ("system", "configure"): (ADMIN,),
    ("system", "monitor"): (ADMIN, MANAGER),
    ("audit_logs", "read"): (ADMIN, MANAGER),
}

RESTRICTIONS_BY_ACCESS_LEVEL: dict[str, tuple[str, ...]] = {
    SALES_REP: ("no_admin_functions",),
    VIEWER: ("read_only", "no_create_update_delete"),
}


def permissions_for_role(role_name: str) -> list[tuple[str, str]]:
    return sorted(key for key, roles in DEFAULT_PERMISSIONS.items() if role_name in roles)
