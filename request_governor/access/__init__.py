from .gate import AccessControlGate, DataType
from .permissions import (
    PermissionTable,
    Permissions,
    ResourceType,
    Role,
    RolePermissions,
    load_permission_table,
)

__all__ = [
    "AccessControlGate",
    "DataType",
    "PermissionTable",
    "Permissions",
    "ResourceType",
    "Role",
    "RolePermissions",
    "load_permission_table",
]
