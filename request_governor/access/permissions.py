from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from ..errors import ConfigurationError
from ..schemas import Action


class Role(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


class ResourceType(str, Enum):
    REPORTS = "reports"
    DOCTOR_NOTES = "doctor_notes"
    NOTIFICATIONS = "notifications"
    USERS = "users"
    VERIFICATION = "verification"
    AUDIT_LOGS = "audit_logs"
    SYSTEM = "system"


class Permissions(BaseModel):
    """Fixed-shape permission record: one flag per action."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    read: bool = False
    write: bool = False
    delete: bool = False
    admin: bool = False

    def allows(self, action: Action) -> bool:
        if action is Action.READ:
            return self.read
        if action is Action.WRITE:
            return self.write
        if action is Action.DELETE:
            return self.delete
        if action is Action.ADMIN:
            return self.admin
        raise ValueError(f"Unhandled action {action!r}")


class RolePermissions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    general: Dict[ResourceType, Permissions] = {}
    owned: Dict[ResourceType, Permissions] = {}


class PermissionTable(BaseModel):
    """Static role → resource → action table, validated at startup."""

    model_config = ConfigDict(frozen=True)

    roles: Dict[Role, RolePermissions]

    def for_role(self, role: str) -> Optional[RolePermissions]:
        try:
            return self.roles.get(Role(role))
        except ValueError:
            return None

    @classmethod
    def from_mapping(cls, raw: Dict[str, Any]) -> "PermissionTable":
        if not isinstance(raw, dict):
            raise ConfigurationError("Permission table must be a mapping of role → permissions")
        try:
            table = cls(roles=raw)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid permission table: {exc}") from exc
        missing = [r.value for r in Role if r not in table.roles]
        if missing:
            raise ConfigurationError(f"Permission table has no entry for role(s): {', '.join(missing)}")
        return table


def parse_resource_type(value: str) -> Optional[ResourceType]:
    try:
        return ResourceType(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _base_permissions_path(configured: str = "") -> Path:
    if configured:
        return Path(configured)
    return Path(__file__).parent / "base_permissions.yml"


def load_permission_table(path: str = "") -> PermissionTable:
    """Load and validate the permission table from YAML.

    Raises ConfigurationError when the file is missing or malformed; the
    governance context treats that as fatal at startup.
    """
    p = _base_permissions_path(path)
    if not p.exists():
        raise ConfigurationError(f"Permission table not found: {p}")
    with p.open("r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Permission table {p} is not valid YAML: {exc}") from exc
    return PermissionTable.from_mapping(raw)
