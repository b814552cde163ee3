"""
access/gate.py — Access-control gate
====================================
Composes the static role table, resource ownership and the abuse engine's
risk assessment into a single decision per (actor, resource, action):

  1. Unknown role                          → deny
  2. Owner-scoped record if actor owns it, else the role's general record
  3. No record for the resource type       → deny
  4. Action not allowed                    → deny
  5. Risk assessment is HIGH               → deny
  otherwise                                → grant

Every call writes exactly one ACCESS_GRANTED_<ACTION> / ACCESS_DENIED_<ACTION>
audit entry. Any unexpected failure while deciding denies.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, List, Optional, Tuple, Union

from ..abuse.engine import AbuseEngine
from ..errors import AccessDeniedError
from ..resources import ResourceDirectory
from ..schemas import AccessDecision, Action, Actor, DataAccessResult, RiskLevel
from ..telemetry.events import SecurityEventLogger
from .permissions import (
    PermissionTable,
    Permissions,
    ResourceType,
    Role,
    RolePermissions,
    parse_resource_type,
)

logger = logging.getLogger("governor.access")


class DataType(str, Enum):
    MEDICAL_IMAGE = "medical_image"
    REPORT_DATA = "report_data"
    PERSONAL_INFO = "personal_info"
    SYSTEM_DATA = "system_data"


# Data types whose owner must be the caller or, for doctors, a patient in care
PERSONAL_DATA_TYPES = (DataType.MEDICAL_IMAGE, DataType.PERSONAL_INFO)

BulkRequest = Tuple[str, str, Union[Action, str]]


class AccessControlGate:
    def __init__(
        self,
        permissions: PermissionTable,
        abuse: AbuseEngine,
        events: SecurityEventLogger,
        directory: Optional[ResourceDirectory] = None,
    ) -> None:
        self.permissions = permissions
        self.abuse = abuse
        self.events = events
        self.directory = directory

    # ------------------------------------------------------------------
    # Resource permissions
    # ------------------------------------------------------------------

    def check_permission(
        self,
        actor: Actor,
        resource_type: str,
        resource_id: str,
        action: Union[Action, str],
    ) -> AccessDecision:
        action = Action(action)
        try:
            decision = self._decide(actor, resource_type, resource_id, action)
        except Exception:
            logger.exception(
                "Access check failed for actor %s on %s/%s", actor.id, resource_type, resource_id,
            )
            decision = self._deny(actor, resource_type, resource_id, action, "Access control system error")

        self.abuse.record_access(actor.id)
        self._audit(actor, decision)
        return decision

    def require_permission(
        self,
        actor: Actor,
        resource_type: str,
        resource_id: str,
        action: Union[Action, str],
    ) -> AccessDecision:
        """Like check_permission, but raises AccessDeniedError on deny."""
        decision = self.check_permission(actor, resource_type, resource_id, action)
        if not decision.granted:
            raise AccessDeniedError(decision)
        return decision

    def check_bulk_permissions(self, actor: Actor, requests: Iterable[BulkRequest]) -> List[AccessDecision]:
        return [
            self.check_permission(actor, resource_type, resource_id, action)
            for resource_type, resource_id, action in requests
        ]

    def _decide(
        self,
        actor: Actor,
        resource_type: str,
        resource_id: str,
        action: Action,
    ) -> AccessDecision:
        role = self.permissions.for_role(actor.role)
        if role is None:
            return self._deny(actor, resource_type, resource_id, action, "Invalid user role")

        permissions = None
        rtype = parse_resource_type(resource_type)
        if rtype is not None:
            permissions = self._effective_permissions(actor, role, rtype, resource_id)
        if permissions is None:
            return self._deny(
                actor, resource_type, resource_id, action, "No permissions defined for resource type",
            )

        if not permissions.allows(action):
            return self._deny(actor, resource_type, resource_id, action, "Insufficient permissions")

        risk = self.abuse.assess_access_risk(actor, resource_type, resource_id, action)
        if risk.level is RiskLevel.HIGH:
            return self._deny(
                actor, resource_type, resource_id, action,
                f"High risk access blocked: {risk.reason}",
                risk_level=RiskLevel.HIGH,
            )

        return AccessDecision(
            actor_id=actor.id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            granted=True,
            risk_level=risk.level,
        )

    def _effective_permissions(
        self,
        actor: Actor,
        role: RolePermissions,
        rtype: ResourceType,
        resource_id: str,
    ) -> Optional[Permissions]:
        owned = role.owned.get(rtype)
        if owned is not None and self._is_owner(actor, rtype, resource_id):
            return owned
        return role.general.get(rtype)

    def _is_owner(self, actor: Actor, rtype: ResourceType, resource_id: str) -> bool:
        if rtype is ResourceType.USERS:
            return resource_id == actor.id
        if self.directory is None:
            return False
        return self.directory.owner_of(rtype.value, resource_id) == actor.id

    @staticmethod
    def _deny(
        actor: Actor,
        resource_type: str,
        resource_id: str,
        action: Action,
        reason: str,
        risk_level: RiskLevel = RiskLevel.LOW,
    ) -> AccessDecision:
        return AccessDecision(
            actor_id=actor.id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            granted=False,
            reason=reason,
            risk_level=risk_level,
        )

    def _audit(self, actor: Actor, decision: AccessDecision) -> None:
        outcome = "GRANTED" if decision.granted else "DENIED"
        try:
            self.events.log_action(
                actor.id,
                f"ACCESS_{outcome}_{decision.action.value.upper()}",
                decision.resource_type,
                decision.resource_id,
                {
                    "action": decision.action.value,
                    "granted": decision.granted,
                    "reason": decision.reason or "Permission granted",
                    "risk_level": decision.risk_level.value,
                    "ip": actor.ip,
                    "user_agent": actor.user_agent,
                    "session_id": actor.session_id,
                },
            )
            if not decision.granted:
                self.events.log_security_event(
                    "ACCESS_DENIED",
                    f"ip:{actor.ip}" if actor.ip else f"user:{actor.id}",
                    {
                        "resource_type": decision.resource_type,
                        "resource_id": decision.resource_id,
                        "action": decision.action.value,
                        "reason": decision.reason,
                    },
                    actor_id=actor.id,
                )
        except Exception:
            logger.warning("Failed to audit access decision for actor %s", actor.id, exc_info=True)

    # ------------------------------------------------------------------
    # Data-level access
    # ------------------------------------------------------------------

    def validate_data_access(
        self,
        actor: Actor,
        data_type: Union[DataType, str],
        owner_id: Optional[str] = None,
    ) -> DataAccessResult:
        """Row-level check for data handed back to a caller.

        System data is admin-only. Patients may only see their own personal
        info and medical images; doctors need a care relationship with the
        owner. Report data only goes through the risk check here.
        """
        data_type = DataType(data_type)
        try:
            if data_type is DataType.SYSTEM_DATA and actor.role != Role.ADMIN.value:
                return DataAccessResult(allowed=False, reason="System data access requires admin role")

            # Report data is guarded per record by check_permission
            if data_type in PERSONAL_DATA_TYPES and owner_id is not None and owner_id != actor.id:
                if actor.role == Role.PATIENT.value:
                    return DataAccessResult(allowed=False, reason="Cannot access other patients' data")
                if actor.role == Role.DOCTOR.value and (
                    self.directory is None or not self.directory.has_care_relationship(actor.id, owner_id)
                ):
                    return DataAccessResult(allowed=False, reason="No doctor-patient relationship")

            risk = self.abuse.assess_access_risk(actor, data_type.value, owner_id or "", Action.READ)
            if risk.level is RiskLevel.HIGH:
                return DataAccessResult(allowed=False, reason=f"High risk data access blocked: {risk.reason}")

            return DataAccessResult(allowed=True)
        except Exception:
            logger.exception("Data access validation failed for actor %s", actor.id)
            return DataAccessResult(allowed=False, reason="Access validation system error")
