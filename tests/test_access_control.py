"""
Tests for the access-control gate and permission tables.
=========================================================
Covers:
  - role tables: unknown role, unknown resource type, insufficient action
  - ownership: owner-scoped records for reports and user profiles
  - risk: high risk denies an otherwise-permitted action
  - audit: exactly one ACCESS_* entry per call, ACCESS_DENIED security event
  - fail closed on internal errors, audit failures never flip a decision
  - data-level validation and the YAML permission loader
"""
from __future__ import annotations

import pytest

from request_governor.access import DataType, PermissionTable, ResourceType, Role, load_permission_table
from request_governor.config import Settings
from request_governor.context import GovernanceContext
from request_governor.errors import AccessDeniedError, ConfigurationError
from request_governor.schemas import Action, Actor, RiskLevel

BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:120.0) Gecko/20100101 Firefox/120.0"
HOUR_MS = 60 * 60 * 1000


def _patient(id: str = "p1", **kw) -> Actor:
    return Actor(id=id, role="patient", user_agent=BROWSER_UA, **kw)


def _doctor(id: str = "d1", **kw) -> Actor:
    return Actor(id=id, role="doctor", user_agent=BROWSER_UA, **kw)


def _admin(id: str = "a1", **kw) -> Actor:
    return Actor(id=id, role="admin", user_agent=BROWSER_UA, **kw)


def _access_entries(sink):
    return [e for e in sink.entries if e.event_type.startswith("ACCESS_")]


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

class TestCheckPermission:

    def test_patient_deletes_own_report(self, context, directory, clock, sink):
        directory.register("reports", "rep-7", owner_id="p1", created_at_ms=clock() - 48 * HOUR_MS)
        decision = context.gate.check_permission(_patient(), "reports", "rep-7", Action.DELETE)

        assert decision.granted is True
        assert decision.risk_level is RiskLevel.LOW
        entries = _access_entries(sink)
        assert [e.event_type for e in entries] == ["ACCESS_GRANTED_DELETE"]
        assert entries[0].actor_id == "p1"
        assert entries[0].resource_id == "rep-7"
        assert entries[0].details["reason"] == "Permission granted"

    def test_patient_cannot_delete_someone_elses_report(self, context, directory, clock, sink):
        directory.register("reports", "rep-8", owner_id="p2", created_at_ms=clock() - 48 * HOUR_MS)
        decision = context.gate.check_permission(_patient(), "reports", "rep-8", Action.DELETE)

        assert decision.granted is False
        assert decision.reason == "Insufficient permissions"
        assert decision.risk_level is RiskLevel.LOW
        assert [e.event_type for e in _access_entries(sink)] == ["ACCESS_DENIED_DELETE"]
        denied = sink.by_type("SECURITY_ACCESS_DENIED")
        assert len(denied) == 1
        assert denied[0].details["details"]["reason"] == "Insufficient permissions"

    def test_patient_reads_any_report(self, context):
        assert context.gate.check_permission(_patient(), "reports", "rep-x", "read").granted is True

    def test_deleting_recent_own_report_is_granted_with_medium_risk(self, context, directory, clock):
        directory.register("reports", "rep-9", owner_id="p1", created_at_ms=clock() - HOUR_MS)
        decision = context.gate.check_permission(_patient(), "reports", "rep-9", Action.DELETE)
        assert decision.granted is True
        assert decision.risk_level is RiskLevel.MEDIUM

    def test_unknown_role(self, context, sink):
        actor = Actor(id="x1", role="superuser", user_agent=BROWSER_UA)
        decision = context.gate.check_permission(actor, "reports", "r1", Action.READ)
        assert decision.granted is False
        assert decision.reason == "Invalid user role"
        assert len(_access_entries(sink)) == 1

    @pytest.mark.parametrize("resource_type", ["doctor_notes", "widgets"])
    def test_no_permissions_for_resource_type(self, context, resource_type):
        decision = context.gate.check_permission(_patient(), resource_type, "n1", Action.READ)
        assert decision.granted is False
        assert decision.reason == "No permissions defined for resource type"

    def test_user_profile_is_owned_by_that_user(self, context):
        assert context.gate.check_permission(_patient(), "users", "p1", Action.WRITE).granted is True
        other = context.gate.check_permission(_patient(), "users", "p2", Action.READ)
        assert other.granted is False
        assert other.reason == "No permissions defined for resource type"

    def test_doctor_permissions(self, context):
        gate = context.gate
        assert gate.check_permission(_doctor(), "reports", "r1", Action.WRITE).granted is True
        assert gate.check_permission(_doctor(), "reports", "r1", Action.DELETE).reason == "Insufficient permissions"
        assert gate.check_permission(_doctor(), "doctor_notes", "n1", Action.DELETE).granted is True

    def test_admin_audit_log_access(self, context):
        assert context.gate.check_permission(_admin(), "audit_logs", "*", Action.READ).granted is True
        denied = context.gate.check_permission(_admin(), "audit_logs", "*", Action.WRITE)
        assert denied.reason == "Insufficient permissions"

    def test_high_risk_denies_permitted_action(self, context, sink):
        gate = context.gate
        for _ in range(51):
            assert gate.check_permission(_patient(), "reports", "r1", Action.READ).granted is True

        decision = gate.check_permission(_patient(), "reports", "r1", Action.READ)
        assert decision.granted is False
        assert decision.risk_level is RiskLevel.HIGH
        assert decision.reason == "High risk access blocked: Too many recent access attempts"
        assert len(_access_entries(sink)) == 52

    def test_high_risk_origin_is_denied(self, context, clock):
        context.blocks.block("ip:10.0.0.7", 1_000, reason="manual")
        clock.advance(1_000)
        actor = Actor(id="p1", role="patient", ip="10.0.0.7", user_agent="curl/8")
        decision = context.gate.check_permission(actor, "reports", "r1", Action.READ)
        assert decision.granted is False
        assert decision.reason == "High risk access blocked: High-risk network origin"

    def test_internal_error_fails_closed(self, context, sink):
        class BrokenDirectory:
            def owner_of(self, resource_type, resource_id):
                raise RuntimeError("db down")

        context.gate.directory = BrokenDirectory()
        decision = context.gate.check_permission(_patient(), "reports", "r1", Action.DELETE)
        assert decision.granted is False
        assert decision.reason == "Access control system error"
        assert [e.event_type for e in _access_entries(sink)] == ["ACCESS_DENIED_DELETE"]

    def test_audit_sink_failure_does_not_change_decision(self, directory, clock):
        class FailingSink:
            def write(self, entry):
                raise IOError("disk full")

        context = GovernanceContext.from_settings(
            Settings(audit_sink="memory"), sink=FailingSink(), directory=directory, clock=clock,
        )
        assert context.gate.check_permission(_patient(), "reports", "r1", Action.READ).granted is True
        assert context.gate.check_permission(_patient(), "reports", "r1", Action.WRITE).granted is False

    def test_event_logger_failure_does_not_change_decision(self, context):
        class ExplodingEvents:
            def log_action(self, *args, **kwargs):
                raise RuntimeError("logger broken")

        context.gate.events = ExplodingEvents()
        assert context.gate.check_permission(_patient(), "reports", "r1", Action.READ).granted is True

    def test_every_call_is_recorded_as_an_attempt(self, context, clock):
        context.gate.check_permission(_patient(), "reports", "r1", Action.READ)
        context.gate.check_permission(_patient(), "widgets", "w1", Action.READ)
        assert context.abuse.attempts.count_since("p1", clock() - 1) == 2

    def test_unknown_action_is_rejected(self, context):
        with pytest.raises(ValueError):
            context.gate.check_permission(_patient(), "reports", "r1", "publish")


class TestHelpers:

    def test_require_permission_raises_with_decision(self, context):
        with pytest.raises(AccessDeniedError) as exc_info:
            context.gate.require_permission(_patient(), "reports", "r1", Action.WRITE)
        assert exc_info.value.decision.reason == "Insufficient permissions"

    def test_require_permission_returns_grant(self, context):
        decision = context.gate.require_permission(_patient(), "reports", "r1", Action.READ)
        assert decision.granted is True

    def test_bulk_permissions_preserve_order(self, context, sink):
        decisions = context.gate.check_bulk_permissions(
            _patient(),
            [("reports", "r1", Action.READ), ("reports", "r1", "write"), ("system", "s", Action.READ)],
        )
        assert [d.granted for d in decisions] == [True, False, False]
        assert len(_access_entries(sink)) == 3


# ---------------------------------------------------------------------------
# Data-level access
# ---------------------------------------------------------------------------

class TestValidateDataAccess:

    def test_system_data_is_admin_only(self, context):
        denied = context.gate.validate_data_access(_doctor(), DataType.SYSTEM_DATA)
        assert denied.allowed is False
        assert context.gate.validate_data_access(_admin(), "system_data").allowed is True

    def test_patient_only_sees_own_data(self, context):
        assert context.gate.validate_data_access(_patient(), DataType.MEDICAL_IMAGE, owner_id="p1").allowed is True
        other = context.gate.validate_data_access(_patient(), DataType.PERSONAL_INFO, owner_id="p2")
        assert other.allowed is False
        assert other.reason == "Cannot access other patients' data"

    def test_doctor_needs_care_relationship(self, context, directory):
        denied = context.gate.validate_data_access(_doctor(), DataType.MEDICAL_IMAGE, owner_id="p1")
        assert denied.allowed is False
        assert denied.reason == "No doctor-patient relationship"
        directory.link_care("d1", "p1")
        assert context.gate.validate_data_access(_doctor(), DataType.MEDICAL_IMAGE, owner_id="p1").allowed is True

    def test_report_data_skips_ownership_checks(self, context):
        assert context.gate.validate_data_access(_patient(), DataType.REPORT_DATA, owner_id="p2").allowed is True
        assert context.gate.validate_data_access(_doctor(), DataType.REPORT_DATA, owner_id="p2").allowed is True

    def test_high_risk_blocks_data_access(self, context):
        for _ in range(51):
            context.abuse.record_access("p1")
        result = context.gate.validate_data_access(_patient(), DataType.REPORT_DATA, owner_id="p1")
        assert result.allowed is False
        assert "Too many recent access attempts" in result.reason


# ---------------------------------------------------------------------------
# Permission tables
# ---------------------------------------------------------------------------

class TestPermissionTable:

    def test_bundled_table_loads(self):
        table = load_permission_table()
        patient = table.for_role("patient")
        assert patient.general[ResourceType.REPORTS].read is True
        assert patient.general[ResourceType.REPORTS].write is False
        assert patient.owned[ResourceType.REPORTS].delete is True
        assert set(table.roles) == set(Role)

    def test_unknown_role_lookup(self):
        assert load_permission_table().for_role("janitor") is None

    def test_unknown_action_key_is_rejected(self):
        raw = {
            "patient": {"general": {"reports": {"read": True, "publish": True}}},
            "doctor": {},
            "admin": {},
        }
        with pytest.raises(ConfigurationError):
            PermissionTable.from_mapping(raw)

    def test_unknown_resource_type_is_rejected(self):
        raw = {"patient": {"general": {"widgets": {"read": True}}}, "doctor": {}, "admin": {}}
        with pytest.raises(ConfigurationError):
            PermissionTable.from_mapping(raw)

    def test_missing_role_is_rejected(self):
        with pytest.raises(ConfigurationError, match="admin"):
            PermissionTable.from_mapping({"patient": {}, "doctor": {}})

    def test_load_from_path(self, tmp_path):
        path = tmp_path / "perms.yml"
        path.write_text(
            "patient:\n  general:\n    reports: {read: true}\n"
            "doctor: {}\n"
            "admin:\n  general:\n    system: {read: true, admin: true}\n",
            encoding="utf-8",
        )
        table = load_permission_table(str(path))
        assert table.for_role("patient").general[ResourceType.REPORTS].allows(Action.READ)
        assert not table.for_role("patient").general[ResourceType.REPORTS].allows(Action.DELETE)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_permission_table(str(tmp_path / "nope.yml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("patient: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_permission_table(str(path))

    def test_context_fails_fast_on_bad_table(self, tmp_path, sink):
        path = tmp_path / "perms.yml"
        path.write_text("patient: {}\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            GovernanceContext.from_settings(
                Settings(audit_sink="memory", permissions_path=str(path)), sink=sink,
            )
