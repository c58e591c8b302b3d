"""
Service tests — resource checks, role changes, grants/revokes, audit completeness.
Tests 501-560.
"""
import logging

import pytest

from mindspace_access.errors import (
    AuthenticationError,
    AuthorizationError,
    ErrorCode,
    InvalidRequestError,
    NotFoundError,
)
from mindspace_access.rbac import Permission, Role, get_role_permissions
from mindspace_access.schemas import AuditStatus, PermissionCondition, PermissionRule
from mindspace_access.services.audit_service import PermissionAuditor
from mindspace_access.services.permission_service import PermissionService
from mindspace_access.services.store import SqlAlchemyPermissionStore

C1, C2 = "company-1", "company-2"


class FailingAuditStore(SqlAlchemyPermissionStore):
    """Store whose audit table is unavailable."""

    async def append_audit_entry(self, entry):
        raise RuntimeError("audit table unavailable")


async def mutation_entries(service, user_id):
    return [e for e in await service.get_permission_audit_log(user_id) if e.action != "permission.check"]


@pytest.fixture
def degraded_service(session_factory):
    store = FailingAuditStore(session_factory)
    return PermissionService(store, PermissionAuditor(store))


class TestResourceAccess:
    """can_access_resource dispatch."""

    async def test_501_company_resource(self, service, users):
        assert await service.can_access_resource(users["user_c1"], "company", C1, "view")
        assert not await service.can_access_resource(users["user_c1"], "company", C2, "view")
        assert await service.can_access_resource(users["super"], "company", C2, "view")

    async def test_502_user_resource_view_and_manage(self, service, users):
        assert await service.can_access_resource(users["user_c1"], "user", "user2_c1", "view")
        assert not await service.can_access_resource(users["user_c1"], "user", "user2_c1", "manage")
        assert await service.can_access_resource(users["admin_c1"], "user", "user_c1", "manage")

    async def test_503_user_resource_unknown_action_denied(self, service, users):
        assert not await service.can_access_resource(users["super"], "user", "user_c1", "delete")

    async def test_504_journal_ownership(self, service, users):
        """Owner, super admin and same-company admin; everyone else denied."""
        assert await service.can_access_resource(users["user_c1"], "journal", "journal_user_c1", "read")
        assert await service.can_access_resource(users["super"], "journal", "journal_user_c2", "read")
        assert await service.can_access_resource(users["admin_c1"], "journal", "journal_user_c1", "read")
        assert not await service.can_access_resource(users["admin_c1"], "journal", "journal_user_c2", "read")
        assert not await service.can_access_resource(users["manager_c1"], "journal", "journal_user_c1", "read")
        assert not await service.can_access_resource(users["user2_c1"], "journal", "journal_user_c1", "read")

    async def test_505_company_admin_cannot_read_individual_journals(self, service, users):
        assert not await service.can_access_resource(users["admin_c1"], "journal", "journal_individual", "read")

    async def test_506_mood_ownership(self, service, users):
        assert await service.can_access_resource(users["individual"], "mood", "mood_individual", "read")
        assert not await service.can_access_resource(users["user_c1"], "mood", "mood_individual", "read")

    async def test_507_unknown_resource_type_denied(self, service, users):
        """Fail closed, even for a super admin."""
        assert not await service.can_access_resource(users["super"], "spaceship", "x", "read")

    async def test_508_missing_resource_is_not_found(self, service, users):
        with pytest.raises(NotFoundError):
            await service.can_access_resource(users["user_c1"], "journal", "missing", "read")
        with pytest.raises(NotFoundError):
            await service.can_access_resource(users["user_c1"], "user", "missing", "view")


class TestReadViews:
    async def test_511_effective_and_role(self, service):
        assert await service.get_user_role("manager_c1") is Role.COMPANY_MANAGER
        assert await service.get_effective_permissions("manager_c1") == get_role_permissions(
            Role.COMPANY_MANAGER
        )

    async def test_512_inherited_permissions_sources(self, service):
        await service.assign_permissions("user_c1", ["manage_departments"], "admin_c1")
        inherited = await service.get_inherited_permissions("user_c1")
        direct = [i for i in inherited if i.source == "direct"]
        role = [i for i in inherited if i.source == "role"]
        assert [i.permission for i in direct] == [Permission.MANAGE_DEPARTMENTS]
        assert direct[0].source_id == "user_c1"
        assert {i.permission for i in role} == get_role_permissions(Role.COMPANY_USER)
        assert all(i.source_id == "COMPANY_USER" for i in role)

    async def test_513_assignable_roles(self, service, users):
        assert service.get_assignable_roles(users["admin_c1"]) == [
            Role.COMPANY_MANAGER,
            Role.COMPANY_USER,
            Role.INDIVIDUAL_USER,
        ]
        assert service.get_assignable_roles(users["user_c1"]) == [Role.INDIVIDUAL_USER]


class TestRoleUpdates:
    """update_user_role authorisation, persistence and audit."""

    async def test_521_super_admin_promotes_user(self, service, store):
        """Role persisted and exactly one audit entry with result=true."""
        result = await service.update_user_role("user_c1", "COMPANY_ADMIN", "super")
        assert result.user.role is Role.COMPANY_ADMIN
        assert result.audit_status is AuditStatus.WRITTEN
        assert (await store.get_user_by_id("user_c1")).role is Role.COMPANY_ADMIN

        entries = await mutation_entries(service, "user_c1")
        assert len(entries) == 1
        assert entries[0].action == "role.update"
        assert entries[0].result is True
        assert entries[0].actor_id == "super"
        assert entries[0].context["old_role"] == "COMPANY_USER"

    async def test_522_admin_cannot_promote_to_own_rank(self, service, store):
        with pytest.raises(AuthorizationError) as exc:
            await service.update_user_role("user_c1", Role.COMPANY_ADMIN, "admin_c1")
        assert exc.value.code is ErrorCode.INSUFFICIENT_PERMISSIONS
        assert (await store.get_user_by_id("user_c1")).role is Role.COMPANY_USER
        assert await mutation_entries(service, "user_c1") == []

    async def test_523_admin_cannot_touch_other_company(self, service, store):
        with pytest.raises(AuthorizationError):
            await service.update_user_role("user_c2", Role.COMPANY_MANAGER, "admin_c1")
        assert (await store.get_user_by_id("user_c2")).role is Role.COMPANY_USER

    async def test_524_admin_cannot_move_user_to_other_company(self, service, store):
        with pytest.raises(AuthorizationError):
            await service.update_user_role("user_c1", Role.COMPANY_USER, "admin_c1", company_id=C2)
        assert (await store.get_user_by_id("user_c1")).company_id == C1

    async def test_525_nobody_changes_own_role(self, service, store):
        with pytest.raises(AuthorizationError):
            await service.update_user_role("admin_c1", Role.COMPANY_MANAGER, "admin_c1")
        with pytest.raises(AuthorizationError):
            await service.update_user_role("super", Role.COMPANY_ADMIN, "super", company_id=C1)
        stored = await store.get_user_by_id("super")
        assert stored.role is Role.SUPER_ADMIN
        assert stored.company_id is None
        assert await mutation_entries(service, "super") == []

    async def test_526_individual_role_detaches_company(self, service):
        result = await service.update_user_role("user_c1", Role.INDIVIDUAL_USER, "admin_c1")
        assert result.user.company_id is None

    async def test_527_company_role_requires_company(self, service, store):
        with pytest.raises(InvalidRequestError):
            await service.update_user_role("individual", Role.COMPANY_USER, "super")
        result = await service.update_user_role("individual", Role.COMPANY_USER, "super", company_id=C2)
        assert result.user.company_id == C2

    async def test_528_role_change_resets_direct_grants(self, service):
        await service.assign_permissions("user_c1", ["manage_departments"], "admin_c1")
        result = await service.update_user_role("user_c1", Role.COMPANY_MANAGER, "admin_c1")
        assert result.user.permissions == frozenset()
        entry = (await mutation_entries(service, "user_c1"))[-1]
        assert entry.context["cleared_permissions"] == ["manage_departments"]

    async def test_529_unknown_role_rejected(self, service):
        with pytest.raises(InvalidRequestError):
            await service.update_user_role("user_c1", "JANITOR", "super")

    async def test_530_unknown_or_inactive_actor(self, service):
        with pytest.raises(AuthenticationError) as exc:
            await service.update_user_role("user_c1", Role.INDIVIDUAL_USER, "ghost")
        assert exc.value.code is ErrorCode.AUTHENTICATION_REQUIRED
        with pytest.raises(AuthenticationError) as exc:
            await service.update_user_role("user_c1", Role.INDIVIDUAL_USER, "inactive_c1")
        assert exc.value.code is ErrorCode.INACTIVE_USER

    async def test_531_missing_target_is_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.update_user_role("ghost", Role.COMPANY_USER, "super")

    async def test_532_super_admin_skipped_in_own_bulk_role_change(self, service, store):
        result = await service.bulk_assign_role(["super", "user_c1"], Role.COMPANY_MANAGER, "super")
        assert result.succeeded == ["user_c1"]
        assert result.failed == {"super": "INSUFFICIENT_PERMISSIONS"}
        assert (await store.get_user_by_id("super")).role is Role.SUPER_ADMIN

    async def test_533_store_update_keeps_company_unless_given(self, store):
        updated = await store.update_user("user_c1", role=Role.COMPANY_MANAGER)
        assert updated.company_id == C1
        updated = await store.update_user("user_c1", company_id=None)
        assert updated.company_id is None
        assert updated.role is Role.COMPANY_MANAGER


class TestPermissionGrants:
    """assign/revoke authorisation, set semantics and audit."""

    async def test_541_company_user_cannot_grant(self, service, store):
        """Denied before any write: no persistence, no audit entry for the target."""
        with pytest.raises(AuthorizationError) as exc:
            await service.assign_permissions("user2_c1", ["manage_platform"], "user_c1")
        assert exc.value.code is ErrorCode.INSUFFICIENT_PERMISSIONS
        assert (await store.get_user_by_id("user2_c1")).permissions == frozenset()
        assert await mutation_entries(service, "user2_c1") == []

    async def test_542_assign_is_idempotent(self, service, store):
        await service.assign_permissions("user_c1", [Permission.MANAGE_DEPARTMENTS], "admin_c1")
        result = await service.assign_permissions("user_c1", [Permission.MANAGE_DEPARTMENTS], "admin_c1")
        assert result.user.permissions == frozenset({Permission.MANAGE_DEPARTMENTS})
        stored = await store.get_user_by_id("user_c1")
        assert stored.permissions == frozenset({Permission.MANAGE_DEPARTMENTS})

    async def test_543_assign_revoke_round_trip(self, service):
        before = await service.get_effective_permissions("user_c1")
        grants = [Permission.MANAGE_DEPARTMENTS, Permission.VIEW_COMPANY_ANALYTICS]
        await service.assign_permissions("user_c1", grants, "admin_c1")
        assert await service.get_effective_permissions("user_c1") == before | set(grants)
        await service.revoke_permissions("user_c1", grants, "admin_c1")
        assert await service.get_effective_permissions("user_c1") == before

    async def test_544_cannot_grant_what_you_do_not_hold(self, service):
        with pytest.raises(AuthorizationError):
            await service.assign_permissions("user_c1", ["manage_platform"], "admin_c1")

    async def test_545_super_admin_grants_anything(self, service):
        result = await service.assign_permissions("user_c2", ["manage_platform"], "super")
        assert Permission.MANAGE_PLATFORM in result.user.permissions

    async def test_546_manager_cannot_grant(self, service):
        """Managers manage roles below them but cannot grant permissions."""
        with pytest.raises(AuthorizationError):
            await service.assign_permissions("user_c1", ["create_journal"], "manager_c1")

    async def test_547_revoke_never_removes_role_defaults(self, service):
        result = await service.revoke_permissions("user_c1", ["view_own_data"], "admin_c1")
        assert result.user.permissions == frozenset()
        assert Permission.VIEW_OWN_DATA in await service.get_effective_permissions("user_c1")

    async def test_548_unknown_permission_rejected(self, service):
        with pytest.raises(InvalidRequestError):
            await service.assign_permissions("user_c1", ["fly"], "admin_c1")
        with pytest.raises(InvalidRequestError):
            await service.revoke_permissions("user_c1", [], "admin_c1")

    async def test_549_every_mutation_is_audited(self, service):
        await service.assign_permissions("user_c1", ["manage_departments"], "admin_c1")
        await service.revoke_permissions("user_c1", ["manage_departments"], "admin_c1")
        await service.update_user_role("user_c1", Role.COMPANY_MANAGER, "admin_c1")
        actions = [e.action for e in await mutation_entries(service, "user_c1")]
        assert actions == ["permission.assign", "permission.revoke", "role.update"]


class TestAuditDegradation:
    """A failing audit write never undoes or blocks the mutation."""

    async def test_551_mutation_survives_audit_failure(self, session_factory, caplog):
        store = FailingAuditStore(session_factory)
        service = PermissionService(store, PermissionAuditor(store))
        with caplog.at_level(logging.ERROR):
            result = await service.update_user_role("user_c1", Role.COMPANY_MANAGER, "super")
        assert result.audit_status is AuditStatus.DEGRADED
        assert (await store.get_user_by_id("user_c1")).role is Role.COMPANY_MANAGER
        assert "AUDIT DEGRADED" in caplog.text
        assert "user_c1" in caplog.text

    async def test_552_checks_survive_audit_failure(self, session_factory, users):
        store = FailingAuditStore(session_factory)
        service = PermissionService(store, PermissionAuditor(store))
        assert await service.has_permission(users["user_c1"], Permission.VIEW_OWN_DATA) is True

    async def test_553_decision_audit_can_be_disabled(self, store, users):
        service = PermissionService(store, PermissionAuditor(store, audit_checks=False))
        await service.has_permission(users["user_c1"], Permission.VIEW_OWN_DATA)
        await service.assign_permissions("user_c1", ["manage_departments"], "admin_c1")
        actions = [e.action for e in await service.get_permission_audit_log("user_c1")]
        assert actions == ["permission.assign"]

    async def test_554_grant_and_revoke_survive_audit_failure(self, degraded_service):
        service = degraded_service
        result = await service.assign_permissions("user_c1", ["manage_departments"], "admin_c1")
        assert result.audit_status is AuditStatus.DEGRADED
        assert result.user.permissions == frozenset({Permission.MANAGE_DEPARTMENTS})

        result = await service.revoke_permissions("user_c1", ["manage_departments"], "admin_c1")
        assert result.audit_status is AuditStatus.DEGRADED
        stored = await service.store.get_user_by_id("user_c1")
        assert stored.permissions == frozenset()

    async def test_555_template_apply_survives_audit_failure(self, degraded_service):
        service = degraded_service
        template = await service.create_permission_template("Lead", ["manage_departments"], "super")
        result = await service.apply_permission_template("user_c1", template.id, "admin_c1")
        assert result.audit_status is AuditStatus.DEGRADED
        stored = await service.store.get_user_by_id("user_c1")
        assert stored.permissions == frozenset({Permission.MANAGE_DEPARTMENTS})

    async def test_556_bulk_role_reports_degraded_users(self, degraded_service):
        service = degraded_service
        result = await service.bulk_assign_role(
            ["user_c1", "user_c2", "user2_c1"], Role.COMPANY_MANAGER, "admin_c1"
        )
        assert result.succeeded == ["user_c1", "user2_c1"]
        assert result.audit_degraded == ["user_c1", "user2_c1"]
        assert result.failed == {"user_c2": "INSUFFICIENT_PERMISSIONS"}
        for user_id in result.succeeded:
            assert (await service.store.get_user_by_id(user_id)).role is Role.COMPANY_MANAGER

    async def test_557_bulk_permissions_reports_degraded_users(self, degraded_service):
        service = degraded_service
        result = await service.bulk_assign_permissions(
            ["user_c1", "user2_c1"], ["manage_departments"], "admin_c1"
        )
        assert result.succeeded == ["user_c1", "user2_c1"]
        assert result.audit_degraded == ["user_c1", "user2_c1"]
        for user_id in result.succeeded:
            stored = await service.store.get_user_by_id(user_id)
            assert stored.permissions == frozenset({Permission.MANAGE_DEPARTMENTS})

    async def test_558_healthy_audit_reports_nothing_degraded(self, service):
        result = await service.bulk_assign_role(["user_c1"], Role.COMPANY_MANAGER, "admin_c1")
        assert result.audit_degraded == []


class TestEvaluateAccess:
    """Stored rules first, role checks as fallback, tenant boundary always."""

    async def test_561_deny_rule_overrides_ownership(self, service, users):
        rule = PermissionRule(
            name="no company-user journals",
            resource_type="journal",
            action="read",
            conditions=[PermissionCondition(field="user.role", operator="equals", value="COMPANY_USER")],
            effect="deny",
        )
        await service.create_rule(rule, "super")
        assert not await service.evaluate_access(users["user_c1"], "journal", "journal_user_c1", "read")
        assert await service.evaluate_access(users["individual"], "journal", "journal_individual", "read")

    async def test_562_allow_rule_grants_unknown_resource_type(self, service, users):
        rule = PermissionRule(
            name="hr reports",
            resource_type="report",
            action="view",
            conditions=[PermissionCondition(field="attributes.department", operator="equals", value="hr")],
            effect="allow",
        )
        await service.create_rule(rule, "super")
        attrs = {"department": "hr", "company_id": C1}
        assert await service.evaluate_access(users["user_c1"], "report", "r1", "view", attrs)
        assert not await service.evaluate_access(
            users["user_c1"], "report", "r1", "view", {"department": "finance", "company_id": C1}
        )

    async def test_563_allow_rule_never_crosses_companies(self, service, users):
        rule = PermissionRule(name="open journals", resource_type="journal", action="read", effect="allow")
        await service.create_rule(rule, "super")
        assert await service.evaluate_access(users["user2_c1"], "journal", "journal_user_c1", "read")
        assert not await service.evaluate_access(users["user_c1"], "journal", "journal_user_c2", "read")

    async def test_564_no_rules_falls_back(self, service, users):
        assert await service.evaluate_access(users["user_c1"], "journal", "journal_user_c1", "read")
        assert not await service.evaluate_access(users["user_c1"], "journal", "journal_user_c2", "read")

    async def test_565_inactive_rules_ignored(self, service, users):
        rule = PermissionRule(
            name="disabled", resource_type="journal", action="read", effect="deny", is_active=False
        )
        await service.create_rule(rule, "super")
        assert await service.evaluate_access(users["user_c1"], "journal", "journal_user_c1", "read")

    async def test_566_access_decisions_audited(self, service, users):
        await service.evaluate_access(users["user_c1"], "company", C1, "view")
        entry = (await service.get_permission_audit_log("user_c1"))[-1]
        assert entry.action == "resource.access"
        assert entry.result is True
        assert entry.context["rule_decision"] == "not_applicable"
