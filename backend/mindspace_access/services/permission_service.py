"""Permission service — resource checks, role/permission mutation, bulk
operations, templates, ABAC rules and the audit query.

Every mutation re-loads the acting user and re-runs the pure checks in
:mod:`mindspace_access.policy` before touching the store; a denied request
raises :class:`AuthorizationError` before any write.  The audit entry is
written after the mutation and its failure never undoes it (see
``PermissionAuditor``).

Bulk operations are best-effort: users are processed one after another,
each with its own authorisation, write and audit entry.  A user that is
denied or missing is reported in ``BulkOperationResult.failed`` and the
batch continues.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any

from mindspace_access import policy
from mindspace_access.errors import (
    AccessError,
    AuthenticationError,
    AuthorizationError,
    ErrorCode,
    InvalidRequestError,
    NotFoundError,
)
from mindspace_access.rbac import (
    Permission,
    Role,
    get_role_permissions,
    is_company_role,
    parse_role,
    validate_permissions,
)
from mindspace_access.schemas import (
    AuditStatus,
    BulkOperationResult,
    InheritedPermission,
    MutationResult,
    PermissionAuditEntry,
    PermissionContext,
    PermissionRule,
    PermissionTemplate,
    ResourceRef,
    RuleDecision,
    UserRecord,
)
from mindspace_access.services.audit_service import PermissionAuditor
from mindspace_access.services.store import UNCHANGED, PermissionStore, Unchanged

logger = logging.getLogger(__name__)

# Resource types whose access is decided by ownership of the row
OWNED_RESOURCE_TYPES = ("journal", "mood")

_USER_ADMIN_PERMISSIONS = (Permission.MANAGE_COMPANY_USERS, Permission.MANAGE_PLATFORM)


def _parse_permissions(values: Iterable[Permission | str]) -> frozenset[Permission]:
    valid, invalid = validate_permissions([getattr(v, "value", v) for v in values])
    if invalid:
        raise InvalidRequestError(message=f"Unknown permissions: {', '.join(sorted(invalid))}")
    if not valid:
        raise InvalidRequestError(message="At least one permission is required")
    return frozenset(valid)


def _sorted_values(permissions: Iterable[Permission]) -> list[str]:
    return sorted(p.value for p in permissions)


class PermissionService:
    def __init__(self, store: PermissionStore, auditor: PermissionAuditor | None = None) -> None:
        self.store = store
        self.auditor = auditor or PermissionAuditor(store)

    # ------------------------------------------------------------------
    # Audit helpers
    # ------------------------------------------------------------------

    async def _audit(
        self,
        user_id: str,
        action: str,
        result: bool,
        *,
        actor_id: str | None = None,
        permission: Permission | str | None = None,
        context: dict[str, Any] | None = None,
    ) -> AuditStatus:
        entry = PermissionAuditEntry(
            user_id=user_id,
            actor_id=actor_id,
            action=action,
            permission=getattr(permission, "value", permission),
            result=result,
            context=context or {},
        )
        return await self.auditor.record(entry)

    async def log_permission_check(
        self,
        user_id: str,
        permission: Permission | str | None,
        result: bool,
        context: dict[str, Any] | None = None,
    ) -> AuditStatus:
        return await self._audit(user_id, "permission.check", result, permission=permission, context=context)

    # ------------------------------------------------------------------
    # Permission checks
    # ------------------------------------------------------------------

    async def has_permission(self, user: UserRecord, permission: Permission) -> bool:
        result = policy.has_permission(user, permission)
        await self.log_permission_check(
            user.id,
            permission,
            result,
            {"check_type": "basic", "user_role": user.role.value, "user_company": user.company_id},
        )
        return result

    async def has_any_permission(self, user: UserRecord, permissions: list[Permission]) -> bool:
        result = policy.has_any_permission(user, permissions)
        await self.log_permission_check(
            user.id,
            permissions[0] if permissions else None,
            result,
            {"check_type": "any", "permissions": [getattr(p, "value", p) for p in permissions]},
        )
        return result

    async def has_all_permissions(self, user: UserRecord, permissions: list[Permission]) -> bool:
        result = policy.has_all_permissions(user, permissions)
        await self.log_permission_check(
            user.id,
            permissions[0] if permissions else None,
            result,
            {"check_type": "all", "permissions": [getattr(p, "value", p) for p in permissions]},
        )
        return result

    # ------------------------------------------------------------------
    # Resource-based checks
    # ------------------------------------------------------------------

    async def can_access_resource(
        self, user: UserRecord, resource_type: str, resource_id: str, action: str
    ) -> bool:
        """Dispatch on *resource_type*; anything unrecognised is denied.

        Missing targets raise :class:`NotFoundError`.
        """
        if resource_type == "company":
            return policy.can_access_company(user, resource_id)

        if resource_type == "user":
            target = await self.store.get_user_by_id(resource_id)
            if action == "view":
                return policy.can_view_user_data(user, target)
            if action == "manage":
                return policy.can_manage_user(user, target)
            return False

        if resource_type in OWNED_RESOURCE_TYPES:
            owner_id = await self.store.get_resource_owner(resource_type, resource_id)
            if owner_id == user.id:
                return True
            if user.role == Role.SUPER_ADMIN:
                return True
            if user.role == Role.COMPANY_ADMIN and user.company_id is not None:
                owner = await self.store.get_user_by_id(owner_id)
                return owner.company_id == user.company_id
            return False

        return False

    async def _resource_company(
        self, resource_type: str, resource_id: str, attributes: dict[str, Any]
    ) -> str | None:
        if resource_type == "company":
            return resource_id
        if resource_type == "user":
            return (await self.store.get_user_by_id(resource_id)).company_id
        if resource_type in OWNED_RESOURCE_TYPES:
            owner_id = await self.store.get_resource_owner(resource_type, resource_id)
            return (await self.store.get_user_by_id(owner_id)).company_id
        return attributes.get("company_id")

    async def evaluate_access(
        self,
        user: UserRecord,
        resource_type: str,
        resource_id: str,
        action: str,
        attributes: dict[str, Any] | None = None,
    ) -> bool:
        """Stored rules first, role/ownership checks as the fallback.

        A matching allow rule never crosses the tenant boundary: a resource
        that belongs to a company must belong to one the user can access.
        """
        attributes = attributes or {}
        rules = await self.store.list_rules(resource_type, action, active_only=True)
        context = PermissionContext(
            user=user,
            action=action,
            resource=ResourceRef(id=resource_id, type=resource_type, attributes=attributes),
            attributes=attributes,
        )
        decision = policy.evaluate_rules(rules, context)

        if decision is RuleDecision.DENY:
            result = False
        elif decision is RuleDecision.ALLOW:
            company_id = await self._resource_company(resource_type, resource_id, attributes)
            result = company_id is None or policy.can_access_company(user, company_id)
        else:
            result = await self.can_access_resource(user, resource_type, resource_id, action)

        await self._audit(
            user.id,
            "resource.access",
            result,
            context={
                "resource_type": resource_type,
                "resource_id": resource_id,
                "action": action,
                "rule_decision": decision.value,
            },
        )
        return result

    async def evaluate_rule(self, rule: PermissionRule, context: PermissionContext) -> RuleDecision:
        return policy.evaluate_rule(rule, context)

    async def can_manage_user(self, manager: UserRecord, target_user_id: str) -> bool:
        target = await self.store.get_user_by_id(target_user_id)
        return policy.can_manage_user(manager, target)

    async def can_view_user_data(self, viewer: UserRecord, target_user_id: str) -> bool:
        target = await self.store.get_user_by_id(target_user_id)
        return policy.can_view_user_data(viewer, target)

    async def can_access_company(self, user: UserRecord, company_id: str) -> bool:
        return policy.can_access_company(user, company_id)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    async def get_user_role(self, user_id: str) -> Role:
        return (await self.store.get_user_by_id(user_id)).role

    def get_role_permissions(self, role: Role | str) -> frozenset[Permission]:
        return get_role_permissions(role)

    async def get_effective_permissions(self, user_id: str) -> frozenset[Permission]:
        return policy.get_effective_permissions(await self.store.get_user_by_id(user_id))

    async def get_inherited_permissions(self, user_id: str) -> list[InheritedPermission]:
        user = await self.store.get_user_by_id(user_id)
        inherited = [
            InheritedPermission(
                permission=permission,
                source="role",
                source_id=user.role.value,
                source_name=user.role.value.replace("_", " ").lower(),
            )
            for permission in sorted(get_role_permissions(user.role), key=lambda p: p.value)
        ]
        inherited.extend(
            InheritedPermission(
                permission=permission,
                source="direct",
                source_id=user.id,
                source_name="Direct Assignment",
            )
            for permission in sorted(user.permissions, key=lambda p: p.value)
        )
        return inherited

    # ------------------------------------------------------------------
    # Authorisation of mutations
    # ------------------------------------------------------------------

    async def _load_actor(self, actor_id: str) -> UserRecord:
        try:
            actor = await self.store.get_user_by_id(actor_id)
        except NotFoundError:
            raise AuthenticationError() from None
        if not actor.is_active:
            raise AuthenticationError(ErrorCode.INACTIVE_USER)
        return actor

    @staticmethod
    def _deny(actor: UserRecord, action: str, target_id: str | None = None) -> AuthorizationError:
        logger.warning("Denied %s by %s (role %s) on %s", action, actor.id, actor.role.value, target_id)
        return AuthorizationError(ErrorCode.INSUFFICIENT_PERMISSIONS)

    def _require_platform_admin(self, actor: UserRecord, action: str) -> None:
        if not policy.has_permission(actor, Permission.MANAGE_PLATFORM):
            raise self._deny(actor, action)

    def _authorize_role_change(
        self, actor: UserRecord, target: UserRecord, new_role: Role, company_id: str | None, action: str
    ) -> None:
        # Nobody changes their own role
        if actor.id == target.id:
            raise self._deny(actor, action, target.id)
        if not policy.can_manage_user(actor, target):
            raise self._deny(actor, action, target.id)
        if not policy.can_assign_role(actor, new_role, company_id):
            raise self._deny(actor, action, target.id)
        if is_company_role(new_role) and company_id is None:
            raise InvalidRequestError(message="Company ID is required for company roles")

    def _authorize_permission_change(
        self, actor: UserRecord, target: UserRecord, permissions: frozenset[Permission], action: str, grant: bool
    ) -> None:
        if not policy.has_any_permission(actor, _USER_ADMIN_PERMISSIONS):
            raise self._deny(actor, action, target.id)
        if not policy.can_manage_user(actor, target):
            raise self._deny(actor, action, target.id)
        # Nobody hands out a capability they do not hold themselves
        if grant and not policy.has_all_permissions(actor, permissions):
            raise self._deny(actor, action, target.id)

    # ------------------------------------------------------------------
    # Role management
    # ------------------------------------------------------------------

    async def _apply_role_change(
        self,
        actor: UserRecord,
        user_id: str,
        new_role: Role,
        company_id: str | None | Unchanged,
        action: str,
    ) -> MutationResult:
        target = await self.store.get_user_by_id(user_id)
        if new_role in (Role.SUPER_ADMIN, Role.INDIVIDUAL_USER):
            new_company = None
        elif company_id is UNCHANGED:
            new_company = target.company_id
        else:
            new_company = company_id

        self._authorize_role_change(actor, target, new_role, new_company, action)

        # A role change resets direct grants to the new role's defaults
        updated = await self.store.update_user(
            user_id, role=new_role, company_id=new_company, permissions=frozenset()
        )
        status = await self._audit(
            user_id,
            action,
            True,
            actor_id=actor.id,
            context={
                "old_role": target.role.value,
                "new_role": new_role.value,
                "old_company_id": target.company_id,
                "new_company_id": new_company,
                "cleared_permissions": _sorted_values(target.permissions),
            },
        )
        return MutationResult(user=updated, audit_status=status)

    async def update_user_role(
        self,
        user_id: str,
        new_role: Role | str,
        updated_by: str,
        company_id: str | None | Unchanged = UNCHANGED,
    ) -> MutationResult:
        """Change *user_id*'s role.  Company roles keep the target's current
        company unless *company_id* is given; SUPER_ADMIN and INDIVIDUAL_USER
        detach the user from any company.
        """
        try:
            role = parse_role(new_role)
        except ValueError as exc:
            raise InvalidRequestError(message=str(exc)) from None
        actor = await self._load_actor(updated_by)
        return await self._apply_role_change(actor, user_id, role, company_id, "role.update")

    def get_assignable_roles(self, actor: UserRecord) -> list[Role]:
        return [
            role
            for role in Role
            if policy.can_assign_role(actor, role, actor.company_id)
        ]

    # ------------------------------------------------------------------
    # Permission assignment
    # ------------------------------------------------------------------

    async def _apply_grant(
        self,
        actor: UserRecord,
        user_id: str,
        permissions: frozenset[Permission],
        action: str,
        extra: dict[str, Any] | None = None,
    ) -> MutationResult:
        target = await self.store.get_user_by_id(user_id)
        self._authorize_permission_change(actor, target, permissions, action, grant=True)

        updated = await self.store.update_user(user_id, permissions=target.permissions | permissions)
        status = await self._audit(
            user_id,
            action,
            True,
            actor_id=actor.id,
            permission=min(permissions, key=lambda p: p.value),
            context={
                "permissions": _sorted_values(permissions),
                "added": _sorted_values(permissions - target.permissions),
                **(extra or {}),
            },
        )
        return MutationResult(user=updated, audit_status=status)

    async def assign_permissions(
        self, user_id: str, permissions: Iterable[Permission | str], assigned_by: str
    ) -> MutationResult:
        """Add explicit grants.  Set semantics: re-granting is a no-op on the record."""
        parsed = _parse_permissions(permissions)
        actor = await self._load_actor(assigned_by)
        return await self._apply_grant(actor, user_id, parsed, "permission.assign")

    async def revoke_permissions(
        self, user_id: str, permissions: Iterable[Permission | str], revoked_by: str
    ) -> MutationResult:
        """Remove explicit grants.  Role defaults are unaffected."""
        parsed = _parse_permissions(permissions)
        actor = await self._load_actor(revoked_by)
        target = await self.store.get_user_by_id(user_id)
        self._authorize_permission_change(actor, target, parsed, "permission.revoke", grant=False)

        updated = await self.store.update_user(user_id, permissions=target.permissions - parsed)
        status = await self._audit(
            user_id,
            "permission.revoke",
            True,
            actor_id=actor.id,
            permission=min(parsed, key=lambda p: p.value),
            context={
                "permissions": _sorted_values(parsed),
                "removed": _sorted_values(parsed & target.permissions),
            },
        )
        return MutationResult(user=updated, audit_status=status)

    # ------------------------------------------------------------------
    # Bulk operations (best-effort, sequential)
    # ------------------------------------------------------------------

    async def _run_bulk(
        self,
        user_ids: Iterable[str],
        action: str,
        apply: Callable[[str], Awaitable[MutationResult]],
    ) -> BulkOperationResult:
        outcome = BulkOperationResult()
        for user_id in dict.fromkeys(user_ids):
            try:
                result = await apply(user_id)
            except AccessError as exc:
                logger.warning("%s skipped user %s: %s", action, user_id, exc.code.value)
                outcome.failed[user_id] = exc.code.value
                continue
            outcome.succeeded.append(user_id)
            if result.audit_status is AuditStatus.DEGRADED:
                outcome.audit_degraded.append(user_id)
        return outcome

    async def bulk_assign_role(
        self, user_ids: Iterable[str], role: Role | str, assigned_by: str
    ) -> BulkOperationResult:
        try:
            new_role = parse_role(role)
        except ValueError as exc:
            raise InvalidRequestError(message=str(exc)) from None
        actor = await self._load_actor(assigned_by)
        if not policy.can_assign_role(actor, new_role, actor.company_id):
            raise self._deny(actor, "role.bulk_assign")

        return await self._run_bulk(
            user_ids,
            "role.bulk_assign",
            lambda user_id: self._apply_role_change(actor, user_id, new_role, UNCHANGED, "role.bulk_assign"),
        )

    async def bulk_assign_permissions(
        self, user_ids: Iterable[str], permissions: Iterable[Permission | str], assigned_by: str
    ) -> BulkOperationResult:
        parsed = _parse_permissions(permissions)
        actor = await self._load_actor(assigned_by)
        if not policy.has_any_permission(actor, _USER_ADMIN_PERMISSIONS):
            raise self._deny(actor, "permission.bulk_assign")

        return await self._run_bulk(
            user_ids,
            "permission.bulk_assign",
            lambda user_id: self._apply_grant(actor, user_id, parsed, "permission.bulk_assign"),
        )

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def create_permission_template(
        self,
        name: str,
        permissions: Iterable[Permission | str],
        created_by: str,
        description: str | None = None,
    ) -> PermissionTemplate:
        parsed = _parse_permissions(permissions)
        actor = await self._load_actor(created_by)
        self._require_platform_admin(actor, "template.create")

        template = await self.store.create_template(
            PermissionTemplate(
                name=name,
                description=description,
                permissions=sorted(parsed, key=lambda p: p.value),
                created_by=actor.id,
            )
        )
        await self._audit(
            actor.id,
            "template.create",
            True,
            actor_id=actor.id,
            context={"template_id": template.id, "name": name, "permissions": _sorted_values(parsed)},
        )
        return template

    async def apply_permission_template(
        self, user_id: str, template_id: str, applied_by: str
    ) -> MutationResult:
        """Grant the template's permissions through the regular assignment path."""
        actor = await self._load_actor(applied_by)
        template = await self.store.get_template(template_id)
        return await self._apply_grant(
            actor,
            user_id,
            frozenset(template.permissions),
            "template.apply",
            {"template_id": template.id, "template_name": template.name},
        )

    async def list_permission_templates(self) -> list[PermissionTemplate]:
        return await self.store.list_templates()

    # ------------------------------------------------------------------
    # ABAC rules
    # ------------------------------------------------------------------

    async def create_rule(self, rule: PermissionRule, created_by: str) -> str:
        actor = await self._load_actor(created_by)
        self._require_platform_admin(actor, "rule.create")

        created = await self.store.create_rule(rule.model_copy(update={"created_by": actor.id}))
        await self._audit(
            actor.id,
            "rule.create",
            True,
            actor_id=actor.id,
            context={"rule_id": created.id, "name": created.name, "effect": created.effect},
        )
        return created.id

    async def update_rule(self, rule_id: str, rule: PermissionRule, updated_by: str) -> PermissionRule:
        actor = await self._load_actor(updated_by)
        self._require_platform_admin(actor, "rule.update")

        updated = await self.store.update_rule(rule_id, rule)
        await self._audit(
            actor.id,
            "rule.update",
            True,
            actor_id=actor.id,
            context={"rule_id": rule_id, "name": updated.name, "effect": updated.effect},
        )
        return updated

    async def delete_rule(self, rule_id: str, deleted_by: str) -> None:
        actor = await self._load_actor(deleted_by)
        self._require_platform_admin(actor, "rule.delete")

        await self.store.delete_rule(rule_id)
        await self._audit(actor.id, "rule.delete", True, actor_id=actor.id, context={"rule_id": rule_id})

    async def list_rules(
        self, resource_type: str | None = None, action: str | None = None
    ) -> list[PermissionRule]:
        return await self.store.list_rules(resource_type, action)

    # ------------------------------------------------------------------
    # Audit query
    # ------------------------------------------------------------------

    async def get_permission_audit_log(
        self,
        user_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> list[PermissionAuditEntry]:
        """Entries in append order; sort client-side for strict chronology."""
        return await self.auditor.query(user_id=user_id, start=start_date, end=end_date)
