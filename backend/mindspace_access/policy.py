"""Pure access decisions.

Nothing in this module performs I/O or raises on well-formed input: every
function takes in-memory :class:`UserRecord` data and returns a boolean or a
derived value.  Malformed users cannot be constructed (see ``schemas``).

``can_access_company`` is the only tenant-isolation boundary; every other
company check below is expressed in terms of it or of an equal ``company_id``.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Any, Literal

from mindspace_access.rbac import (
    Permission,
    Role,
    get_role_permissions,
    is_company_role,
    role_rank,
)
from mindspace_access.schemas import (
    PermissionCondition,
    PermissionContext,
    PermissionRule,
    RuleDecision,
    UserRecord,
)

logger = logging.getLogger(__name__)

_MANAGER_ROLES = frozenset({Role.COMPANY_ADMIN, Role.COMPANY_MANAGER})


# ---------------------------------------------------------------------------
# Permission checks
# ---------------------------------------------------------------------------


def get_effective_permissions(user: UserRecord) -> frozenset[Permission]:
    """Role defaults plus explicit grants."""
    return get_role_permissions(user.role) | user.permissions


def _coerce(permissions: Iterable[Permission | str]) -> list[Permission | None]:
    coerced: list[Permission | None] = []
    for p in permissions:
        try:
            coerced.append(Permission(p))
        except ValueError:
            coerced.append(None)
    return coerced


def has_permission(user: UserRecord, permission: Permission | str) -> bool:
    return has_all_permissions(user, [permission])


def has_any_permission(user: UserRecord, permissions: Iterable[Permission | str]) -> bool:
    effective = get_effective_permissions(user)
    return any(p in effective for p in _coerce(permissions))


def has_all_permissions(user: UserRecord, permissions: Iterable[Permission | str]) -> bool:
    effective = get_effective_permissions(user)
    return all(p in effective for p in _coerce(permissions))


def get_permission_source(
    user: UserRecord, permission: Permission
) -> Literal["direct", "role", "none"]:
    if permission in user.permissions:
        return "direct"
    if permission in get_role_permissions(user.role):
        return "role"
    return "none"


# ---------------------------------------------------------------------------
# Company / user relationships
# ---------------------------------------------------------------------------


def _same_company(a: UserRecord, b: UserRecord) -> bool:
    return a.company_id is not None and a.company_id == b.company_id


def can_access_company(user: UserRecord, company_id: str | None) -> bool:
    if user.role == Role.SUPER_ADMIN:
        return True
    return company_id is not None and user.company_id == company_id


def can_manage_user(manager: UserRecord, target: UserRecord) -> bool:
    """Super admins manage anyone.  Company admins and managers manage only
    strictly lower-ranked users of their own company.
    """
    if manager.role == Role.SUPER_ADMIN:
        return True
    if manager.role not in _MANAGER_ROLES:
        return False
    if not _same_company(manager, target):
        return False
    return role_rank(manager.role) > role_rank(target.role)


def can_view_user_data(viewer: UserRecord, target: UserRecord) -> bool:
    if viewer.id == target.id:
        return True
    if viewer.role == Role.SUPER_ADMIN:
        return True
    return _same_company(viewer, target) and has_permission(viewer, Permission.VIEW_COMPANY_DATA)


def can_assign_role(assigner: UserRecord, new_role: Role, company_id: str | None = None) -> bool:
    """Strict rank check plus company scoping for company roles.

    Nobody can hand out their own rank, so a super admin cannot mint another
    super admin through this path.
    """
    if role_rank(assigner.role) <= role_rank(new_role):
        return False
    if is_company_role(new_role) and assigner.role != Role.SUPER_ADMIN:
        return assigner.company_id is not None and assigner.company_id == company_id
    return True


# ---------------------------------------------------------------------------
# ABAC rule evaluation
# ---------------------------------------------------------------------------

_MISSING = object()


def _field_value(path: str, data: Any) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _as_number(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _evaluate_condition(condition: PermissionCondition, data: dict[str, Any]) -> bool:
    value = _field_value(condition.field, data)
    present = value is not _MISSING and value is not None
    op = condition.operator

    if op == "exists":
        return present
    if op == "not_exists":
        return not present
    if value is _MISSING:
        # Only the existence operators can match an absent field
        return False

    if op == "equals":
        return value == condition.value
    if op == "not_equals":
        return value != condition.value
    if op == "in":
        return value in condition.value
    if op == "not_in":
        return value not in condition.value
    if op in ("contains", "not_contains"):
        if isinstance(value, (list, tuple, set, frozenset)):
            found = condition.value in value
        else:
            found = str(condition.value) in str(value)
        return found if op == "contains" else not found
    if op in ("greater", "less"):
        left, right = _as_number(value), _as_number(condition.value)
        if left is None or right is None:
            return False
        return left > right if op == "greater" else left < right
    if op == "regex":
        try:
            return re.search(str(condition.value), str(value)) is not None
        except re.error:
            logger.warning("Rule condition has invalid regex %r", condition.value)
            return False
    return False


def rule_applies_to(rule: PermissionRule, resource_type: str | None, action: str) -> bool:
    if not rule.is_active:
        return False
    if rule.resource_type not in ("*", resource_type):
        return False
    return rule.action in ("*", action)


def evaluate_rule(rule: PermissionRule, context: PermissionContext) -> RuleDecision:
    """Return the rule's effect when it applies and its conditions match,
    otherwise ``NOT_APPLICABLE``.

    Conditions are folded left to right; each condition's
    ``logical_operator`` joins it to the result so far.  A rule without
    conditions matches every context it is scoped to.
    """
    resource_type = context.resource.type if context.resource else None
    if not rule_applies_to(rule, resource_type, context.action):
        return RuleDecision.NOT_APPLICABLE

    data = context.model_dump(mode="json")
    matched = True
    for index, condition in enumerate(rule.conditions):
        outcome = _evaluate_condition(condition, data)
        if index == 0:
            matched = outcome
        elif condition.logical_operator == "OR":
            matched = matched or outcome
        else:
            matched = matched and outcome

    if not matched:
        return RuleDecision.NOT_APPLICABLE
    return RuleDecision.ALLOW if rule.effect == "allow" else RuleDecision.DENY


def evaluate_rules(rules: Iterable[PermissionRule], context: PermissionContext) -> RuleDecision:
    """Combine rules: the highest-priority matching rule decides, and a deny
    beats an allow of the same priority.
    """
    best: tuple[int, RuleDecision] | None = None
    for rule in rules:
        decision = evaluate_rule(rule, context)
        if decision is RuleDecision.NOT_APPLICABLE:
            continue
        if best is None or rule.priority > best[0]:
            best = (rule.priority, decision)
        elif rule.priority == best[0] and decision is RuleDecision.DENY:
            best = (rule.priority, decision)
    return best[1] if best else RuleDecision.NOT_APPLICABLE
