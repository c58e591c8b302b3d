"""
RBAC Permission Registry — MindSpace

Defines the canonical role-to-permission mapping and the role hierarchy.
Per-user grants are stored on the user record and only ever *add* to the
role defaults.

Roles are totally ordered by privilege:

    SUPER_ADMIN > COMPANY_ADMIN > COMPANY_MANAGER > COMPANY_USER > INDIVIDUAL_USER
"""
from __future__ import annotations

import enum


class Role(str, enum.Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    COMPANY_ADMIN = "COMPANY_ADMIN"
    COMPANY_MANAGER = "COMPANY_MANAGER"
    COMPANY_USER = "COMPANY_USER"
    INDIVIDUAL_USER = "INDIVIDUAL_USER"


class Permission(str, enum.Enum):
    # Platform
    MANAGE_PLATFORM = "manage_platform"
    VIEW_PLATFORM_ANALYTICS = "view_platform_analytics"
    MANAGE_COMPANIES = "manage_companies"
    MANAGE_SUPER_ADMINS = "manage_super_admins"
    # Company
    MANAGE_COMPANY = "manage_company"
    VIEW_COMPANY_ANALYTICS = "view_company_analytics"
    MANAGE_COMPANY_USERS = "manage_company_users"
    MANAGE_DEPARTMENTS = "manage_departments"
    VIEW_COMPANY_DATA = "view_company_data"
    # Individual
    MANAGE_PROFILE = "manage_profile"
    CREATE_JOURNAL = "create_journal"
    VIEW_OWN_DATA = "view_own_data"
    DELETE_ACCOUNT = "delete_account"


ALL_PERMISSIONS: frozenset[Permission] = frozenset(Permission)


# ---------------------------------------------------------------------------
# Role hierarchy (higher number = more privileges)
# ---------------------------------------------------------------------------

ROLE_HIERARCHY: dict[Role, int] = {
    Role.INDIVIDUAL_USER: 1,
    Role.COMPANY_USER: 2,
    Role.COMPANY_MANAGER: 3,
    Role.COMPANY_ADMIN: 4,
    Role.SUPER_ADMIN: 5,
}

# Roles that only make sense attached to a company
COMPANY_ROLES: frozenset[Role] = frozenset({
    Role.COMPANY_ADMIN,
    Role.COMPANY_MANAGER,
    Role.COMPANY_USER,
})


# ---------------------------------------------------------------------------
# Role → Permissions mapping (source of truth)
# ---------------------------------------------------------------------------

_INDIVIDUAL: frozenset[Permission] = frozenset({
    Permission.MANAGE_PROFILE,
    Permission.CREATE_JOURNAL,
    Permission.VIEW_OWN_DATA,
    Permission.DELETE_ACCOUNT,
})

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    # ── Super Admin ──────────────────────────────────────────────────────
    # Everything, including platform management and other super admins.
    Role.SUPER_ADMIN: ALL_PERMISSIONS,

    # ── Company Admin ────────────────────────────────────────────────────
    # Runs one company: settings, users, departments, analytics.
    Role.COMPANY_ADMIN: _INDIVIDUAL | {
        Permission.MANAGE_COMPANY,
        Permission.VIEW_COMPANY_ANALYTICS,
        Permission.MANAGE_COMPANY_USERS,
        Permission.MANAGE_DEPARTMENTS,
        Permission.VIEW_COMPANY_DATA,
    },

    # ── Company Manager ──────────────────────────────────────────────────
    # Departments and analytics, no user administration.
    Role.COMPANY_MANAGER: _INDIVIDUAL | {
        Permission.VIEW_COMPANY_ANALYTICS,
        Permission.MANAGE_DEPARTMENTS,
        Permission.VIEW_COMPANY_DATA,
    },

    # ── Company User ─────────────────────────────────────────────────────
    Role.COMPANY_USER: _INDIVIDUAL | {
        Permission.VIEW_COMPANY_DATA,
    },

    # ── Individual User ──────────────────────────────────────────────────
    # No company; own journal and mood data only.
    Role.INDIVIDUAL_USER: _INDIVIDUAL,
}


VALID_ROLES: list[str] = sorted(r.value for r in Role)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def parse_role(value: str | Role) -> Role:
    """Coerce a role string to :class:`Role`.

    Raises ``ValueError`` for anything outside the catalog.
    """
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        raise ValueError(f"Unknown role {value!r}. Valid roles: {', '.join(VALID_ROLES)}") from None


def get_role_permissions(role: Role | str) -> frozenset[Permission]:
    """Return the default permission set for *role*.

    Every catalog role has a non-empty set; an unknown role is a caller bug
    and raises ``ValueError``.
    """
    return ROLE_PERMISSIONS[parse_role(role)]


def role_rank(role: Role | str) -> int:
    return ROLE_HIERARCHY[parse_role(role)]


def is_higher_role(role: Role | str, other: Role | str) -> bool:
    """True when *role* is strictly more privileged than *other*."""
    return role_rank(role) > role_rank(other)


def is_company_role(role: Role | str) -> bool:
    return parse_role(role) in COMPANY_ROLES


def get_assignable_roles(role: Role | str) -> list[Role]:
    """Roles strictly below *role*, most privileged first."""
    rank = role_rank(role)
    return sorted(
        (r for r in Role if ROLE_HIERARCHY[r] < rank),
        key=lambda r: ROLE_HIERARCHY[r],
        reverse=True,
    )


def validate_permissions(values: list[str]) -> tuple[list[Permission], list[str]]:
    """Split raw permission strings into ``(valid, invalid)``."""
    valid: list[Permission] = []
    invalid: list[str] = []
    for value in values:
        try:
            valid.append(Permission(value))
        except ValueError:
            invalid.append(value)
    return valid, invalid


_DESCRIPTIONS: dict[Permission, str] = {
    Permission.MANAGE_PLATFORM: "Manage platform settings, rules and templates",
    Permission.VIEW_PLATFORM_ANALYTICS: "View platform-wide analytics",
    Permission.MANAGE_COMPANIES: "Create and administer companies",
    Permission.MANAGE_SUPER_ADMINS: "Manage super administrator accounts",
    Permission.MANAGE_COMPANY: "Edit own company settings",
    Permission.VIEW_COMPANY_ANALYTICS: "View company wellness analytics",
    Permission.MANAGE_COMPANY_USERS: "Invite, edit and grant permissions to company users",
    Permission.MANAGE_DEPARTMENTS: "Create and edit departments",
    Permission.VIEW_COMPANY_DATA: "View data of users in the same company",
    Permission.MANAGE_PROFILE: "Edit own profile and preferences",
    Permission.CREATE_JOURNAL: "Write journal and mood entries",
    Permission.VIEW_OWN_DATA: "View own journals, moods and insights",
    Permission.DELETE_ACCOUNT: "Delete own account",
}


def permission_description(permission: Permission | str) -> str:
    """Return a human-readable description for a permission."""
    try:
        return _DESCRIPTIONS[Permission(permission)]
    except ValueError:
        return str(permission)
