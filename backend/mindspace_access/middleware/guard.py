"""Permission guard: turns access decisions into typed errors.

Every method returns the authorised principal or raises an
:class:`AccessError` subclass carrying a fixed code.  There is no
fail-open path: a missing principal is an authentication failure, and
anything the underlying check cannot confirm is a denial.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable

from mindspace_access import policy
from mindspace_access.errors import AuthenticationError, AuthorizationError, ErrorCode
from mindspace_access.rbac import Permission, Role, parse_role
from mindspace_access.schemas import UserRecord
from mindspace_access.services.permission_service import PermissionService

logger = logging.getLogger(__name__)


def _roles(roles: Iterable[Role | str]) -> set[Role]:
    parsed = set()
    for role in roles:
        try:
            parsed.add(parse_role(role))
        except ValueError:
            # An unknown role can never be held
            continue
    return parsed


class PermissionGuard:
    def __init__(self, service: PermissionService) -> None:
        self.service = service

    @staticmethod
    def _principal(user: UserRecord | None) -> UserRecord:
        if user is None:
            raise AuthenticationError()
        return user

    @staticmethod
    def _deny(user: UserRecord, code: ErrorCode, detail: str) -> AuthorizationError:
        logger.info("Access denied for %s (%s): %s", user.id, code.value, detail)
        return AuthorizationError(code)

    # ---- Permissions ----

    async def require_permission(self, user: UserRecord | None, permission: Permission) -> UserRecord:
        user = self._principal(user)
        if not await self.service.has_permission(user, permission):
            raise self._deny(user, ErrorCode.INSUFFICIENT_PERMISSIONS, f"missing {permission}")
        return user

    async def require_any_permission(
        self, user: UserRecord | None, permissions: list[Permission]
    ) -> UserRecord:
        user = self._principal(user)
        if not await self.service.has_any_permission(user, permissions):
            raise self._deny(user, ErrorCode.INSUFFICIENT_PERMISSIONS, "missing any of required")
        return user

    async def require_all_permissions(
        self, user: UserRecord | None, permissions: list[Permission]
    ) -> UserRecord:
        user = self._principal(user)
        if not await self.service.has_all_permissions(user, permissions):
            raise self._deny(user, ErrorCode.INSUFFICIENT_PERMISSIONS, "missing some of required")
        return user

    # ---- Roles ----

    async def require_role(self, user: UserRecord | None, role: Role | str) -> UserRecord:
        """Exact role match; rank is not considered."""
        return await self.require_any_role(user, [role])

    async def require_any_role(self, user: UserRecord | None, roles: Iterable[Role | str]) -> UserRecord:
        user = self._principal(user)
        if user.role not in _roles(roles):
            raise self._deny(user, ErrorCode.ROLE_REQUIRED, f"role {user.role.value}")
        return user

    # ---- Account state ----

    async def require_active_user(self, user: UserRecord | None) -> UserRecord:
        user = self._principal(user)
        if not user.is_active:
            raise AuthenticationError(ErrorCode.INACTIVE_USER)
        return user

    async def require_verified_email(self, user: UserRecord | None) -> UserRecord:
        user = self._principal(user)
        if not user.email_verified:
            raise self._deny(user, ErrorCode.EMAIL_VERIFICATION_REQUIRED, "email not verified")
        return user

    async def require_active_user_with_permission(
        self, user: UserRecord | None, permission: Permission
    ) -> UserRecord:
        user = await self.require_active_user(user)
        return await self.require_permission(user, permission)

    # ---- Company / ownership ----

    async def require_company_access(self, user: UserRecord | None, company_id: str) -> UserRecord:
        user = self._principal(user)
        if not policy.can_access_company(user, company_id):
            raise self._deny(user, ErrorCode.COMPANY_ACCESS_DENIED, f"company {company_id}")
        return user

    async def require_same_company_access(
        self, user: UserRecord | None, target: UserRecord
    ) -> UserRecord:
        user = self._principal(user)
        if user.role == Role.SUPER_ADMIN:
            return user
        if user.company_id is not None and user.company_id == target.company_id:
            return user
        raise self._deny(user, ErrorCode.COMPANY_ACCESS_DENIED, f"user {target.id}")

    async def require_owner_or_admin(
        self,
        user: UserRecord | None,
        resource_owner_id: str,
        resource_company_id: str | None = None,
    ) -> UserRecord:
        """Owners and super admins pass.  A company admin passes only for a
        resource of their own company and only while holding
        ``view_company_data``.
        """
        user = self._principal(user)
        if user.id == resource_owner_id or user.role == Role.SUPER_ADMIN:
            return user
        if (
            user.role == Role.COMPANY_ADMIN
            and user.company_id is not None
            and user.company_id == resource_company_id
            and policy.has_permission(user, Permission.VIEW_COMPANY_DATA)
        ):
            return user
        raise self._deny(user, ErrorCode.OWNERSHIP_REQUIRED, f"owner {resource_owner_id}")

    # ---- Service-backed checks ----

    async def require_user_management(self, manager: UserRecord | None, target_user_id: str) -> UserRecord:
        manager = self._principal(manager)
        if not await self.service.can_manage_user(manager, target_user_id):
            raise self._deny(manager, ErrorCode.INSUFFICIENT_PERMISSIONS, f"manage {target_user_id}")
        return manager

    async def require_user_data_access(self, viewer: UserRecord | None, target_user_id: str) -> UserRecord:
        viewer = self._principal(viewer)
        if not await self.service.can_view_user_data(viewer, target_user_id):
            raise self._deny(viewer, ErrorCode.INSUFFICIENT_PERMISSIONS, f"view {target_user_id}")
        return viewer

    async def require_resource_access(
        self, user: UserRecord | None, resource_type: str, resource_id: str, action: str
    ) -> UserRecord:
        user = self._principal(user)
        if not await self.service.can_access_resource(user, resource_type, resource_id, action):
            raise self._deny(
                user, ErrorCode.RESOURCE_ACCESS_DENIED, f"{action} {resource_type}/{resource_id}"
            )
        return user
