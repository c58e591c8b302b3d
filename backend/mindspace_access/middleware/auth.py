"""Authentication and request-level authorization for the admin API.

Provides:
- JWT creation / validation (``sub`` is the user id)
- ``get_current_user()`` dependency producing the principal
- ``require_permission()`` and ``require_role()`` dependency factories
- ``RoleBasedRateLimiter``: per-role fixed-window budgets

Collaborators (settings, service, guard, limiter) are read from
``request.app.state``; nothing here holds process-wide state.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import FixedWindowRateLimiter

from mindspace_access.config import Settings
from mindspace_access.errors import AuthenticationError, ErrorCode, NotFoundError, RateLimitError
from mindspace_access.rbac import Permission, Role
from mindspace_access.schemas import UserRecord

logger = logging.getLogger(__name__)

GUEST = "GUEST"

# ---------------------------------------------------------------------------
# JWT helpers
# ---------------------------------------------------------------------------


def create_access_token(settings: Settings, user_id: str, extra: dict[str, Any] | None = None) -> str:
    """Create a signed JWT containing *sub* (user id) and *exp*."""
    to_encode = dict(extra or {})
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRY_MINUTES)
    to_encode.update({"sub": str(user_id), "exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(settings: Settings, token: str) -> str:
    """Return the user id carried by *token*.

    Raises ``AuthenticationError`` for bad signatures, expiry or a missing
    subject.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise AuthenticationError() from None
    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError()
    return user_id


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class RoleBasedRateLimiter:
    """Fixed-window request budgets keyed by principal.

    Authenticated callers are counted per user id against their role's
    budget; anonymous callers per client address against the guest budget.
    The instance is owned by the application (``app.state.rate_limiter``).
    """

    def __init__(
        self,
        budgets: dict[str, int],
        window_seconds: int = 60,
        storage: Storage | None = None,
    ) -> None:
        self.window_seconds = window_seconds
        self.storage = storage or MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self.storage)
        self._items: dict[str, RateLimitItem] = {
            role: RateLimitItemPerSecond(amount, window_seconds) for role, amount in budgets.items()
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "RoleBasedRateLimiter":
        return cls(
            budgets={
                Role.SUPER_ADMIN.value: settings.RATE_LIMIT_SUPER_ADMIN,
                Role.COMPANY_ADMIN.value: settings.RATE_LIMIT_COMPANY_ADMIN,
                Role.COMPANY_MANAGER.value: settings.RATE_LIMIT_COMPANY_MANAGER,
                Role.COMPANY_USER.value: settings.RATE_LIMIT_COMPANY_USER,
                Role.INDIVIDUAL_USER.value: settings.RATE_LIMIT_INDIVIDUAL_USER,
                GUEST: settings.RATE_LIMIT_GUEST,
            },
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        )

    def _item_for(self, role: Role | str | None) -> RateLimitItem:
        key = getattr(role, "value", role) or GUEST
        return self._items.get(key, self._items[GUEST])

    def limit_for(self, role: Role | str | None) -> int:
        return self._item_for(role).amount

    def hit(self, key: str, role: Role | str | None) -> int:
        """Count one request for *key*; return the remaining budget.

        Raises ``RateLimitError`` once the budget for the window is spent.
        """
        item = self._item_for(role)
        if not self._strategy.hit(item, key):
            logger.warning("Rate limit exceeded for %s (%d per %ds)", key, item.amount, self.window_seconds)
            raise RateLimitError()
        return self._strategy.get_window_stats(item, key).remaining

    def reset(self) -> None:
        self.storage.reset()


# ---------------------------------------------------------------------------
# Current-user dependency
# ---------------------------------------------------------------------------

bearer_scheme = HTTPBearer(auto_error=False)


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserRecord:
    """Decode the bearer token, load the user through the permission store
    and count the request against the caller's rate budget.

    Raises ``AuthenticationError`` (401) when the token is missing or
    invalid, or the user no longer exists; ``INACTIVE_USER`` when the
    account is deactivated.
    """
    state = request.app.state
    limiter: RoleBasedRateLimiter = state.rate_limiter

    if credentials is None or credentials.scheme.lower() != "bearer":
        limiter.hit(_client_key(request), GUEST)
        raise AuthenticationError()

    try:
        user_id = decode_access_token(state.settings, credentials.credentials)
    except AuthenticationError:
        logger.info("Rejected bearer token from %s", _client_key(request))
        limiter.hit(_client_key(request), GUEST)
        raise

    try:
        user = await state.permission_service.store.get_user_by_id(user_id)
    except NotFoundError:
        logger.info("Token subject %s no longer exists", user_id)
        raise AuthenticationError() from None

    if not user.is_active:
        raise AuthenticationError(ErrorCode.INACTIVE_USER)

    limiter.hit(f"user:{user.id}", user.role)
    request.state.user = user
    return user


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def require_permission(*permissions: Permission):
    """Return a FastAPI dependency that ensures the authenticated user has
    ALL of the specified permissions (role defaults + direct grants).

    Usage::

        @router.get("/audit-log")
        async def audit_log(user: UserRecord = Depends(require_permission(Permission.MANAGE_PLATFORM))):
            ...
    """
    required = list(permissions)

    async def _check_permission(
        request: Request,
        current_user: UserRecord = Depends(get_current_user),
    ) -> UserRecord:
        return await request.app.state.permission_guard.require_all_permissions(current_user, required)

    return _check_permission


def require_role(*roles: Role | str):
    """Return a FastAPI dependency that ensures the authenticated user holds
    one of the specified *roles*.
    """
    allowed = list(roles)

    async def _check_role(
        request: Request,
        current_user: UserRecord = Depends(get_current_user),
    ) -> UserRecord:
        return await request.app.state.permission_guard.require_any_role(current_user, allowed)

    return _check_role
