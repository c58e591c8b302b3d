"""Typed access errors.

Callers discriminate on ``code``; ``message`` is a fixed human-readable
string per code and never carries internal reasoning.
"""
from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode(str, enum.Enum):
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    INACTIVE_USER = "INACTIVE_USER"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    ROLE_REQUIRED = "ROLE_REQUIRED"
    COMPANY_ACCESS_DENIED = "COMPANY_ACCESS_DENIED"
    OWNERSHIP_REQUIRED = "OWNERSHIP_REQUIRED"
    EMAIL_VERIFICATION_REQUIRED = "EMAIL_VERIFICATION_REQUIRED"
    RESOURCE_ACCESS_DENIED = "RESOURCE_ACCESS_DENIED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.AUTHENTICATION_REQUIRED: "Authentication required",
    ErrorCode.INACTIVE_USER: "User account is inactive",
    ErrorCode.INSUFFICIENT_PERMISSIONS: "Insufficient permissions",
    ErrorCode.ROLE_REQUIRED: "Required role missing",
    ErrorCode.COMPANY_ACCESS_DENIED: "Cannot access company resources",
    ErrorCode.OWNERSHIP_REQUIRED: "Must be resource owner or administrator",
    ErrorCode.EMAIL_VERIFICATION_REQUIRED: "Email verification required",
    ErrorCode.RESOURCE_ACCESS_DENIED: "Cannot access this resource",
    ErrorCode.NOT_FOUND: "Resource not found",
    ErrorCode.INVALID_REQUEST: "Invalid request",
    ErrorCode.RATE_LIMIT_EXCEEDED: "Rate limit exceeded",
}


class AccessError(Exception):
    """Base class for every error the guard and the service raise."""

    http_status: int = 400
    default_code: ErrorCode = ErrorCode.INVALID_REQUEST

    def __init__(self, code: ErrorCode | None = None, message: str | None = None) -> None:
        self.code = code or self.default_code
        self.message = message or _MESSAGES[self.code]
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "code": self.code.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.code.value} {self.http_status}>"


class AuthenticationError(AccessError):
    http_status = 401
    default_code = ErrorCode.AUTHENTICATION_REQUIRED


class AuthorizationError(AccessError):
    http_status = 403
    default_code = ErrorCode.INSUFFICIENT_PERMISSIONS


class NotFoundError(AccessError):
    http_status = 404
    default_code = ErrorCode.NOT_FOUND


class InvalidRequestError(AccessError):
    http_status = 422
    default_code = ErrorCode.INVALID_REQUEST


class RateLimitError(AccessError):
    http_status = 429
    default_code = ErrorCode.RATE_LIMIT_EXCEEDED


# ---------------------------------------------------------------------------
# FastAPI mapping
# ---------------------------------------------------------------------------


async def _access_error_handler(request: Request, exc: AccessError) -> JSONResponse:
    if exc.http_status >= 403:
        logger.info("%s %s -> %s", request.method, request.url.path, exc.code.value)
    headers = {"WWW-Authenticate": "Bearer"} if exc.http_status == 401 else None
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AccessError, _access_error_handler)
