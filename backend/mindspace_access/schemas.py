"""Pydantic records exchanged between the policy, the service and the store.

Role and permission values are enum-backed: unknown strings coming from the
store or from a request body are rejected here, at the boundary, and never
reach a decision function.
"""
from __future__ import annotations

import enum
import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from mindspace_access.rbac import Permission, Role


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserRecord(BaseModel):
    """The slice of a user profile the access engine reads and writes."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str = ""
    name: str = ""
    role: Role
    company_id: str | None = None
    permissions: frozenset[Permission] = frozenset()
    is_active: bool = True
    email_verified: bool = False


# ---------------------------------------------------------------------------
# ABAC rules
# ---------------------------------------------------------------------------

ConditionOperator = Literal[
    "equals",
    "not_equals",
    "in",
    "not_in",
    "contains",
    "not_contains",
    "greater",
    "less",
    "regex",
    "exists",
    "not_exists",
]


class PermissionCondition(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any = None
    logical_operator: Literal["AND", "OR"] = "AND"

    @model_validator(mode="after")
    def _check_value(self) -> "PermissionCondition":
        if self.operator in ("in", "not_in") and not isinstance(self.value, (list, tuple, set, frozenset)):
            raise ValueError(f"operator '{self.operator}' requires a list value")
        if self.operator == "regex":
            try:
                re.compile(str(self.value))
            except re.error as exc:
                raise ValueError(f"invalid regex {self.value!r}: {exc}") from exc
        return self


class PermissionRule(BaseModel):
    id: str | None = None
    name: str
    description: str | None = None
    resource_type: str
    action: str
    conditions: list[PermissionCondition] = Field(default_factory=list)
    effect: Literal["allow", "deny"]
    priority: int = 0
    is_active: bool = True
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RuleDecision(str, enum.Enum):
    ALLOW = "allow"
    DENY = "deny"
    NOT_APPLICABLE = "not_applicable"


class ResourceRef(BaseModel):
    id: str | None = None
    type: str
    attributes: dict[str, Any] = Field(default_factory=dict)


class RequestEnvironment(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    ip_address: str | None = None
    user_agent: str | None = None
    location: str | None = None


class PermissionContext(BaseModel):
    """Everything a rule condition may look at, addressed by dotted path
    (``user.role``, ``resource.attributes.department``, ``attributes.shift``).
    """

    user: UserRecord
    action: str
    resource: ResourceRef | None = None
    environment: RequestEnvironment = Field(default_factory=RequestEnvironment)
    attributes: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Derived views, templates, audit
# ---------------------------------------------------------------------------


class InheritedPermission(BaseModel):
    permission: Permission
    source: Literal["role", "direct"]
    source_id: str
    source_name: str


class PermissionTemplate(BaseModel):
    id: str | None = None
    name: str
    description: str | None = None
    permissions: list[Permission]
    created_by: str | None = None
    created_at: datetime | None = None

    @field_validator("permissions")
    @classmethod
    def _dedupe(cls, value: list[Permission]) -> list[Permission]:
        return list(dict.fromkeys(value))


class PermissionAuditEntry(BaseModel):
    id: int | None = None
    user_id: str
    actor_id: str | None = None
    action: str
    permission: str | None = None
    result: bool
    timestamp: datetime = Field(default_factory=utc_now)
    context: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        # SQLite hands back naive datetimes
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class AuditStatus(str, enum.Enum):
    WRITTEN = "written"
    DEGRADED = "degraded"  # write failed; logged, business action kept
    SKIPPED = "skipped"


class MutationResult(BaseModel):
    user: UserRecord
    audit_status: AuditStatus


class BulkOperationResult(BaseModel):
    """Outcome of a best-effort bulk operation.

    ``failed`` maps each skipped user id to the error code that stopped it.
    """

    succeeded: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
    audit_degraded: list[str] = Field(default_factory=list)
