"""SQLAlchemy models for ABAC rules, permission templates and the audit trail."""
from __future__ import annotations

import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from mindspace_access.database import Base
from mindspace_access.models.base import TimestampMixin, UUIDPrimaryKeyMixin


class AccessRule(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A dynamically stored ABAC rule, managed by platform administrators."""
    __tablename__ = "permission_rules"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    conditions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    effect: Mapped[str] = mapped_column(String(10), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    created_by: Mapped[str | None] = mapped_column(String(36))

    def __repr__(self) -> str:
        return f"<AccessRule {self.name!r} {self.effect} {self.resource_type}:{self.action}>"


class AccessTemplate(UUIDPrimaryKeyMixin, Base):
    """Named bundle of permissions that can be applied to a user."""
    __tablename__ = "permission_templates"

    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    permissions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_by: Mapped[str | None] = mapped_column(String(36))
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<AccessTemplate {self.name!r}>"


class PermissionAuditLog(Base):
    """Append-only trail of permission decisions and mutations.

    The integer key preserves append order; rows are never updated or
    deleted by the application.
    """
    __tablename__ = "permission_audit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(36))
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    permission: Mapped[str | None] = mapped_column(String(100))
    result: Mapped[bool] = mapped_column(Boolean, nullable=False)
    timestamp: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    context: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    def __repr__(self) -> str:
        return f"<PermissionAuditLog {self.action!r} user={self.user_id} result={self.result}>"
