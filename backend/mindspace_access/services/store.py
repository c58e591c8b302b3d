"""Persistence collaborator for the permission service.

``PermissionStore`` is the contract the service depends on; it is
satisfied by :class:`SqlAlchemyPermissionStore`.  Every method runs in its
own session, so a single user update is one transaction.  Concurrent
read-modify-write of the same user is not serialised here.
"""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Final, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mindspace_access.errors import NotFoundError
from mindspace_access.models import (
    AccessRule,
    AccessTemplate,
    Journal,
    MoodEntry,
    PermissionAuditLog,
    User,
)
from mindspace_access.rbac import Permission, Role
from mindspace_access.schemas import (
    PermissionAuditEntry,
    PermissionRule,
    PermissionTemplate,
    UserRecord,
)

class Unchanged(enum.Enum):
    """Sentinel for "leave this column as it is"."""

    UNCHANGED = "unchanged"


UNCHANGED: Final = Unchanged.UNCHANGED

# Resource types whose rows carry an owning ``user_id``
OWNED_RESOURCE_MODELS: dict[str, type[Journal] | type[MoodEntry]] = {
    "journal": Journal,
    "mood": MoodEntry,
}


class PermissionStore(Protocol):
    async def get_user_by_id(self, user_id: str) -> UserRecord: ...

    async def update_user(
        self,
        user_id: str,
        *,
        role: Role | None = None,
        company_id: str | None | Unchanged = UNCHANGED,
        permissions: frozenset[Permission] | None = None,
    ) -> UserRecord: ...

    async def get_resource_owner(self, resource_type: str, resource_id: str) -> str: ...

    async def append_audit_entry(self, entry: PermissionAuditEntry) -> PermissionAuditEntry: ...

    async def list_audit_entries(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[PermissionAuditEntry]: ...

    async def create_rule(self, rule: PermissionRule) -> PermissionRule: ...

    async def update_rule(self, rule_id: str, rule: PermissionRule) -> PermissionRule: ...

    async def delete_rule(self, rule_id: str) -> None: ...

    async def list_rules(
        self,
        resource_type: str | None = None,
        action: str | None = None,
        active_only: bool = False,
    ) -> list[PermissionRule]: ...

    async def create_template(self, template: PermissionTemplate) -> PermissionTemplate: ...

    async def get_template(self, template_id: str) -> PermissionTemplate: ...

    async def list_templates(self) -> list[PermissionTemplate]: ...


# ---------------------------------------------------------------------------
# Row → record conversion
# ---------------------------------------------------------------------------


def _user_record(row: User) -> UserRecord:
    return UserRecord(
        id=row.id,
        email=row.email,
        name=row.name,
        role=row.role,
        company_id=row.company_id,
        permissions=frozenset(row.permissions or []),
        is_active=row.is_active,
        email_verified=row.email_verified,
    )


def _rule_record(row: AccessRule) -> PermissionRule:
    return PermissionRule(
        id=row.id,
        name=row.name,
        description=row.description,
        resource_type=row.resource_type,
        action=row.action,
        conditions=row.conditions or [],
        effect=row.effect,
        priority=row.priority,
        is_active=row.is_active,
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _template_record(row: AccessTemplate) -> PermissionTemplate:
    return PermissionTemplate(
        id=row.id,
        name=row.name,
        description=row.description,
        permissions=row.permissions or [],
        created_by=row.created_by,
        created_at=row.created_at,
    )


def _audit_record(row: PermissionAuditLog) -> PermissionAuditEntry:
    return PermissionAuditEntry(
        id=row.id,
        user_id=row.user_id,
        actor_id=row.actor_id,
        action=row.action,
        permission=row.permission,
        result=row.result,
        timestamp=row.timestamp,
        context=row.context or {},
    )


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _rule_columns(rule: PermissionRule) -> dict[str, Any]:
    return {
        "name": rule.name,
        "description": rule.description,
        "resource_type": rule.resource_type,
        "action": rule.action,
        "conditions": [c.model_dump(mode="json") for c in rule.conditions],
        "effect": rule.effect,
        "priority": rule.priority,
        "is_active": rule.is_active,
    }


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


class SqlAlchemyPermissionStore:
    """``PermissionStore`` backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ---- Users ----

    async def _load_user(self, session: AsyncSession, user_id: str) -> User:
        row = await session.get(User, user_id)
        if row is None:
            raise NotFoundError(message="User not found")
        return row

    async def get_user_by_id(self, user_id: str) -> UserRecord:
        async with self._session_factory() as session:
            return _user_record(await self._load_user(session, user_id))

    async def update_user(
        self,
        user_id: str,
        *,
        role: Role | None = None,
        company_id: str | None | Unchanged = UNCHANGED,
        permissions: frozenset[Permission] | None = None,
    ) -> UserRecord:
        async with self._session_factory() as session:
            row = await self._load_user(session, user_id)
            if role is not None:
                row.role = role.value
            if company_id is not UNCHANGED:
                row.company_id = company_id
            if permissions is not None:
                row.permissions = sorted(p.value for p in permissions)
            await session.commit()
            await session.refresh(row)
            return _user_record(row)

    # ---- Owned content ----

    async def get_resource_owner(self, resource_type: str, resource_id: str) -> str:
        model = OWNED_RESOURCE_MODELS.get(resource_type)
        if model is None:
            raise NotFoundError(message=f"Unknown resource type '{resource_type}'")
        async with self._session_factory() as session:
            result = await session.execute(select(model.user_id).where(model.id == resource_id))
            owner_id = result.scalar_one_or_none()
        if owner_id is None:
            raise NotFoundError(message=f"{resource_type.capitalize()} not found")
        return owner_id

    # ---- Audit (append-only) ----

    async def append_audit_entry(self, entry: PermissionAuditEntry) -> PermissionAuditEntry:
        async with self._session_factory() as session:
            row = PermissionAuditLog(
                user_id=entry.user_id,
                actor_id=entry.actor_id,
                action=entry.action,
                permission=entry.permission,
                result=entry.result,
                timestamp=_utc(entry.timestamp),
                context=entry.context or None,
            )
            session.add(row)
            await session.commit()
            return entry.model_copy(update={"id": row.id})

    async def list_audit_entries(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[PermissionAuditEntry]:
        stmt = select(PermissionAuditLog)
        if user_id:
            stmt = stmt.where(PermissionAuditLog.user_id == user_id)
        if start:
            stmt = stmt.where(PermissionAuditLog.timestamp >= _utc(start))
        if end:
            stmt = stmt.where(PermissionAuditLog.timestamp <= _utc(end))
        # Append order
        stmt = stmt.order_by(PermissionAuditLog.id)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_audit_record(row) for row in result.scalars().all()]

    # ---- Rules ----

    async def _load_rule(self, session: AsyncSession, rule_id: str) -> AccessRule:
        row = await session.get(AccessRule, rule_id)
        if row is None:
            raise NotFoundError(message="Permission rule not found")
        return row

    async def create_rule(self, rule: PermissionRule) -> PermissionRule:
        async with self._session_factory() as session:
            row = AccessRule(created_by=rule.created_by, **_rule_columns(rule))
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _rule_record(row)

    async def update_rule(self, rule_id: str, rule: PermissionRule) -> PermissionRule:
        async with self._session_factory() as session:
            row = await self._load_rule(session, rule_id)
            for key, value in _rule_columns(rule).items():
                setattr(row, key, value)
            await session.commit()
            await session.refresh(row)
            return _rule_record(row)

    async def delete_rule(self, rule_id: str) -> None:
        async with self._session_factory() as session:
            row = await self._load_rule(session, rule_id)
            await session.delete(row)
            await session.commit()

    async def list_rules(
        self,
        resource_type: str | None = None,
        action: str | None = None,
        active_only: bool = False,
    ) -> list[PermissionRule]:
        stmt = select(AccessRule)
        if resource_type:
            stmt = stmt.where(AccessRule.resource_type.in_([resource_type, "*"]))
        if action:
            stmt = stmt.where(AccessRule.action.in_([action, "*"]))
        if active_only:
            stmt = stmt.where(AccessRule.is_active.is_(True))
        stmt = stmt.order_by(AccessRule.priority.desc(), AccessRule.name)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_rule_record(row) for row in result.scalars().all()]

    # ---- Templates ----

    async def create_template(self, template: PermissionTemplate) -> PermissionTemplate:
        async with self._session_factory() as session:
            row = AccessTemplate(
                name=template.name,
                description=template.description,
                permissions=[p.value for p in template.permissions],
                created_by=template.created_by,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _template_record(row)

    async def get_template(self, template_id: str) -> PermissionTemplate:
        async with self._session_factory() as session:
            row = await session.get(AccessTemplate, template_id)
            if row is None:
                raise NotFoundError(message="Permission template not found")
            return _template_record(row)

    async def list_templates(self) -> list[PermissionTemplate]:
        async with self._session_factory() as session:
            result = await session.execute(select(AccessTemplate).order_by(AccessTemplate.name))
            return [_template_record(row) for row in result.scalars().all()]
