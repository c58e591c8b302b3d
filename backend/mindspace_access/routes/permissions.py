"""Permission administration routes --- catalog, user grants, bulk
operations, ABAC rules, templates, audit log.
"""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from mindspace_access.middleware.auth import get_current_user, require_permission
from mindspace_access.middleware.guard import PermissionGuard
from mindspace_access.rbac import (
    ROLE_HIERARCHY,
    Permission,
    Role,
    get_role_permissions,
    permission_description,
)
from mindspace_access.schemas import MutationResult, PermissionRule, UserRecord
from mindspace_access.services.permission_service import PermissionService
from mindspace_access.services.store import UNCHANGED

router = APIRouter(prefix="/api/permissions", tags=["permissions"])


def get_service(request: Request) -> PermissionService:
    return request.app.state.permission_service


def get_guard(request: Request) -> PermissionGuard:
    return request.app.state.permission_guard


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class RoleUpdate(BaseModel):
    role: Role
    company_id: str | None = None


class PermissionChange(BaseModel):
    permissions: list[str] = Field(min_length=1)


class BulkRoleAssign(BaseModel):
    user_ids: list[str] = Field(min_length=1)
    role: Role


class BulkPermissionAssign(BaseModel):
    user_ids: list[str] = Field(min_length=1)
    permissions: list[str] = Field(min_length=1)


class TemplateCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    permissions: list[str] = Field(min_length=1)


def _user_out(user: UserRecord) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role.value,
        "company_id": user.company_id,
        "permissions": sorted(p.value for p in user.permissions),
        "is_active": user.is_active,
    }


def _mutation_out(result: MutationResult) -> dict:
    return {"user": _user_out(result.user), "audit_status": result.audit_status.value}


# ---------------------------------------------------------------------------
# CATALOG
# ---------------------------------------------------------------------------


@router.get("/roles")
async def list_roles(user: UserRecord = Depends(get_current_user)):
    """Roles in rank order with their default permissions."""
    items = [
        {
            "role": role.value,
            "rank": ROLE_HIERARCHY[role],
            "permissions": sorted(p.value for p in get_role_permissions(role)),
        }
        for role in sorted(Role, key=lambda r: ROLE_HIERARCHY[r], reverse=True)
    ]
    return {"items": items, "total": len(items)}


@router.get("/catalog")
async def list_permissions(user: UserRecord = Depends(get_current_user)):
    items = [{"permission": p.value, "description": permission_description(p)} for p in Permission]
    return {"items": items, "total": len(items)}


@router.get("/me")
async def my_permissions(
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    """Effective permissions of the caller and the roles they may hand out."""
    effective = await service.get_effective_permissions(user.id)
    return {
        "user": _user_out(user),
        "effective_permissions": sorted(p.value for p in effective),
        "assignable_roles": [r.value for r in service.get_assignable_roles(user)],
    }


# ---------------------------------------------------------------------------
# USER PERMISSIONS
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}")
async def get_user_permissions(
    user_id: str,
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
    guard: PermissionGuard = Depends(get_guard),
):
    await guard.require_user_data_access(user, user_id)
    effective = await service.get_effective_permissions(user_id)
    inherited = await service.get_inherited_permissions(user_id)
    return {
        "user_id": user_id,
        "role": (await service.get_user_role(user_id)).value,
        "effective_permissions": sorted(p.value for p in effective),
        "inherited": [i.model_dump(mode="json") for i in inherited],
    }


@router.put("/users/{user_id}/role")
async def update_user_role(
    user_id: str,
    body: RoleUpdate,
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    """Change a user's role.  Omitting ``company_id`` keeps the current one."""
    company_id = body.company_id if "company_id" in body.model_fields_set else UNCHANGED
    result = await service.update_user_role(user_id, body.role, user.id, company_id=company_id)
    return _mutation_out(result)


@router.post("/users/{user_id}/grant")
async def grant_permissions(
    user_id: str,
    body: PermissionChange,
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    result = await service.assign_permissions(user_id, body.permissions, user.id)
    return _mutation_out(result)


@router.post("/users/{user_id}/revoke")
async def revoke_permissions(
    user_id: str,
    body: PermissionChange,
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    result = await service.revoke_permissions(user_id, body.permissions, user.id)
    return _mutation_out(result)


# ---------------------------------------------------------------------------
# BULK
# ---------------------------------------------------------------------------


@router.post("/bulk/role")
async def bulk_assign_role(
    body: BulkRoleAssign,
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    """Best-effort: users that cannot be changed are listed under ``failed``."""
    result = await service.bulk_assign_role(body.user_ids, body.role, user.id)
    return result.model_dump()


@router.post("/bulk/permissions")
async def bulk_assign_permissions(
    body: BulkPermissionAssign,
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    result = await service.bulk_assign_permissions(body.user_ids, body.permissions, user.id)
    return result.model_dump()


# ---------------------------------------------------------------------------
# ACCESS CHECK
# ---------------------------------------------------------------------------


@router.get("/check")
async def check_access(
    resource_type: str = Query(...),
    resource_id: str = Query(...),
    action: str = Query(...),
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    allowed = await service.evaluate_access(user, resource_type, resource_id, action)
    return {
        "resource_type": resource_type,
        "resource_id": resource_id,
        "action": action,
        "allowed": allowed,
    }


# ---------------------------------------------------------------------------
# RULES
# ---------------------------------------------------------------------------


@router.get("/rules")
async def list_rules(
    resource_type: str | None = Query(None),
    action: str | None = Query(None),
    user: UserRecord = Depends(require_permission(Permission.MANAGE_PLATFORM)),
    service: PermissionService = Depends(get_service),
):
    rules = await service.list_rules(resource_type, action)
    return {"items": [r.model_dump(mode="json") for r in rules], "total": len(rules)}


@router.post("/rules", status_code=status.HTTP_201_CREATED)
async def create_rule(
    body: PermissionRule,
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    rule_id = await service.create_rule(body, user.id)
    return {"id": rule_id}


@router.put("/rules/{rule_id}")
async def update_rule(
    rule_id: str,
    body: PermissionRule,
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    rule = await service.update_rule(rule_id, body, user.id)
    return rule.model_dump(mode="json")


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: str,
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    await service.delete_rule(rule_id, user.id)


# ---------------------------------------------------------------------------
# TEMPLATES
# ---------------------------------------------------------------------------


@router.get("/templates")
async def list_templates(
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    templates = await service.list_permission_templates()
    return {"items": [t.model_dump(mode="json") for t in templates], "total": len(templates)}


@router.post("/templates", status_code=status.HTTP_201_CREATED)
async def create_template(
    body: TemplateCreate,
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    template = await service.create_permission_template(
        body.name, body.permissions, user.id, description=body.description
    )
    return template.model_dump(mode="json")


@router.post("/templates/{template_id}/apply/{user_id}")
async def apply_template(
    template_id: str,
    user_id: str,
    user: UserRecord = Depends(get_current_user),
    service: PermissionService = Depends(get_service),
):
    result = await service.apply_permission_template(user_id, template_id, user.id)
    return _mutation_out(result)


# ---------------------------------------------------------------------------
# AUDIT LOG
# ---------------------------------------------------------------------------


@router.get("/audit-log")
async def get_audit_log(
    user_id: str | None = Query(None),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    user: UserRecord = Depends(require_permission(Permission.MANAGE_PLATFORM)),
    service: PermissionService = Depends(get_service),
):
    """Entries in append order."""
    entries = await service.get_permission_audit_log(user_id, start, end)
    return {"items": [e.model_dump(mode="json") for e in entries], "total": len(entries)}
