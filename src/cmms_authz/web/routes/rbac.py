"""RBAC administration routes: catalog, roles, principal bindings.

Every handler goes through RbacAdmin, which requires the caller to hold
system:admin before touching the stores.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from cmms_authz.auth.errors import UnknownPermissionError
from cmms_authz.web.app import get_ctx, get_current_principal

router = APIRouter(prefix="/rbac", tags=["rbac"])


class RoleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = ""
    permissions: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("role name must not be blank")
        return v


class RolePermissionsRequest(BaseModel):
    permissions: list[str]


class GrantRequest(BaseModel):
    role: str = Field(min_length=1)


class ReplaceRolesRequest(BaseModel):
    roles: list[str]


# ------------------------------------------------------------------
# Catalog
# ------------------------------------------------------------------
@router.get("/permissions")
async def list_permissions(
    request: Request,
    actor: str = Depends(get_current_principal),
):
    """Permission catalog grouped by resource."""
    grouped = await get_ctx(request).admin.list_permissions(actor)
    return {"permissions": grouped, "total": sum(len(v) for v in grouped.values())}


# ------------------------------------------------------------------
# Roles
# ------------------------------------------------------------------
@router.get("/roles")
async def list_roles(
    request: Request,
    actor: str = Depends(get_current_principal),
):
    roles = await get_ctx(request).admin.list_roles(actor)
    return {"roles": roles, "total": len(roles)}


@router.post("/roles", status_code=201)
async def create_role(
    req: RoleCreateRequest,
    request: Request,
    actor: str = Depends(get_current_principal),
):
    try:
        role = await get_ctx(request).admin.create_role(
            actor,
            req.name,
            description=req.description,
            permissions=req.permissions,
        )
    except UnknownPermissionError as e:
        raise HTTPException(status_code=422, detail=str(e)) from None
    return role.to_dict()


@router.get("/roles/{name}")
async def get_role(
    name: str,
    request: Request,
    actor: str = Depends(get_current_principal),
):
    role = await get_ctx(request).admin.get_role(actor, name)
    return role.to_dict()


@router.put("/roles/{name}/permissions")
async def set_role_permissions(
    name: str,
    req: RolePermissionsRequest,
    request: Request,
    actor: str = Depends(get_current_principal),
):
    """Replace a role's permission set."""
    try:
        role = await get_ctx(request).admin.set_role_permissions(actor, name, req.permissions)
    except UnknownPermissionError as e:
        raise HTTPException(status_code=422, detail=str(e)) from None
    return role.to_dict()


# ------------------------------------------------------------------
# Principal bindings
# ------------------------------------------------------------------
@router.get("/principals/{principal_id}/roles")
async def get_principal_roles(
    principal_id: str,
    request: Request,
    actor: str = Depends(get_current_principal),
):
    roles = await get_ctx(request).admin.principal_roles(actor, principal_id)
    return {"principal_id": principal_id, "roles": sorted(roles)}


@router.post("/principals/{principal_id}/roles", status_code=201)
async def grant_role(
    principal_id: str,
    req: GrantRequest,
    request: Request,
    actor: str = Depends(get_current_principal),
):
    """Grant a role. Granting a role already held returns the existing binding."""
    binding = await get_ctx(request).admin.grant(actor, principal_id, req.role)
    return binding.to_dict()


@router.put("/principals/{principal_id}/roles")
async def replace_roles(
    principal_id: str,
    req: ReplaceRolesRequest,
    request: Request,
    actor: str = Depends(get_current_principal),
):
    """Set the principal's roles to exactly ``roles``."""
    roles = await get_ctx(request).admin.replace_roles(actor, principal_id, req.roles)
    return {"principal_id": principal_id, "roles": sorted(roles)}


@router.delete("/principals/{principal_id}/roles/{role_name}")
async def revoke_role(
    principal_id: str,
    role_name: str,
    request: Request,
    actor: str = Depends(get_current_principal),
):
    await get_ctx(request).admin.revoke(actor, principal_id, role_name)
    return {"principal_id": principal_id, "revoked": role_name}


@router.get("/principals/{principal_id}/bindings")
async def list_bindings(
    principal_id: str,
    request: Request,
    include_inactive: bool = True,
    actor: str = Depends(get_current_principal),
):
    """Binding history, revoked bindings included unless asked otherwise."""
    bindings = await get_ctx(request).admin.list_bindings(
        actor, principal_id, include_inactive=include_inactive
    )
    return {"principal_id": principal_id, "bindings": [b.to_dict() for b in bindings]}


@router.get("/principals/{principal_id}/permissions")
async def get_principal_permissions(
    principal_id: str,
    request: Request,
    actor: str = Depends(get_current_principal),
):
    effective = await get_ctx(request).admin.principal_permissions(actor, principal_id)
    return effective.to_dict()
