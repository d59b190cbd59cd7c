"""Administrative RBAC operations, gated on the caller holding system:admin.

Every method checks the acting principal through the server guard before
touching the stores, so the administrative surface is protected by the
same authorization it manages.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from cmms_authz.auth.catalog import SYSTEM_ADMIN, Permission, PermissionCatalog
from cmms_authz.auth.guards import ServerGuard
from cmms_authz.auth.types import EffectivePermissions, Role, RoleBinding
from cmms_authz.services.bindings import RoleBindingService
from cmms_authz.services.role_store import RoleStore

logger = logging.getLogger("cmms_authz.admin")


class RbacAdmin:
    """Self-gated facade over the role store and binding service."""

    def __init__(
        self,
        catalog: PermissionCatalog,
        role_store: RoleStore,
        bindings: RoleBindingService,
        guard: ServerGuard,
    ):
        self._catalog = catalog
        self._roles = role_store
        self._bindings = bindings
        self._guard = guard

    async def _authorize(self, actor_id: str) -> None:
        await self._guard.require_permission(actor_id, SYSTEM_ADMIN)

    # ====================== Catalog & roles ======================

    async def list_permissions(self, actor_id: str) -> dict[str, list[str]]:
        """Catalog grouped by resource."""
        await self._authorize(actor_id)
        return {
            resource: [p.name for p in perms]
            for resource, perms in self._catalog.by_resource().items()
        }

    async def list_roles(self, actor_id: str) -> list[dict]:
        await self._authorize(actor_id)
        roles = await self._roles.list_roles()
        counts = await self._roles.role_binding_counts()
        return [{**r.to_dict(), "active_bindings": counts.get(r.name, 0)} for r in roles]

    async def get_role(self, actor_id: str, name: str) -> Role:
        await self._authorize(actor_id)
        return await self._roles.get_role(name)

    async def create_role(
        self,
        actor_id: str,
        name: str,
        description: str = "",
        permissions: Iterable[str | Permission] = (),
    ) -> Role:
        await self._authorize(actor_id)
        return await self._roles.create_role(
            name, description=description, permissions=permissions, created_by=actor_id
        )

    async def set_role_permissions(
        self, actor_id: str, name: str, permissions: Iterable[str | Permission]
    ) -> Role:
        await self._authorize(actor_id)
        return await self._roles.set_role_permissions(name, permissions, updated_by=actor_id)

    # ====================== Bindings ======================

    async def grant(self, actor_id: str, principal_id: str, role_name: str) -> RoleBinding:
        await self._authorize(actor_id)
        return await self._bindings.grant(principal_id, role_name, granted_by=actor_id)

    async def revoke(self, actor_id: str, principal_id: str, role_name: str) -> None:
        await self._authorize(actor_id)
        await self._bindings.revoke(principal_id, role_name, revoked_by=actor_id)

    async def replace_roles(
        self, actor_id: str, principal_id: str, role_names: Iterable[str]
    ) -> set[str]:
        await self._authorize(actor_id)
        return await self._bindings.replace_all_roles(principal_id, role_names, granted_by=actor_id)

    async def list_bindings(
        self, actor_id: str, principal_id: str, include_inactive: bool = True
    ) -> list[RoleBinding]:
        await self._authorize(actor_id)
        return await self._bindings.list_bindings(principal_id, include_inactive=include_inactive)

    async def principal_roles(self, actor_id: str, principal_id: str) -> set[str]:
        await self._authorize(actor_id)
        return await self._bindings.list_active_roles(principal_id)

    async def principal_permissions(
        self, actor_id: str, principal_id: str
    ) -> EffectivePermissions:
        await self._authorize(actor_id)
        return await self._guard.engine.effective_permissions(principal_id)
