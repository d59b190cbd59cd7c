"""Authorization engine: principal -> effective permission set -> decision.

Resolution is a set union over the principal's active roles, with one
short-circuit evaluated first: a role named after the configured
super-role, or a role that carries ``system:admin``, yields the whole
catalog regardless of its enumerated permissions.

Permission arguments are validated against the catalog before any store
read; an unknown permission is a caller bug and raises
UnknownPermissionError rather than answering False.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from cmms_authz.auth.catalog import SYSTEM_ADMIN, Permission, PermissionCatalog
from cmms_authz.auth.types import EffectivePermissions
from cmms_authz.services.bindings import RoleBindingService
from cmms_authz.services.cache import PermissionCache
from cmms_authz.services.event_bus import EventBus, Events
from cmms_authz.services.role_store import RoleStore

logger = logging.getLogger("cmms_authz.engine")

PermissionRef = str | Permission


class AuthorizationEngine:
    """Resolves effective permissions and answers permission checks."""

    def __init__(
        self,
        catalog: PermissionCatalog,
        role_store: RoleStore,
        bindings: RoleBindingService,
        cache: PermissionCache | None = None,
        event_bus: EventBus | None = None,
        super_role: str = "ADMIN",
    ):
        self.catalog = catalog
        self._roles = role_store
        self._bindings = bindings
        self._cache = cache or PermissionCache(enabled=False)
        self._super_role = super_role
        if event_bus is not None:
            self.subscribe(event_bus)

    @property
    def cache(self) -> PermissionCache:
        return self._cache

    @property
    def super_role(self) -> str:
        return self._super_role

    def subscribe(self, event_bus: EventBus) -> None:
        """Register cache invalidation for role and binding writes."""
        for event_type in Events.BINDING_EVENTS:
            event_bus.on(event_type, self._on_binding_changed, critical=True)
        for event_type in Events.ROLE_EVENTS:
            event_bus.on(event_type, self._on_role_changed, critical=True)

    async def _on_binding_changed(self, payload: dict) -> None:
        principal_id = payload.get("principal_id")
        if principal_id:
            self._cache.invalidate(principal_id)

    async def _on_role_changed(self, payload: dict) -> None:
        self._cache.clear()

    # ====================== Resolution ======================

    async def effective_permissions(self, principal_id: str) -> EffectivePermissions:
        """Union of permissions across the principal's active roles.

        Unknown and deactivated principals resolve to the empty set.

        Raises:
            StoreUnavailable: the binding or role store could not be read.
        """
        cached = self._cache.get(principal_id)
        if cached is not None:
            return cached

        generation = self._cache.generation(principal_id)
        effective = await self._resolve(principal_id)
        self._cache.put(principal_id, effective, generation)
        return effective

    async def _resolve(self, principal_id: str) -> EffectivePermissions:
        role_names = await self._bindings.active_roles_for_check(principal_id)
        if not role_names:
            return EffectivePermissions.empty(principal_id)

        roles = []
        for name in sorted(role_names):
            role = await self._roles.find_role(name)
            if role is None:
                logger.warning("Principal %s bound to unknown role %s", principal_id, name)
                continue
            roles.append(role)
        held = frozenset(r.name for r in roles)

        if any(r.name == self._super_role or SYSTEM_ADMIN in r.permissions for r in roles):
            return EffectivePermissions(
                principal_id=principal_id,
                roles=held,
                permissions=self.catalog.all_permissions(),
            )

        permissions: set[Permission] = set()
        for role in roles:
            permissions |= role.permissions
        return EffectivePermissions(
            principal_id=principal_id,
            roles=held,
            permissions=frozenset(permissions),
        )

    # ====================== Checks ======================

    async def can(self, principal_id: str, permission: PermissionRef) -> bool:
        perm = self.catalog.require(permission)
        effective = await self.effective_permissions(principal_id)
        return effective.can(perm)

    async def can_any(self, principal_id: str, permissions: Iterable[PermissionRef]) -> bool:
        """True if at least one of ``permissions`` holds. False for an empty list."""
        perms = [self.catalog.require(p) for p in permissions]
        effective = await self.effective_permissions(principal_id)
        return effective.can_any(perms)

    async def can_all(self, principal_id: str, permissions: Iterable[PermissionRef]) -> bool:
        """True only if every one of ``permissions`` holds. True for an empty list."""
        perms = [self.catalog.require(p) for p in permissions]
        effective = await self.effective_permissions(principal_id)
        return effective.can_all(perms)

    async def is_admin(self, principal_id: str) -> bool:
        effective = await self.effective_permissions(principal_id)
        return effective.is_admin

    async def get_roles(self, principal_id: str) -> set[str]:
        effective = await self.effective_permissions(principal_id)
        return set(effective.roles)

    async def has_role(self, principal_id: str, role_name: str) -> bool:
        return role_name in await self.get_roles(principal_id)
