"""Guard layer: server-side enforcement and client-side affordance gating.

ServerGuard is authoritative. It must run before any side effect of a
state-mutating operation, and it fails closed: store faults and (outside
strict mode) configuration bugs both surface to the caller as Forbidden,
while being logged distinctly for operators.

ClientGuard is advisory only. It answers from an EffectivePermissions
snapshot produced by the same engine, so the two guards cannot drift.

FastAPI usage:
    @router.post("/work-orders")
    async def create(principal_id: str = Depends(require_permission("work_orders:write"))):
        ...

    @router.get("/dashboard")
    async def dashboard(
        principal_id: str = Depends(require_any_permission("assets:read", "sites:read")),
    ):
        ...
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from fastapi import HTTPException, Request

from cmms_authz.auth.catalog import SYSTEM_ADMIN, Permission, PermissionCatalog
from cmms_authz.auth.engine import AuthorizationEngine, PermissionRef
from cmms_authz.auth.errors import (
    ConfigurationError,
    Forbidden,
    StoreUnavailable,
    UnknownPermissionError,
)
from cmms_authz.auth.types import EffectivePermissions

logger = logging.getLogger("cmms_authz.guard")


def _names(permissions: Iterable[PermissionRef]) -> tuple[str, ...]:
    return tuple(p.name if isinstance(p, Permission) else str(p) for p in permissions)


# ============================================================
# Server guard
# ============================================================


class ServerGuard:
    """Authoritative permission gate for mutating entry points.

    An empty permission list is a configuration error, never an allow.
    """

    def __init__(self, engine: AuthorizationEngine, strict: bool = False):
        self._engine = engine
        self.strict = strict

    @property
    def engine(self) -> AuthorizationEngine:
        return self._engine

    async def require_permission(self, principal_id: str, permission: PermissionRef) -> None:
        """Return if the principal holds ``permission``, else raise Forbidden."""
        await self._require(principal_id, [permission], require_all=True)

    async def require_all(self, principal_id: str, permissions: Iterable[PermissionRef]) -> None:
        await self._require(principal_id, list(permissions), require_all=True)

    async def require_any(self, principal_id: str, permissions: Iterable[PermissionRef]) -> None:
        await self._require(principal_id, list(permissions), require_all=False)

    async def _require(
        self,
        principal_id: str,
        permissions: list[PermissionRef],
        require_all: bool,
    ) -> None:
        needed = _names(permissions)
        try:
            if not permissions:
                raise ConfigurationError("guard called without any permission to check")
            if require_all:
                allowed = await self._engine.can_all(principal_id, permissions)
            else:
                allowed = await self._engine.can_any(principal_id, permissions)
        except ConfigurationError:
            if self.strict:
                raise
            logger.error(
                "Configuration error checking %s for %s; denying",
                needed,
                principal_id,
                exc_info=True,
            )
            raise Forbidden(principal_id, needed) from None
        except StoreUnavailable:
            logger.error(
                "Permission store unavailable checking %s for %s; denying",
                needed,
                principal_id,
                exc_info=True,
            )
            raise Forbidden(principal_id, needed) from None

        if not allowed:
            logger.info(
                "Permission denied: principal=%s required=%s mode=%s",
                principal_id,
                needed,
                "all" if require_all else "any",
            )
            raise Forbidden(principal_id, needed)


# ============================================================
# FastAPI dependencies
# ============================================================


def _guard_dependency(permissions: tuple[PermissionRef, ...], require_all: bool):
    if not permissions:
        raise ConfigurationError("permission dependency needs at least one permission")

    async def _check_permission(request: Request) -> str:
        from cmms_authz.web.app import get_current_principal

        principal_id = await get_current_principal(request)
        guard: ServerGuard = request.app.state.ctx.guard
        try:
            if require_all:
                await guard.require_all(principal_id, permissions)
            else:
                await guard.require_any(principal_id, permissions)
        except Forbidden:
            raise HTTPException(status_code=403, detail="Forbidden") from None
        return principal_id

    return _check_permission


def require_permission(*permissions: PermissionRef):
    """FastAPI dependency factory requiring ALL of ``permissions``.

    Resolves to the principal id when the check passes.
    """
    return _guard_dependency(permissions, require_all=True)


def require_any_permission(*permissions: PermissionRef):
    """FastAPI dependency factory requiring at least one of ``permissions``."""
    return _guard_dependency(permissions, require_all=False)


def require_admin():
    """Convenience dependency: require system:admin."""
    return require_permission(SYSTEM_ADMIN)


# ============================================================
# Client guard
# ============================================================


class ClientGuard:
    """Advisory permission checks for rendering and enabling controls.

    Never the sole gate on an operation. With no snapshot loaded every
    check answers False, hiding affordances rather than showing them.
    """

    def __init__(self, catalog: PermissionCatalog, snapshot: EffectivePermissions | None = None):
        self._catalog = catalog
        self._snapshot = snapshot

    @classmethod
    def from_payload(cls, catalog: PermissionCatalog, payload: dict | None) -> ClientGuard:
        """Rebuild a guard from the ``/me/permissions`` response body."""
        if not payload:
            return cls(catalog, None)
        perms: set[Permission] = set()
        for name in payload.get("permissions", []):
            try:
                perms.add(catalog.parse(name))
            except UnknownPermissionError:
                logger.warning("Ignoring unknown permission %r in client snapshot", name)
        snapshot = EffectivePermissions(
            principal_id=payload.get("principal_id", ""),
            roles=frozenset(payload.get("roles", [])),
            permissions=frozenset(perms),
        )
        return cls(catalog, snapshot)

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def roles(self) -> frozenset[str]:
        return self._snapshot.roles if self._snapshot else frozenset()

    def _lookup(self, permission: PermissionRef) -> Permission | None:
        try:
            return self._catalog.parse(permission)
        except UnknownPermissionError:
            logger.warning("Client check for unknown permission %r", permission)
            return None

    def can(self, permission: PermissionRef) -> bool:
        if self._snapshot is None:
            return False
        perm = self._lookup(permission)
        return perm is not None and self._snapshot.can(perm)

    def can_any(self, permissions: Iterable[PermissionRef]) -> bool:
        return any(self.can(p) for p in permissions)

    def can_all(self, permissions: Iterable[PermissionRef]) -> bool:
        if self._snapshot is None:
            return False
        return all(self.can(p) for p in permissions)

    def is_admin(self) -> bool:
        return self._snapshot is not None and self._snapshot.is_admin

    def allows(
        self,
        permissions: PermissionRef | Iterable[PermissionRef],
        require_all: bool = False,
    ) -> bool:
        """Decide whether a control guarded by ``permissions`` is shown."""
        if isinstance(permissions, (str, Permission)):
            return self.can(permissions)
        if require_all:
            return self.can_all(permissions)
        return self.can_any(permissions)
