"""Unified application bootstrap: single source of truth for initialization.

Provides AppContext (a dataclass holding every runtime component) and a
module-level singleton factory so the web process and in-process callers
share one catalog, one permission cache and one event bus.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cmms_authz.auth.catalog import PermissionCatalog, default_catalog
from cmms_authz.auth.engine import AuthorizationEngine
from cmms_authz.auth.guards import ServerGuard
from cmms_authz.auth.provider import PrincipalResolver, create_principal_resolver
from cmms_authz.config import Settings, load_settings
from cmms_authz.services.admin import RbacAdmin
from cmms_authz.services.bindings import RoleBindingService
from cmms_authz.services.cache import PermissionCache
from cmms_authz.services.event_bus import EventBus
from cmms_authz.services.role_store import RoleStore
from cmms_authz.storage.database import Database
from cmms_authz.storage.retry import RetryPolicy

logger = logging.getLogger("cmms_authz.bootstrap")


@dataclass
class AppContext:
    """Runtime context holding every application component."""

    settings: Settings
    db: Database
    catalog: PermissionCatalog
    event_bus: EventBus
    cache: PermissionCache
    role_store: RoleStore
    bindings: RoleBindingService
    engine: AuthorizationEngine
    guard: ServerGuard
    admin: RbacAdmin
    resolver: PrincipalResolver

    async def close(self) -> None:
        await self.db.close()


_instance: AppContext | None = None


def _retry_policy(settings: Settings) -> RetryPolicy:
    cfg = settings.store
    return RetryPolicy(
        retries=cfg.read_retries,
        base_delay=cfg.retry_base_delay,
        timeout=cfg.read_timeout_seconds,
    )


def build_context(
    settings: Settings,
    catalog: PermissionCatalog | None = None,
    db: Database | None = None,
) -> AppContext:
    """Wire every component from settings. Does not touch the singleton."""
    catalog = catalog or default_catalog()
    db = db or Database(settings.database.url)
    retry = _retry_policy(settings)
    event_bus = EventBus()

    cache = PermissionCache(
        max_size=settings.cache.max_size,
        ttl_seconds=settings.cache.ttl_seconds,
        enabled=settings.cache.enabled,
    )
    role_store = RoleStore(db, catalog, event_bus=event_bus, retry_policy=retry)
    bindings = RoleBindingService(db, event_bus=event_bus, retry_policy=retry)
    engine = AuthorizationEngine(
        catalog,
        role_store,
        bindings,
        cache=cache,
        event_bus=event_bus,
        super_role=settings.authz.super_role,
    )
    guard = ServerGuard(engine, strict=settings.strict_permissions)
    admin = RbacAdmin(catalog, role_store, bindings, guard)
    resolver = create_principal_resolver(
        settings.principal.resolver,
        header=settings.principal.header,
        static_principal_id=settings.principal.static_principal_id,
    )

    logger.info(
        "AppContext created (env=%s, cache=%s, strict=%s, permissions=%d)",
        settings.environment,
        settings.cache.enabled,
        guard.strict,
        len(catalog),
    )
    return AppContext(
        settings=settings,
        db=db,
        catalog=catalog,
        event_bus=event_bus,
        cache=cache,
        role_store=role_store,
        bindings=bindings,
        engine=engine,
        guard=guard,
        admin=admin,
        resolver=resolver,
    )


def bootstrap(config_path: str | None = None) -> AppContext:
    """Module-level singleton factory.

    First call creates and caches, subsequent calls return the same instance.
    """
    global _instance
    if _instance is not None:
        return _instance
    _instance = build_context(load_settings(config_path))
    return _instance


def get_context() -> AppContext:
    """Return the cached AppContext, raising if not yet bootstrapped."""
    if _instance is None:
        raise RuntimeError("App not bootstrapped; call bootstrap() first")
    return _instance


def reset_context() -> None:
    """Clear the singleton (for testing)."""
    global _instance
    _instance = None
