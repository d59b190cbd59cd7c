"""Shared pytest fixtures for cmms_authz tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from cmms_authz.auth.catalog import PermissionCatalog, default_catalog
from cmms_authz.auth.engine import AuthorizationEngine
from cmms_authz.auth.guards import ServerGuard
from cmms_authz.services.bindings import RoleBindingService
from cmms_authz.services.cache import PermissionCache
from cmms_authz.services.event_bus import EventBus
from cmms_authz.services.role_store import RoleStore
from cmms_authz.storage.database import Database
from cmms_authz.storage.repository import PrincipalRepository
from cmms_authz.storage.retry import RetryPolicy

TECHNICIAN_PERMISSIONS = [
    "assets:read",
    "assets:write",
    "work_orders:read",
    "work_orders:write",
]

# Fast failure for fault-injection tests
FAST_RETRY = RetryPolicy(retries=1, base_delay=0, timeout=1.0)


def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'authz.db'}"


async def add_principal(db: Database, principal_id: str, is_active: bool = True) -> None:
    async with db.session() as session:
        await PrincipalRepository(session).create(
            principal_id, email=f"{principal_id}@example.com", is_active=is_active
        )


# ============================================================
# Storage
# ============================================================


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(sqlite_url(tmp_path))
    await database.init_db()
    yield database
    await database.close()


# ============================================================
# Components
# ============================================================


@pytest.fixture
def catalog() -> PermissionCatalog:
    return default_catalog()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def cache() -> PermissionCache:
    return PermissionCache(max_size=100, ttl_seconds=60)


@pytest.fixture
def role_store(db, catalog, event_bus) -> RoleStore:
    return RoleStore(db, catalog, event_bus=event_bus, retry_policy=FAST_RETRY)


@pytest.fixture
def bindings(db, event_bus) -> RoleBindingService:
    return RoleBindingService(db, event_bus=event_bus, retry_policy=FAST_RETRY)


@pytest.fixture
def engine(catalog, role_store, bindings, cache, event_bus) -> AuthorizationEngine:
    return AuthorizationEngine(
        catalog, role_store, bindings, cache=cache, event_bus=event_bus, super_role="ADMIN"
    )


@pytest.fixture
def guard(engine) -> ServerGuard:
    return ServerGuard(engine, strict=False)


@pytest.fixture
def strict_guard(engine) -> ServerGuard:
    return ServerGuard(engine, strict=True)


# ============================================================
# Seeded roles and principals
# ============================================================


@pytest_asyncio.fixture
async def seeded(db, role_store):
    """Roles and principals shared by engine, guard and admin tests.

    Roles:
        ADMIN        super-role by name, explicit permission set left empty
        OPS_ADMIN    custom role that carries system:admin
        TECHNICIAN   assets and work orders, read and write
        USER         read-only
        VIEWER       sites:read only
    Principals:
        u-admin (ADMIN), u-ops (OPS_ADMIN), u-tech (TECHNICIAN),
        u-none (no roles), u-off (TECHNICIAN, deactivated)
    """
    await role_store.create_role("ADMIN", "Super role", [], created_by="test")
    await role_store.create_role("OPS_ADMIN", "Custom admin", ["system:admin"], created_by="test")
    await role_store.create_role("TECHNICIAN", "Field tech", TECHNICIAN_PERMISSIONS, created_by="test")
    await role_store.create_role(
        "USER", "Read only", ["sites:read", "assets:read"], created_by="test", is_default=True
    )
    await role_store.create_role("VIEWER", "Sites only", ["sites:read"], created_by="test")

    for pid in ("u-admin", "u-ops", "u-tech", "u-none"):
        await add_principal(db, pid)
    await add_principal(db, "u-off", is_active=False)

    svc = RoleBindingService(db)
    await svc.grant("u-admin", "ADMIN", granted_by="test")
    await svc.grant("u-ops", "OPS_ADMIN", granted_by="test")
    await svc.grant("u-tech", "TECHNICIAN", granted_by="test")
    await svc.grant("u-off", "TECHNICIAN", granted_by="test")
    return db


@pytest.fixture
def make_principal(db):
    async def _make(principal_id: str, is_active: bool = True) -> None:
        await add_principal(db, principal_id, is_active=is_active)

    return _make
