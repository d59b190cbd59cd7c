"""Tests for the authorization engine.

Covers the resolution properties the rest of the system relies on:
fail-closed for principals without roles, super-role bypass, set-union
for ordinary roles, consistency of any/all checks, and read-your-writes
after binding and role changes.
"""

import itertools
from unittest.mock import AsyncMock, patch

import pytest

from cmms_authz.auth.catalog import SYSTEM_ADMIN, Action, Permission, PermissionCatalog, Resource
from cmms_authz.auth.engine import AuthorizationEngine
from cmms_authz.auth.errors import StoreUnavailable, UnknownPermissionError
from cmms_authz.services.bindings import RoleBindingService
from cmms_authz.services.cache import PermissionCache
from cmms_authz.services.event_bus import EventBus
from cmms_authz.services.role_store import RoleStore

SAMPLE = [
    "assets:read",
    "assets:write",
    "users:delete",
    "work_orders:write",
    "tenants:delete",
    "sites:read",
]


class TestEmptyPrincipals:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("principal_id", ["u-none", "u-ghost", "u-off"])
    async def test_no_permissions(self, seeded, engine, catalog, principal_id):
        effective = await engine.effective_permissions(principal_id)
        assert effective.permissions == frozenset()
        for perm in catalog:
            assert not await engine.can(principal_id, perm)

    @pytest.mark.asyncio
    async def test_unknown_principal_is_not_an_error(self, seeded, engine):
        assert await engine.get_roles("u-ghost") == set()
        assert not await engine.is_admin("u-ghost")


class TestSuperRole:
    @pytest.mark.asyncio
    async def test_super_role_by_name_gets_full_catalog(self, seeded, engine, catalog):
        # ADMIN's explicit permission set is empty
        effective = await engine.effective_permissions("u-admin")
        assert effective.permissions == catalog.all_permissions()
        assert await engine.can("u-admin", "tenants:delete")
        assert await engine.is_admin("u-admin")

    @pytest.mark.asyncio
    async def test_custom_role_with_system_admin_gets_full_catalog(self, seeded, engine, catalog):
        effective = await engine.effective_permissions("u-ops")
        assert effective.permissions == catalog.all_permissions()
        assert await engine.can("u-ops", "users:delete")

    @pytest.mark.asyncio
    async def test_super_role_name_is_configurable(self, seeded, catalog, role_store, bindings):
        engine = AuthorizationEngine(catalog, role_store, bindings, super_role="ROOT")
        # ADMIN is now an ordinary role with no permissions
        assert not await engine.can("u-admin", "tenants:delete")
        # system:admin still triggers the bypass
        assert await engine.can("u-ops", "tenants:delete")

    @pytest.mark.asyncio
    async def test_bypass_follows_engine_catalog(self, seeded, role_store, bindings):
        small = PermissionCatalog(
            [
                SYSTEM_ADMIN,
                Permission(Resource.SITES, Action.READ),
                Permission(Resource.TENANTS, Action.MANAGE),
            ]
        )
        engine = AuthorizationEngine(small, role_store, bindings)
        effective = await engine.effective_permissions("u-admin")
        assert effective.permissions == small.all_permissions()
        assert await engine.can("u-admin", "tenants:manage")


class TestScenarios:
    @pytest.mark.asyncio
    async def test_technician(self, seeded, engine):
        assert await engine.can("u-tech", "assets:write")
        assert not await engine.can("u-tech", "users:delete")
        assert await engine.can_any("u-tech", ["users:delete", "assets:read"])
        assert not await engine.is_admin("u-tech")
        assert await engine.has_role("u-tech", "TECHNICIAN")

    @pytest.mark.asyncio
    async def test_union_across_roles(self, seeded, engine, bindings):
        await bindings.grant("u-none", "VIEWER", granted_by="t")
        await bindings.grant("u-none", "TECHNICIAN", granted_by="t")
        effective = await engine.effective_permissions("u-none")
        assert {p.name for p in effective.permissions} == {
            "sites:read",
            "assets:read",
            "assets:write",
            "work_orders:read",
            "work_orders:write",
        }
        assert effective.roles == {"VIEWER", "TECHNICIAN"}


class TestAnyAllConsistency:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("principal_id", ["u-tech", "u-none", "u-admin"])
    async def test_pairs(self, seeded, engine, principal_id):
        for p1, p2 in itertools.combinations(SAMPLE, 2):
            c1 = await engine.can(principal_id, p1)
            c2 = await engine.can(principal_id, p2)
            assert await engine.can_all(principal_id, [p1, p2]) == (c1 and c2)
            assert await engine.can_any(principal_id, [p1, p2]) == (c1 or c2)

    @pytest.mark.asyncio
    async def test_empty_lists(self, seeded, engine):
        assert await engine.can_all("u-none", [])
        assert not await engine.can_any("u-admin", [])


class TestUnknownPermission:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["can", "can_any", "can_all"])
    async def test_raised_before_store_read(self, seeded, engine, bindings, method):
        arg = "assets:fly" if method == "can" else ["assets:read", "assets:fly"]
        with patch.object(bindings, "active_roles_for_check", AsyncMock()) as read:
            with pytest.raises(UnknownPermissionError):
                await getattr(engine, method)("u-admin", arg)
        read.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_distinct_from_denial(self, seeded, engine):
        # Super-role holders are not exempt: a bad string is a caller bug
        with pytest.raises(UnknownPermissionError):
            await engine.can("u-admin", "assets:fly")


class TestReadYourWrites:
    @pytest.mark.asyncio
    async def test_grant_visible_immediately(self, seeded, engine, bindings):
        assert not await engine.can("u-none", "sites:read")
        await bindings.grant("u-none", "VIEWER", granted_by="t")
        assert await engine.can("u-none", "sites:read")

    @pytest.mark.asyncio
    async def test_revoke_then_check(self, seeded, engine, bindings):
        await bindings.grant("u-tech", "VIEWER", granted_by="t")
        assert await engine.can("u-tech", "assets:write")

        await bindings.revoke("u-tech", "TECHNICIAN")
        # VIEWER is still active but never granted assets:write
        assert not await engine.can("u-tech", "assets:write")
        assert await engine.can("u-tech", "sites:read")

    @pytest.mark.asyncio
    async def test_replace_visible_immediately(self, seeded, engine, bindings):
        assert await engine.can("u-tech", "work_orders:write")
        await bindings.replace_all_roles("u-tech", ["VIEWER"], granted_by="t")
        assert not await engine.can("u-tech", "work_orders:write")
        assert await engine.get_roles("u-tech") == {"VIEWER"}

    @pytest.mark.asyncio
    async def test_role_change_visible_immediately(self, seeded, engine, role_store):
        assert not await engine.can("u-tech", "users:read")
        await role_store.set_role_permissions("TECHNICIAN", ["users:read"])
        assert await engine.can("u-tech", "users:read")
        assert not await engine.can("u-tech", "assets:write")

    @pytest.mark.asyncio
    async def test_granting_system_admin_to_role(self, seeded, engine, role_store):
        assert not await engine.is_admin("u-tech")
        await role_store.set_role_permissions("TECHNICIAN", [SYSTEM_ADMIN])
        assert await engine.is_admin("u-tech")


class TestWritesFromAnotherProcess:
    """A second store and engine on the same database stand in for another worker."""

    @staticmethod
    def _other_engine(db, catalog, cache):
        bus = EventBus()
        store = RoleStore(db, catalog, event_bus=bus)
        return AuthorizationEngine(
            catalog, store, RoleBindingService(db, event_bus=bus), cache=cache, event_bus=bus
        )

    @pytest.mark.asyncio
    async def test_role_change_seen_without_cache(self, seeded, catalog, role_store):
        other = self._other_engine(seeded, catalog, PermissionCache(enabled=False))
        assert await other.can("u-tech", "assets:write")

        await role_store.set_role_permissions("TECHNICIAN", ["assets:read"])
        assert not await other.can("u-tech", "assets:write")
        assert await other.can("u-tech", "assets:read")

    @pytest.mark.asyncio
    async def test_new_role_seen(self, seeded, catalog, role_store, bindings):
        other = self._other_engine(seeded, catalog, PermissionCache(enabled=False))
        await other.can("u-tech", "assets:read")

        await role_store.create_role("PLANNER", permissions=["work_orders:assign"])
        await bindings.grant("u-none", "PLANNER", granted_by="t")
        assert await other.can("u-none", "work_orders:assign")

    @pytest.mark.asyncio
    async def test_reload_clears_cached_sets(self, seeded, catalog, role_store):
        cache = PermissionCache(max_size=100, ttl_seconds=60)
        other = self._other_engine(seeded, catalog, cache)
        assert await other.can("u-tech", "assets:write")

        await role_store.set_role_permissions("TECHNICIAN", ["assets:read"])
        # Any resolution that reaches the role store notices the change
        await other.can("u-ops", "assets:read")
        assert not await other.can("u-tech", "assets:write")
        assert cache.stats["epoch"] == 1


class TestCaching:
    @pytest.mark.asyncio
    async def test_second_check_served_from_cache(self, seeded, engine, bindings):
        await engine.can("u-tech", "assets:read")
        with patch.object(bindings, "active_roles_for_check", AsyncMock()) as read:
            assert await engine.can("u-tech", "assets:write")
        read.assert_not_awaited()
        assert engine.cache.stats["hits"] == 1

    @pytest.mark.asyncio
    async def test_disabled_cache_always_reads(self, seeded, catalog, role_store, bindings):
        engine = AuthorizationEngine(
            catalog, role_store, bindings, cache=PermissionCache(enabled=False)
        )
        await engine.can("u-tech", "assets:read")
        with patch.object(
            bindings, "active_roles_for_check", AsyncMock(return_value={"VIEWER"})
        ) as read:
            assert not await engine.can("u-tech", "assets:write")
        read.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stale_read_not_cached(self, seeded, engine, bindings):
        original = bindings.active_roles_for_check

        async def read_then_invalidate(principal_id):
            roles = await original(principal_id)
            # A grant for this principal lands while the read is in flight
            engine.cache.invalidate(principal_id)
            return roles

        with patch.object(bindings, "active_roles_for_check", side_effect=read_then_invalidate):
            await engine.effective_permissions("u-tech")
        assert engine.cache.get("u-tech") is None


class TestStoreFailure:
    @pytest.mark.asyncio
    async def test_store_unavailable_propagates(self, seeded, engine, bindings):
        with patch.object(
            bindings, "active_roles_for_check", AsyncMock(side_effect=StoreUnavailable("down"))
        ):
            with pytest.raises(StoreUnavailable):
                await engine.can("u-admin", "assets:read")
        # Nothing was cached from the failed read
        assert engine.cache.get("u-admin") is None
