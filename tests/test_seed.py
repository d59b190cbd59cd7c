"""Tests for role seeding, break-glass admin appointment and the permission report."""

import pytest

from cmms_authz.auth.catalog import DEFAULT_ROLE_SEEDS
from cmms_authz.auth.errors import RoleNotFound, UnknownPermissionError
from cmms_authz.services.seed import (
    SEED_ACTOR,
    initialize_rbac,
    make_admin,
    permission_report,
)


class TestInitializeRbac:
    @pytest.mark.asyncio
    async def test_fresh_store(self, role_store, bindings, engine, make_principal):
        await make_principal("u-1")
        await make_principal("u-2")

        report = await initialize_rbac(role_store, bindings, DEFAULT_ROLE_SEEDS)

        assert report.created_roles == ["ADMIN", "TECHNICIAN", "USER"]
        assert report.updated_roles == []
        assert report.default_role == "USER"
        assert report.assigned_default == ["u-1", "u-2"]

        admin = await role_store.get_role("ADMIN")
        assert admin.updated_by == SEED_ACTOR
        assert (await role_store.get_role("USER")).is_default

        history = await bindings.list_bindings("u-1")
        # Default assignment is attributed to the principal itself
        assert history[0].assigned_by == "u-1"
        assert await engine.can("u-1", "sites:read")
        assert not await engine.can("u-1", "assets:write")

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, role_store, bindings, make_principal):
        await make_principal("u-1")
        await initialize_rbac(role_store, bindings, DEFAULT_ROLE_SEEDS)
        report = await initialize_rbac(role_store, bindings, DEFAULT_ROLE_SEEDS)

        assert report.to_dict() == {
            "created_roles": [],
            "updated_roles": [],
            "assigned_default": [],
            "default_role": "USER",
        }
        assert len(await bindings.list_bindings("u-1")) == 1

    @pytest.mark.asyncio
    async def test_adds_missing_permissions_without_removing(self, role_store, bindings):
        await role_store.create_role("USER", permissions=["sites:read", "users:read"])
        seeds = [{"name": "USER", "permissions": ["sites:read", "assets:read"]}]

        report = await initialize_rbac(role_store, bindings, seeds)

        assert report.updated_roles == ["USER"]
        role = await role_store.get_role("USER")
        # users:read was added by an administrator and survives
        assert role.permission_names == ["assets:read", "sites:read", "users:read"]

    @pytest.mark.asyncio
    async def test_explicit_default_role(self, role_store, bindings, make_principal):
        await make_principal("u-1")
        report = await initialize_rbac(
            role_store, bindings, DEFAULT_ROLE_SEEDS, default_role="TECHNICIAN"
        )
        assert report.default_role == "TECHNICIAN"
        assert await bindings.list_active_roles("u-1") == {"TECHNICIAN"}

    @pytest.mark.asyncio
    async def test_no_default_role(self, role_store, bindings, make_principal):
        await make_principal("u-1")
        seeds = [{"name": "VIEWER", "permissions": ["sites:read"]}]
        report = await initialize_rbac(role_store, bindings, seeds)
        assert report.default_role is None
        assert await bindings.list_active_roles("u-1") == set()

    @pytest.mark.asyncio
    async def test_principals_with_roles_untouched(self, seeded, role_store, bindings):
        report = await initialize_rbac(role_store, bindings, [], default_role="VIEWER")
        assert report.assigned_default == ["u-none"]
        assert await bindings.list_active_roles("u-tech") == {"TECHNICIAN"}

    @pytest.mark.asyncio
    async def test_unknown_permission_in_seed(self, role_store, bindings):
        with pytest.raises(UnknownPermissionError):
            await initialize_rbac(
                role_store, bindings, [{"name": "BROKEN", "permissions": ["assets:fly"]}]
            )
        assert await role_store.find_role("BROKEN") is None


class TestMakeAdmin:
    @pytest.mark.asyncio
    async def test_replaces_roles_with_super_role(self, seeded, bindings, engine):
        roles = await make_admin(bindings, "u-tech", granted_by="ops")
        assert roles == {"ADMIN"}
        assert await engine.is_admin("u-tech")
        assert not await engine.has_role("u-tech", "TECHNICIAN")

    @pytest.mark.asyncio
    async def test_missing_super_role(self, seeded, bindings):
        with pytest.raises(RoleNotFound):
            await make_admin(bindings, "u-tech", granted_by="ops", super_role="ROOT")


class TestPermissionReport:
    @pytest.mark.asyncio
    async def test_rows(self, seeded, engine, catalog):
        rows = await permission_report(engine, ["u-admin", "u-tech", "u-none"])
        by_id = {r["principal_id"]: r for r in rows}

        assert by_id["u-admin"]["is_admin"]
        assert by_id["u-admin"]["permission_count"] == len(catalog)
        assert all(by_id["u-admin"]["probes"].values())

        tech = by_id["u-tech"]
        assert tech["roles"] == ["TECHNICIAN"]
        assert tech["permission_count"] == 4
        assert tech["probes"]["assets:write"] is True
        assert tech["probes"]["users:read"] is False

        assert by_id["u-none"]["permission_count"] == 0
        assert not any(by_id["u-none"]["probes"].values())

    @pytest.mark.asyncio
    async def test_custom_probes(self, seeded, engine):
        rows = await permission_report(engine, ["u-tech"], probes=["work_orders:write"])
        assert rows[0]["probes"] == {"work_orders:write": True}

    @pytest.mark.asyncio
    async def test_unknown_probe(self, seeded, engine):
        with pytest.raises(UnknownPermissionError):
            await permission_report(engine, ["u-tech"], probes=["assets:fly"])
