"""Seeding and operator break-glass operations.

These talk to the stores directly rather than through RbacAdmin: they are
how the first administrator comes to exist, so they cannot require one.
Only the CLI and deployment tooling should call them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from cmms_authz.auth.engine import AuthorizationEngine
from cmms_authz.services.bindings import RoleBindingService
from cmms_authz.services.role_store import RoleStore

logger = logging.getLogger("cmms_authz.seed")

SEED_ACTOR = "system:seed"

DEFAULT_PROBES = (
    "users:read",
    "sites:read",
    "assets:write",
    "work_orders:manage",
    "system:admin",
)


@dataclass
class SeedReport:
    created_roles: list[str] = field(default_factory=list)
    updated_roles: list[str] = field(default_factory=list)
    assigned_default: list[str] = field(default_factory=list)
    default_role: str | None = None

    def to_dict(self) -> dict:
        return {
            "created_roles": self.created_roles,
            "updated_roles": self.updated_roles,
            "assigned_default": self.assigned_default,
            "default_role": self.default_role,
        }


async def initialize_rbac(
    role_store: RoleStore,
    bindings: RoleBindingService,
    seed_roles: Iterable[dict],
    default_role: str | None = None,
) -> SeedReport:
    """Bring the role store up to the seed definitions.

    Missing roles are created. Existing roles gain any seed permission they
    lack; permissions added by administrators are never removed. Principals
    with no active binding receive the default role, attributed to
    themselves.

    ``default_role`` overrides the seed entry marked ``is_default``.
    """
    report = SeedReport()
    seeds = list(seed_roles)

    for seed in seeds:
        name = seed["name"]
        wanted = role_store.catalog.parse_many(seed.get("permissions", []))
        if seed.get("is_default") and default_role is None:
            default_role = name

        existing = await role_store.find_role(name)
        if existing is None:
            await role_store.create_role(
                name,
                description=seed.get("description", ""),
                permissions=wanted,
                created_by=SEED_ACTOR,
                is_default=bool(seed.get("is_default", False)),
            )
            report.created_roles.append(name)
            continue

        missing = wanted - existing.permissions
        if missing:
            await role_store.set_role_permissions(
                name, existing.permissions | missing, updated_by=SEED_ACTOR
            )
            report.updated_roles.append(name)
            logger.info(
                "Seed added %d permission(s) to %s: %s",
                len(missing),
                name,
                sorted(p.name for p in missing),
            )

    report.default_role = default_role
    if default_role is None:
        logger.warning("No default role configured; principals without roles left as is")
        return report

    for principal_id in await bindings.principals_without_roles():
        await bindings.grant(principal_id, default_role, granted_by=principal_id)
        report.assigned_default.append(principal_id)

    logger.info(
        "RBAC initialized: created=%s updated=%s default=%s assigned=%d",
        report.created_roles,
        report.updated_roles,
        default_role,
        len(report.assigned_default),
    )
    return report


async def make_admin(
    bindings: RoleBindingService,
    principal_id: str,
    granted_by: str,
    super_role: str = "ADMIN",
) -> set[str]:
    """Replace a principal's roles with exactly the super-role."""
    roles = await bindings.replace_all_roles(principal_id, [super_role], granted_by=granted_by)
    logger.warning("Principal %s made %s by %s", principal_id, super_role, granted_by)
    return roles


async def permission_report(
    engine: AuthorizationEngine,
    principal_ids: Iterable[str],
    probes: Iterable[str] = DEFAULT_PROBES,
) -> list[dict]:
    """Roles, permission count and probe results for each principal.

    Raises:
        UnknownPermissionError: a probe is not in the catalog.
    """
    checks = [engine.catalog.require(p) for p in probes]
    rows = []
    for principal_id in principal_ids:
        effective = await engine.effective_permissions(principal_id)
        rows.append({
            "principal_id": principal_id,
            "roles": sorted(effective.roles),
            "permission_count": len(effective.permissions),
            "is_admin": effective.is_admin,
            "probes": {p.name: effective.can(p) for p in checks},
        })
    return rows
