"""Permission catalog.

Permissions are ``<resource>:<action>`` pairs drawn from closed enums.
The catalog is an explicitly constructed, immutable object that is passed
to the engine, role store and guards at startup; tests build their own
fixture catalogs with :class:`PermissionCatalog` directly.

Usage:
    catalog = default_catalog()
    perm = catalog.parse("assets:write")
    catalog.exists("users:delete")   # True
    catalog.parse("assets:fly")      # raises UnknownPermissionError
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum

from cmms_authz.auth.errors import UnknownPermissionError


class Resource(str, Enum):
    """Resource types that permissions are scoped to."""

    SITES = "sites"
    BUILDINGS = "buildings"
    ROOMS = "rooms"
    ASSETS = "assets"
    WORK_ORDERS = "work_orders"
    TENANTS = "tenants"
    USERS = "users"
    SYSTEM = "system"


class Action(str, Enum):
    """Actions a permission grants on a resource."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    MANAGE = "manage"
    ADMIN = "admin"
    ASSIGN = "assign"


@dataclass(frozen=True, order=True)
class Permission:
    """An atomic ``resource:action`` capability."""

    resource: Resource
    action: Action

    @property
    def name(self) -> str:
        return f"{self.resource.value}:{self.action.value}"

    def __str__(self) -> str:
        return self.name


SYSTEM_ADMIN = Permission(Resource.SYSTEM, Action.ADMIN)


class PermissionCatalog:
    """Closed set of permissions known to the application."""

    def __init__(self, permissions: Iterable[Permission]):
        self._permissions: frozenset[Permission] = frozenset(permissions)
        self._by_name: dict[str, Permission] = {p.name: p for p in self._permissions}

    def all_permissions(self) -> frozenset[Permission]:
        return self._permissions

    def exists(self, permission: str | Permission) -> bool:
        if isinstance(permission, Permission):
            return permission in self._permissions
        return permission in self._by_name

    def parse(self, value: str | Permission) -> Permission:
        """Resolve a string or Permission to a catalog entry.

        Raises:
            UnknownPermissionError: the value is malformed or not in this
                catalog. This is a configuration bug, never a denial.
        """
        if isinstance(value, Permission):
            if value in self._permissions:
                return value
            raise UnknownPermissionError(value.name)
        perm = self._by_name.get(value)
        if perm is None:
            raise UnknownPermissionError(str(value))
        return perm

    require = parse

    def parse_many(self, values: Iterable[str | Permission]) -> frozenset[Permission]:
        return frozenset(self.parse(v) for v in values)

    def by_resource(self) -> dict[str, list[Permission]]:
        """Group permissions by resource, each group sorted by action."""
        grouped: dict[str, list[Permission]] = {}
        for perm in sorted(self._permissions, key=lambda p: (p.resource.value, p.action.value)):
            grouped.setdefault(perm.resource.value, []).append(perm)
        return grouped

    def __contains__(self, item: object) -> bool:
        if isinstance(item, (str, Permission)):
            return self.exists(item)
        return False

    def __iter__(self) -> Iterator[Permission]:
        return iter(sorted(self._permissions, key=lambda p: p.name))

    def __len__(self) -> int:
        return len(self._permissions)


_CRUD_ACTIONS = (Action.READ, Action.WRITE, Action.DELETE, Action.MANAGE)


def default_catalog() -> PermissionCatalog:
    """Build the maintenance application's permission catalog."""
    perms: list[Permission] = []
    for resource in (
        Resource.USERS,
        Resource.SITES,
        Resource.BUILDINGS,
        Resource.ROOMS,
        Resource.ASSETS,
        Resource.WORK_ORDERS,
        Resource.TENANTS,
    ):
        perms.extend(Permission(resource, action) for action in _CRUD_ACTIONS)
    perms.append(Permission(Resource.WORK_ORDERS, Action.ASSIGN))
    perms.append(SYSTEM_ADMIN)
    perms.append(Permission(Resource.SYSTEM, Action.READ))
    return PermissionCatalog(perms)


# ============================================================
# Default role seeds (data, loaded into the role store by seeding)
# ============================================================

_READ_ONLY = [
    "sites:read",
    "buildings:read",
    "rooms:read",
    "assets:read",
    "work_orders:read",
    "tenants:read",
]

DEFAULT_ROLE_SEEDS: list[dict] = [
    {
        "name": "ADMIN",
        "description": "Full access to every resource",
        "permissions": ["system:admin"],
    },
    {
        "name": "TECHNICIAN",
        "description": "Maintains assets and works on work orders",
        "permissions": _READ_ONLY + ["assets:write", "work_orders:write"],
    },
    {
        "name": "USER",
        "description": "Read-only access to facilities",
        "permissions": list(_READ_ONLY),
        "is_default": True,
    },
]
