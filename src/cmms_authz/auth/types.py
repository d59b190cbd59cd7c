"""Domain value objects shared by the stores, the engine and both guards."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from cmms_authz.auth.catalog import SYSTEM_ADMIN, Permission


@dataclass(frozen=True)
class Role:
    """A named bundle of permissions."""

    name: str
    description: str = ""
    permissions: frozenset[Permission] = field(default_factory=frozenset)
    is_default: bool = False
    updated_by: str | None = None
    updated_at: datetime | None = None

    @property
    def permission_names(self) -> list[str]:
        return sorted(p.name for p in self.permissions)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "permissions": self.permission_names,
            "is_default": self.is_default,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class RoleBinding:
    """Association of one principal to one role."""

    id: int
    principal_id: str
    role_name: str
    is_active: bool
    assigned_by: str
    assigned_at: datetime | None = None
    revoked_by: str | None = None
    revoked_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "principal_id": self.principal_id,
            "role": self.role_name,
            "is_active": self.is_active,
            "assigned_by": self.assigned_by,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "revoked_by": self.revoked_by,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
        }


@dataclass(frozen=True)
class EffectivePermissions:
    """Union of permissions from a principal's active role bindings.

    Derived on demand and never persisted. The same object drives the
    server engine's answers and the client guard's rendering decisions.
    Callers are expected to have validated permissions against the catalog
    before asking; membership tests here are plain set lookups.
    """

    principal_id: str
    roles: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[Permission] = field(default_factory=frozenset)

    @classmethod
    def empty(cls, principal_id: str) -> EffectivePermissions:
        return cls(principal_id=principal_id)

    @property
    def is_admin(self) -> bool:
        return SYSTEM_ADMIN in self.permissions

    def can(self, permission: Permission) -> bool:
        return permission in self.permissions

    def can_any(self, permissions: Iterable[Permission]) -> bool:
        return any(p in self.permissions for p in permissions)

    def can_all(self, permissions: Iterable[Permission]) -> bool:
        return all(p in self.permissions for p in permissions)

    def to_dict(self) -> dict:
        return {
            "principal_id": self.principal_id,
            "roles": sorted(self.roles),
            "permissions": sorted(p.name for p in self.permissions),
            "is_admin": self.is_admin,
        }
