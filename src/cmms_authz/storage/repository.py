"""Record-store access for principals, roles and role bindings.

All repositories take an AsyncSession so the caller owns the
transaction boundary; grant/revoke/replace run several repository calls
inside one session so they commit or roll back together.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cmms_authz.storage.models import (
    RoleBindingRecord,
    RolePermissionRecord,
    RoleRecord,
    User,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PrincipalRepository:
    """Read access to the host application's users table."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, principal_id: str) -> User | None:
        return await self._session.get(User, principal_id)

    async def get_for_update(self, principal_id: str) -> User | None:
        """Fetch and row-lock a principal (no-op lock on SQLite).

        Serializes concurrent binding writes for the same principal across
        processes.
        """
        result = await self._session.execute(
            select(User).where(User.id == principal_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        principal_id: str,
        email: str,
        name: str | None = None,
        is_active: bool = True,
    ) -> User:
        user = User(id=principal_id, email=email, name=name, is_active=is_active)
        self._session.add(user)
        await self._session.flush()
        return user

    async def without_active_bindings(self) -> list[User]:
        """Active principals that hold no active role binding."""
        bound = select(RoleBindingRecord.user_id).where(
            RoleBindingRecord.is_active == True  # noqa: E712
        )
        result = await self._session.execute(
            select(User)
            .where(User.is_active == True, User.id.not_in(bound))  # noqa: E712
            .order_by(User.id)
        )
        return list(result.scalars().all())

    async def list_ids(self) -> list[str]:
        result = await self._session.execute(select(User.id).order_by(User.id))
        return list(result.scalars().all())


class RoleRepository:
    """CRUD for roles and their permission rows."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_name(self, name: str, for_update: bool = False) -> RoleRecord | None:
        stmt = (
            select(RoleRecord)
            .where(RoleRecord.name == name)
            .options(selectinload(RoleRecord.permissions))
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> list[RoleRecord]:
        result = await self._session.execute(
            select(RoleRecord)
            .options(selectinload(RoleRecord.permissions))
            .order_by(RoleRecord.name)
        )
        return list(result.scalars().all())

    async def version_token(self) -> tuple[int, int]:
        """(role count, sum of role versions); changes on any create or update."""
        result = await self._session.execute(
            select(func.count(RoleRecord.id), func.coalesce(func.sum(RoleRecord.version), 0))
        )
        count, total = result.one()
        return int(count), int(total)

    async def create(
        self,
        name: str,
        description: str,
        permissions: Iterable[str],
        created_by: str | None = None,
        is_default: bool = False,
    ) -> RoleRecord:
        role = RoleRecord(
            name=name,
            description=description,
            is_default=is_default,
            created_by=created_by,
            updated_by=created_by,
            permissions=[RolePermissionRecord(permission=p) for p in sorted(set(permissions))],
        )
        self._session.add(role)
        await self._session.flush()
        return role

    async def replace_permissions(
        self,
        role: RoleRecord,
        permissions: Iterable[str],
        updated_by: str | None = None,
    ) -> RoleRecord:
        """Replace a role's permission rows with exactly ``permissions``.

        Applied as a diff so unchanged rows are never deleted and
        re-inserted under the (role_id, permission) unique constraint.
        """
        target = set(permissions)
        current = {rp.permission: rp for rp in role.permissions}
        for name, row in current.items():
            if name not in target:
                role.permissions.remove(row)
        for name in sorted(target - current.keys()):
            role.permissions.append(RolePermissionRecord(permission=name))
        role.version += 1
        role.updated_by = updated_by
        role.updated_at = _utcnow()
        await self._session.flush()
        return role

    async def active_binding_counts(self) -> dict[str, int]:
        result = await self._session.execute(
            select(RoleRecord.name, func.count(RoleBindingRecord.id))
            .join(RoleBindingRecord, RoleBindingRecord.role_id == RoleRecord.id)
            .where(RoleBindingRecord.is_active == True)  # noqa: E712
            .group_by(RoleRecord.name)
        )
        return {name: count for name, count in result.all()}


class BindingRepository:
    """Principal-role bindings. Rows are deactivated, never deleted."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def active_binding(self, user_id: str, role_id: int) -> RoleBindingRecord | None:
        result = await self._session.execute(
            select(RoleBindingRecord).where(
                RoleBindingRecord.user_id == user_id,
                RoleBindingRecord.role_id == role_id,
                RoleBindingRecord.is_active == True,  # noqa: E712
            )
        )
        return result.scalar_one_or_none()

    async def active_bindings(self, user_id: str) -> list[RoleBindingRecord]:
        result = await self._session.execute(
            select(RoleBindingRecord)
            .where(
                RoleBindingRecord.user_id == user_id,
                RoleBindingRecord.is_active == True,  # noqa: E712
            )
            .options(selectinload(RoleBindingRecord.role))
        )
        return list(result.scalars().all())

    async def active_role_names(self, user_id: str) -> set[str]:
        result = await self._session.execute(
            select(RoleRecord.name)
            .join(RoleBindingRecord, RoleBindingRecord.role_id == RoleRecord.id)
            .where(
                RoleBindingRecord.user_id == user_id,
                RoleBindingRecord.is_active == True,  # noqa: E712
            )
        )
        return set(result.scalars().all())

    async def list_for_user(
        self, user_id: str, include_inactive: bool = True
    ) -> list[RoleBindingRecord]:
        stmt = (
            select(RoleBindingRecord)
            .where(RoleBindingRecord.user_id == user_id)
            .options(selectinload(RoleBindingRecord.role))
            .order_by(RoleBindingRecord.assigned_at, RoleBindingRecord.id)
        )
        if not include_inactive:
            stmt = stmt.where(RoleBindingRecord.is_active == True)  # noqa: E712
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create(self, user_id: str, role_id: int, assigned_by: str) -> RoleBindingRecord:
        binding = RoleBindingRecord(
            user_id=user_id,
            role_id=role_id,
            is_active=True,
            assigned_by=assigned_by,
            assigned_at=_utcnow(),
        )
        self._session.add(binding)
        await self._session.flush()
        return binding

    async def deactivate(
        self, binding: RoleBindingRecord, revoked_by: str | None = None
    ) -> RoleBindingRecord:
        binding.is_active = False
        binding.revoked_by = revoked_by
        binding.revoked_at = _utcnow()
        await self._session.flush()
        return binding
