"""Role store: named roles and their permission sets.

Roles are read on every permission resolution and change rarely, so the
store keeps an in-process snapshot of all roles. Any write replaces the
snapshot synchronously after its transaction commits and emits an event
so the engine drops cached permission sets before the write returns.

Every load first reads a version token (role count and the sum of role
versions). A token that moved without a local write means another
process changed a role: the snapshot is reloaded and a reload event
clears cached permission sets here too.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable

from sqlalchemy.exc import DBAPIError, IntegrityError

from cmms_authz.auth.catalog import Permission, PermissionCatalog
from cmms_authz.auth.errors import (
    RoleAlreadyExists,
    RoleNotFound,
    StoreUnavailable,
    UnknownPermissionError,
)
from cmms_authz.auth.types import Role
from cmms_authz.services.event_bus import EventBus, Events
from cmms_authz.storage.database import Database
from cmms_authz.storage.models import RoleRecord
from cmms_authz.storage.repository import RoleRepository
from cmms_authz.storage.retry import RetryPolicy, read_with_retry

logger = logging.getLogger("cmms_authz.roles")


class RoleStore:
    """Persisted roles with a synchronously invalidated read cache."""

    def __init__(
        self,
        db: Database,
        catalog: PermissionCatalog,
        event_bus: EventBus | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self._db = db
        self._catalog = catalog
        self._event_bus = event_bus
        self._retry = retry_policy or RetryPolicy()
        self._snapshot: dict[str, Role] | None = None
        self._token: tuple[int, int] | None = None
        self._epoch = 0
        self._role_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def catalog(self) -> PermissionCatalog:
        return self._catalog

    # ====================== Conversion ======================

    def _to_role(self, record: RoleRecord) -> Role:
        perms: set[Permission] = set()
        for rp in record.permissions:
            try:
                perms.add(self._catalog.parse(rp.permission))
            except UnknownPermissionError:
                logger.warning(
                    "Role %s carries permission %r unknown to the catalog; ignoring",
                    record.name,
                    rp.permission,
                )
        return Role(
            name=record.name,
            description=record.description or "",
            permissions=frozenset(perms),
            is_default=record.is_default,
            updated_by=record.updated_by,
            updated_at=record.updated_at,
        )

    # ====================== Reads ======================

    async def _load_snapshot(self) -> dict[str, Role]:
        epoch = self._epoch

        async def _read_token() -> tuple[int, int]:
            async with self._db.session() as session:
                return await RoleRepository(session).version_token()

        token = await read_with_retry(_read_token, self._retry, "role version read")
        if self._snapshot is not None and token == self._token:
            return self._snapshot
        changed_elsewhere = self._snapshot is not None

        async def _read() -> tuple[tuple[int, int], dict[str, Role]]:
            async with self._db.session() as session:
                repo = RoleRepository(session)
                current = await repo.version_token()
                records = await repo.list_all()
                return current, {r.name: self._to_role(r) for r in records}

        token, snapshot = await read_with_retry(_read, self._retry, "role snapshot read")
        # A write landed while we were reading; serve the result but don't keep it.
        if epoch == self._epoch:
            self._snapshot = snapshot
            self._token = token

        if changed_elsewhere:
            logger.info("Role definitions changed outside this process; snapshot reloaded")
            await self._emit(Events.ROLE_RELOADED, {"role": None, "by": None})
        return snapshot

    async def get_role(self, name: str) -> Role:
        roles = await self._load_snapshot()
        role = roles.get(name)
        if role is None:
            raise RoleNotFound(name)
        return role

    async def find_role(self, name: str) -> Role | None:
        roles = await self._load_snapshot()
        return roles.get(name)

    async def list_roles(self) -> list[Role]:
        roles = await self._load_snapshot()
        return [roles[name] for name in sorted(roles)]

    async def role_binding_counts(self) -> dict[str, int]:
        async def _read() -> dict[str, int]:
            async with self._db.session() as session:
                return await RoleRepository(session).active_binding_counts()

        return await read_with_retry(_read, self._retry, "role binding count read")

    def invalidate(self) -> None:
        self._epoch += 1
        self._snapshot = None
        self._token = None

    # ====================== Writes ======================

    async def create_role(
        self,
        name: str,
        description: str = "",
        permissions: Iterable[str | Permission] = (),
        created_by: str | None = None,
        is_default: bool = False,
    ) -> Role:
        """Create a role.

        Raises:
            RoleAlreadyExists: a role with this name exists.
            UnknownPermissionError: a permission is not in the catalog.
        """
        name = name.strip()
        if not name:
            raise ValueError("role name must not be empty")
        perms = self._catalog.parse_many(permissions)

        async with self._role_locks[name]:
            try:
                async with self._db.session() as session:
                    repo = RoleRepository(session)
                    if await repo.get_by_name(name) is not None:
                        raise RoleAlreadyExists(name)
                    record = await repo.create(
                        name=name,
                        description=description,
                        permissions=[p.name for p in perms],
                        created_by=created_by,
                        is_default=is_default,
                    )
                    role = self._to_role(record)
            except IntegrityError:
                # Lost a race with another process creating the same name
                raise RoleAlreadyExists(name) from None
            except DBAPIError as e:
                raise StoreUnavailable(f"create role {name} failed") from e
            finally:
                self.invalidate()

        logger.info(
            "Role created: %s (%d permissions) by %s", name, len(perms), created_by
        )
        await self._emit(Events.ROLE_CREATED, {"role": name, "by": created_by})
        return role

    async def set_role_permissions(
        self,
        name: str,
        permissions: Iterable[str | Permission],
        updated_by: str | None = None,
    ) -> Role:
        """Replace a role's permission set atomically.

        Concurrent writers to the same role are serialized; the last one
        to commit wins and is recorded in ``updated_by``.

        Raises:
            RoleNotFound: no role with this name.
            UnknownPermissionError: a permission is not in the catalog.
        """
        perms = self._catalog.parse_many(permissions)

        async with self._role_locks[name]:
            try:
                async with self._db.session() as session:
                    repo = RoleRepository(session)
                    record = await repo.get_by_name(name, for_update=True)
                    if record is None:
                        raise RoleNotFound(name)
                    record = await repo.replace_permissions(
                        record, [p.name for p in perms], updated_by=updated_by
                    )
                    role = self._to_role(record)
            except DBAPIError as e:
                raise StoreUnavailable(f"update role {name} failed") from e
            finally:
                self.invalidate()

        logger.info(
            "Role permissions replaced: %s -> %d permissions by %s",
            name,
            len(perms),
            updated_by,
        )
        await self._emit(Events.ROLE_UPDATED, {"role": name, "by": updated_by})
        return role

    async def _emit(self, event_type: str, payload: dict) -> None:
        if self._event_bus is not None:
            await self._event_bus.emit(event_type, payload)
