"""Principal-role bindings: grant, revoke, replace, list.

Bindings are soft-revoked (``is_active = False``) so the history of who
granted and revoked what, and when, survives. Writes for one principal
are serialized in-process by a per-principal lock, and across processes
by a row lock on the principal plus a partial unique index that allows
only one active binding per (principal, role).
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable

from sqlalchemy.exc import DBAPIError, IntegrityError

from cmms_authz.auth.errors import (
    BindingNotFound,
    PrincipalNotFound,
    RoleNotFound,
    StoreUnavailable,
)
from cmms_authz.auth.types import RoleBinding
from cmms_authz.services.event_bus import EventBus, Events
from cmms_authz.storage.database import Database
from cmms_authz.storage.models import RoleBindingRecord
from cmms_authz.storage.repository import (
    BindingRepository,
    PrincipalRepository,
    RoleRepository,
)
from cmms_authz.storage.retry import RetryPolicy, read_with_retry

logger = logging.getLogger("cmms_authz.bindings")


def _to_binding(record: RoleBindingRecord, role_name: str) -> RoleBinding:
    return RoleBinding(
        id=record.id,
        principal_id=record.user_id,
        role_name=role_name,
        is_active=record.is_active,
        assigned_by=record.assigned_by,
        assigned_at=record.assigned_at,
        revoked_by=record.revoked_by,
        revoked_at=record.revoked_at,
    )


class RoleBindingService:
    """Grant and revoke roles for principals."""

    def __init__(
        self,
        db: Database,
        event_bus: EventBus | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self._db = db
        self._event_bus = event_bus
        self._retry = retry_policy or RetryPolicy()
        self._principal_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ====================== Writes ======================

    async def grant(self, principal_id: str, role_name: str, granted_by: str) -> RoleBinding:
        """Bind a role to a principal.

        Idempotent: if an active binding already exists it is returned
        unchanged.

        Raises:
            PrincipalNotFound: unknown principal.
            RoleNotFound: unknown role.
        """
        async with self._principal_locks[principal_id]:
            try:
                binding, created = await self._grant_once(principal_id, role_name, granted_by)
            except IntegrityError:
                # Another process inserted the same active binding first.
                logger.info(
                    "Concurrent grant of %s to %s resolved to existing binding",
                    role_name,
                    principal_id,
                )
                binding, created = await self._existing_binding(principal_id, role_name), False
            except DBAPIError as e:
                raise StoreUnavailable(f"grant {role_name} to {principal_id} failed") from e

        if created:
            logger.info("Role %s granted to %s by %s", role_name, principal_id, granted_by)
            await self._emit(
                Events.BINDING_GRANTED,
                {"principal_id": principal_id, "role": role_name, "by": granted_by},
            )
        return binding

    async def _grant_once(
        self, principal_id: str, role_name: str, granted_by: str
    ) -> tuple[RoleBinding, bool]:
        async with self._db.session() as session:
            user = await PrincipalRepository(session).get_for_update(principal_id)
            if user is None:
                raise PrincipalNotFound(principal_id)
            role = await RoleRepository(session).get_by_name(role_name)
            if role is None:
                raise RoleNotFound(role_name)

            repo = BindingRepository(session)
            existing = await repo.active_binding(user.id, role.id)
            if existing is not None:
                return _to_binding(existing, role.name), False
            record = await repo.create(user.id, role.id, assigned_by=granted_by)
            return _to_binding(record, role.name), True

    async def _existing_binding(self, principal_id: str, role_name: str) -> RoleBinding:
        async with self._db.session() as session:
            role = await RoleRepository(session).get_by_name(role_name)
            if role is None:
                raise RoleNotFound(role_name)
            record = await BindingRepository(session).active_binding(principal_id, role.id)
            if record is None:
                raise BindingNotFound(principal_id, role_name)
            return _to_binding(record, role.name)

    async def revoke(
        self, principal_id: str, role_name: str, revoked_by: str | None = None
    ) -> None:
        """Deactivate a principal's active binding to a role.

        Raises:
            PrincipalNotFound: unknown principal.
            RoleNotFound: unknown role.
            BindingNotFound: the principal does not currently hold the role.
        """
        async with self._principal_locks[principal_id]:
            try:
                async with self._db.session() as session:
                    user = await PrincipalRepository(session).get_for_update(principal_id)
                    if user is None:
                        raise PrincipalNotFound(principal_id)
                    role = await RoleRepository(session).get_by_name(role_name)
                    if role is None:
                        raise RoleNotFound(role_name)
                    repo = BindingRepository(session)
                    record = await repo.active_binding(user.id, role.id)
                    if record is None:
                        raise BindingNotFound(principal_id, role_name)
                    await repo.deactivate(record, revoked_by=revoked_by)
            except DBAPIError as e:
                raise StoreUnavailable(f"revoke {role_name} from {principal_id} failed") from e

        logger.info("Role %s revoked from %s by %s", role_name, principal_id, revoked_by)
        await self._emit(
            Events.BINDING_REVOKED,
            {"principal_id": principal_id, "role": role_name, "by": revoked_by},
        )

    async def replace_all_roles(
        self, principal_id: str, role_names: Iterable[str], granted_by: str
    ) -> set[str]:
        """Set a principal's active roles to exactly ``role_names``.

        Revocations and grants commit in one transaction, so a concurrent
        reader sees either the old set or the new one, never a mix.

        Returns:
            The principal's active role names after the change.

        Raises:
            PrincipalNotFound: unknown principal.
            RoleNotFound: any target role is unknown; nothing is changed.
        """
        target = set(role_names)
        async with self._principal_locks[principal_id]:
            try:
                async with self._db.session() as session:
                    user = await PrincipalRepository(session).get_for_update(principal_id)
                    if user is None:
                        raise PrincipalNotFound(principal_id)

                    role_repo = RoleRepository(session)
                    roles = {}
                    for name in sorted(target):
                        role = await role_repo.get_by_name(name)
                        if role is None:
                            raise RoleNotFound(name)
                        roles[name] = role

                    repo = BindingRepository(session)
                    active = {b.role.name: b for b in await repo.active_bindings(user.id)}
                    removed = sorted(set(active) - target)
                    added = sorted(target - set(active))
                    for name in removed:
                        await repo.deactivate(active[name], revoked_by=granted_by)
                    for name in added:
                        await repo.create(user.id, roles[name].id, assigned_by=granted_by)
            except IntegrityError as e:
                raise StoreUnavailable(
                    f"concurrent binding write for {principal_id}; replace aborted"
                ) from e
            except DBAPIError as e:
                raise StoreUnavailable(f"replace roles for {principal_id} failed") from e

        if added or removed:
            logger.info(
                "Roles replaced for %s by %s: +%s -%s",
                principal_id,
                granted_by,
                added,
                removed,
            )
            await self._emit(
                Events.BINDINGS_REPLACED,
                {
                    "principal_id": principal_id,
                    "added": added,
                    "removed": removed,
                    "by": granted_by,
                },
            )
        return target

    # ====================== Reads ======================

    async def list_active_roles(self, principal_id: str) -> set[str]:
        """Names of the roles a principal currently holds.

        Raises:
            PrincipalNotFound: unknown principal.
            StoreUnavailable: the store could not be read.
        """

        async def _read() -> set[str] | None:
            async with self._db.session() as session:
                user = await PrincipalRepository(session).get(principal_id)
                if user is None:
                    return None
                return await BindingRepository(session).active_role_names(user.id)

        names = await read_with_retry(_read, self._retry, "active role read")
        if names is None:
            raise PrincipalNotFound(principal_id)
        return names

    async def active_roles_for_check(self, principal_id: str) -> set[str]:
        """Active role names for an authorization decision.

        Unknown and deactivated principals hold nothing.
        """

        async def _read() -> set[str]:
            async with self._db.session() as session:
                user = await PrincipalRepository(session).get(principal_id)
                if user is None or not user.is_active:
                    return set()
                return await BindingRepository(session).active_role_names(user.id)

        return await read_with_retry(_read, self._retry, "active role read")

    async def list_bindings(
        self, principal_id: str, include_inactive: bool = True
    ) -> list[RoleBinding]:
        """Binding history for a principal, oldest first."""

        async def _read() -> list[RoleBinding] | None:
            async with self._db.session() as session:
                user = await PrincipalRepository(session).get(principal_id)
                if user is None:
                    return None
                records = await BindingRepository(session).list_for_user(
                    user.id, include_inactive=include_inactive
                )
                return [_to_binding(r, r.role.name) for r in records]

        bindings = await read_with_retry(_read, self._retry, "binding history read")
        if bindings is None:
            raise PrincipalNotFound(principal_id)
        return bindings

    async def principals_without_roles(self) -> list[str]:
        async def _read() -> list[str]:
            async with self._db.session() as session:
                users = await PrincipalRepository(session).without_active_bindings()
                return [u.id for u in users]

        return await read_with_retry(_read, self._retry, "unbound principal read")

    async def _emit(self, event_type: str, payload: dict) -> None:
        if self._event_bus is not None:
            await self._event_bus.emit(event_type, payload)
