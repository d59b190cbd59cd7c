"""Route modules aggregated for v1 API. Exports mount_all to wire sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from cmms_authz.web.routes import me, rbac


def mount_all(parent_router: APIRouter) -> None:
    """Include all sub-routers on the given parent (v1 router)."""
    parent_router.include_router(rbac.router)
    parent_router.include_router(me.router)
