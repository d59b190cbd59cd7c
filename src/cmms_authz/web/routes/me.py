"""Caller's own permission snapshot, the feed for the client guard."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from cmms_authz.web.app import get_ctx, get_current_principal

router = APIRouter(tags=["me"])


@router.get("/me/permissions")
async def my_permissions(
    request: Request,
    principal_id: str = Depends(get_current_principal),
):
    """Effective permissions of the calling principal.

    Any authenticated principal may read its own set. Rebuild a
    ClientGuard from the body with ``ClientGuard.from_payload``.
    """
    effective = await get_ctx(request).engine.effective_permissions(principal_id)
    return effective.to_dict()
