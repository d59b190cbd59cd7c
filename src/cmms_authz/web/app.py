"""FastAPI application exposing the RBAC administrative surface.

Principals arrive already authenticated; the resolver configured under
``principal`` reads the id off each request. Every administrative route
is gated on system:admin through RbacAdmin.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from cmms_authz.auth.errors import (
    ConfigurationError,
    Forbidden,
    NotFound,
    RoleAlreadyExists,
    StoreUnavailable,
)
from cmms_authz.bootstrap import AppContext, bootstrap

logger = logging.getLogger("cmms_authz.web")

VERSION = "0.1.0"


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


async def get_current_principal(request: Request) -> str:
    """Principal id resolved by the middleware. Raises 401 if absent."""
    principal_id = getattr(request.state, "principal_id", None)
    if principal_id is None:
        principal_id = await get_ctx(request).resolver.resolve(request)
        request.state.principal_id = principal_id
    if not principal_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return principal_id


# ============================================================
# Error mapping
# ============================================================


async def _forbidden_handler(request: Request, exc: Forbidden):
    return JSONResponse(status_code=403, content={"detail": "Forbidden"})


async def _not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _conflict_handler(request: Request, exc: RoleAlreadyExists):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


async def _fault_handler(request: Request, exc: Exception):
    # Configuration bugs and store outages: full context in the log, nothing to the client.
    logger.error(
        "Authorization fault on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=exc,
    )
    return JSONResponse(status_code=403, content={"detail": "Forbidden"})


def _install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(Forbidden, _forbidden_handler)
    app.add_exception_handler(NotFound, _not_found_handler)
    app.add_exception_handler(RoleAlreadyExists, _conflict_handler)
    app.add_exception_handler(ConfigurationError, _fault_handler)
    app.add_exception_handler(StoreUnavailable, _fault_handler)


# ============================================================
# Health
# ============================================================


async def _check_database(ctx: AppContext) -> dict:
    try:
        start = time.monotonic()
        await ctx.db.ping()
        latency_ms = round((time.monotonic() - start) * 1000, 1)
        return {"status": "up", "latency_ms": latency_ms}
    except Exception as e:
        return {"status": "down", "error": str(e)[:100]}


async def health_check(request: Request):
    """Health check endpoint; no principal required."""
    ctx = get_ctx(request)
    db_check = await _check_database(ctx)
    checks = {
        "database": db_check,
        "cache": {"status": "up", **ctx.cache.stats},
        "event_bus": {"status": "up", **ctx.event_bus.stats()},
    }
    status = "healthy" if db_check["status"] == "up" else "unhealthy"
    return JSONResponse(
        status_code=200 if status == "healthy" else 503,
        content={
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": VERSION,
            "checks": checks,
        },
    )


# ============================================================
# App factory
# ============================================================


def create_app(ctx: AppContext | None = None) -> FastAPI:
    """Build the application.

    With no ``ctx`` the lifespan bootstraps one from configuration and
    closes its database on shutdown; a supplied context is left open for
    its owner.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        owned = ctx is None
        app.state.ctx = ctx or bootstrap()
        logger.info("cmms-authz web server started")
        yield
        if owned:
            await app.state.ctx.close()
        logger.info("cmms-authz web server stopped")

    app = FastAPI(
        title="cmms-authz",
        description="Role-based access control for the maintenance application",
        version=VERSION,
        lifespan=lifespan,
    )
    if ctx is not None:
        app.state.ctx = ctx

    from cmms_authz.web.middleware import resolve_principal
    from cmms_authz.web.routes import mount_all

    app.middleware("http")(resolve_principal)
    _install_error_handlers(app)
    app.add_api_route("/health", health_check, methods=["GET"])

    v1_router = APIRouter(prefix="/api/v1")
    mount_all(v1_router)
    app.include_router(v1_router)
    return app


def main() -> None:
    ctx = bootstrap()
    logging.basicConfig(
        level=getattr(logging, ctx.settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(), host=ctx.settings.web.host, port=ctx.settings.web.port)


if __name__ == "__main__":
    main()
