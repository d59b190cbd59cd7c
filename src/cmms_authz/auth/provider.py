"""Principal resolution for incoming requests.

Authentication happens upstream; by the time a request reaches this
package its principal has already been established. A resolver only
reads that identity off the request.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from fastapi import Request

logger = logging.getLogger("cmms_authz.auth")


class PrincipalResolver(ABC):
    """Abstract principal resolver interface."""

    @abstractmethod
    async def resolve(self, request: Request) -> str | None:
        """Return the authenticated principal id, or None if absent."""
        ...


class TrustedHeaderResolver(PrincipalResolver):
    """Reads the principal id from a header set by the authenticating proxy."""

    def __init__(self, header: str = "X-Principal-Id"):
        self.header = header

    async def resolve(self, request: Request) -> str | None:
        value = request.headers.get(self.header, "").strip()
        return value or None


class StaticPrincipalResolver(PrincipalResolver):
    """Every request is the same principal. Development only."""

    def __init__(self, principal_id: str):
        self.principal_id = principal_id

    async def resolve(self, request: Request) -> str | None:
        return self.principal_id


def create_principal_resolver(
    resolver_type: str,
    header: str = "X-Principal-Id",
    static_principal_id: str | None = None,
) -> PrincipalResolver:
    """Factory function to create a principal resolver."""
    if resolver_type == "header":
        return TrustedHeaderResolver(header)
    elif resolver_type == "static":
        if not static_principal_id:
            raise ValueError("static_principal_id required for static resolver")
        logger.warning("Static principal resolver active: every request is %s", static_principal_id)
        return StaticPrincipalResolver(static_principal_id)
    else:
        raise ValueError(f"Unknown principal resolver: {resolver_type}")
