"""Tests for principal resolvers."""

import pytest
from starlette.requests import Request

from cmms_authz.auth.provider import (
    StaticPrincipalResolver,
    TrustedHeaderResolver,
    create_principal_resolver,
)


def _request(headers: dict | None = None) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw})


class TestTrustedHeaderResolver:
    @pytest.mark.asyncio
    async def test_reads_header(self):
        resolver = TrustedHeaderResolver()
        assert await resolver.resolve(_request({"X-Principal-Id": "u-1"})) == "u-1"

    @pytest.mark.asyncio
    async def test_missing_or_blank(self):
        resolver = TrustedHeaderResolver()
        assert await resolver.resolve(_request()) is None
        assert await resolver.resolve(_request({"X-Principal-Id": "   "})) is None

    @pytest.mark.asyncio
    async def test_custom_header(self):
        resolver = TrustedHeaderResolver("X-Forwarded-User")
        assert await resolver.resolve(_request({"X-Forwarded-User": " alice "})) == "alice"
        assert await resolver.resolve(_request({"X-Principal-Id": "u-1"})) is None


class TestStaticPrincipalResolver:
    @pytest.mark.asyncio
    async def test_always_same_principal(self):
        resolver = StaticPrincipalResolver("dev-admin")
        assert await resolver.resolve(_request()) == "dev-admin"


class TestCreatePrincipalResolver:
    def test_header(self):
        resolver = create_principal_resolver("header", header="X-User")
        assert isinstance(resolver, TrustedHeaderResolver)
        assert resolver.header == "X-User"

    def test_static(self):
        resolver = create_principal_resolver("static", static_principal_id="dev")
        assert isinstance(resolver, StaticPrincipalResolver)

    def test_static_requires_id(self):
        with pytest.raises(ValueError, match="static_principal_id"):
            create_principal_resolver("static")

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown principal resolver"):
            create_principal_resolver("jwt")
