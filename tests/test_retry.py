"""Tests for retried store reads."""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from cmms_authz.auth.errors import StoreUnavailable
from cmms_authz.storage.retry import RetryPolicy, read_with_retry


def _flaky(failures: int, result="ok"):
    calls = []

    async def operation():
        calls.append(1)
        if len(calls) <= failures:
            raise OperationalError("SELECT 1", {}, Exception("connection reset"))
        return result

    return operation, calls


class TestReadWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_first_time(self):
        op, calls = _flaky(0)
        assert await read_with_retry(op, RetryPolicy(retries=2, base_delay=0)) == "ok"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        op, calls = _flaky(2)
        assert await read_with_retry(op, RetryPolicy(retries=2, base_delay=0)) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_raises_store_unavailable(self):
        op, calls = _flaky(5)
        with pytest.raises(StoreUnavailable) as exc_info:
            await read_with_retry(op, RetryPolicy(retries=1, base_delay=0), what="role read")
        assert len(calls) == 2
        assert "role read" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, OperationalError)

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        async def hang():
            await asyncio.sleep(10)

        with pytest.raises(StoreUnavailable):
            await read_with_retry(hang, RetryPolicy(retries=0, timeout=0.01))

    @pytest.mark.asyncio
    async def test_other_errors_propagate_unretried(self):
        calls = []

        async def broken():
            calls.append(1)
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await read_with_retry(broken, RetryPolicy(retries=3, base_delay=0))
        assert len(calls) == 1

    def test_attempts(self):
        assert RetryPolicy(retries=2).attempts == 3
        assert RetryPolicy(retries=0).attempts == 1
