"""Bounded, retried reads against the role/binding store.

Only reads go through here: they are idempotent and safe to retry with
backoff. Writes (grant/revoke/replace) are never retried automatically.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from cmms_authz.auth.errors import StoreUnavailable

logger = logging.getLogger("cmms_authz.store")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How hard to try a store read before failing closed."""

    retries: int = 2
    base_delay: float = 0.05
    timeout: float | None = 2.0

    @property
    def attempts(self) -> int:
        return self.retries + 1


async def read_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    what: str = "store read",
) -> T:
    """Run ``operation`` with a per-attempt timeout and exponential backoff.

    Raises:
        StoreUnavailable: every attempt failed or timed out.
    """
    last_exc: BaseException | None = None
    for attempt in range(policy.attempts):
        try:
            if policy.timeout is not None:
                return await asyncio.wait_for(operation(), timeout=policy.timeout)
            return await operation()
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            last_exc = e
            logger.warning(
                "%s failed (attempt %d/%d): %r",
                what,
                attempt + 1,
                policy.attempts,
                e,
            )
        # Exponential backoff: base, 2*base, 4*base, ...
        if attempt < policy.attempts - 1:
            await asyncio.sleep(policy.base_delay * 2 ** attempt)

    raise StoreUnavailable(
        f"{what} failed after {policy.attempts} attempt(s)"
    ) from last_exc
