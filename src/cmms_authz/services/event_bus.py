"""In-process async event bus carrying role and binding changes.

Stores emit after their transaction commits; the authorization engine
subscribes to drop cached permission sets. Emission awaits every handler,
so by the time a grant/revoke call returns, caches have been invalidated.

Usage:
    bus = EventBus()
    bus.on(Events.BINDING_GRANTED, handler, critical=True)
    await bus.emit(Events.BINDING_GRANTED, {"principal_id": "u-1", "role": "USER"})
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine

logger = logging.getLogger("cmms_authz.events")

EventHandler = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]


class Events:
    """Event type constants.

    Naming convention: <entity>.<action>
    """

    ROLE_CREATED = "role.created"
    ROLE_UPDATED = "role.updated"
    # Role definitions changed in another process
    ROLE_RELOADED = "role.reloaded"

    BINDING_GRANTED = "binding.granted"
    BINDING_REVOKED = "binding.revoked"
    BINDINGS_REPLACED = "bindings.replaced"

    ROLE_EVENTS = (ROLE_CREATED, ROLE_UPDATED, ROLE_RELOADED)
    BINDING_EVENTS = (BINDING_GRANTED, BINDING_REVOKED, BINDINGS_REPLACED)


@dataclass
class Event:
    """Structured event payload."""

    type: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class _Subscription:
    handler: EventHandler
    critical: bool


class EventBus:
    """Simple in-process async event bus.

    Ordinary handlers are isolated: a failure is logged and does not
    affect other handlers. Critical handlers (cache invalidation) still
    run alongside the others, but their failure is re-raised to the
    emitter, because silently skipping an invalidation would leave a
    stale permission set in place.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[_Subscription]] = defaultdict(list)
        self._event_log: list[Event] = []
        self._max_log_size = 100

    def on(self, event_type: str, handler: EventHandler, critical: bool = False) -> None:
        self._handlers[event_type].append(_Subscription(handler, critical))
        logger.debug("Registered handler %s for event '%s'", handler.__name__, event_type)

    def off(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type] = [
            s for s in self._handlers.get(event_type, []) if s.handler is not handler
        ]

    async def emit(self, event_type: str, payload: dict[str, Any] | None = None) -> None:
        """Emit an event and wait for every handler to finish."""
        if payload is None:
            payload = {}

        event = Event(type=event_type, payload=payload)
        self._event_log.append(event)
        if len(self._event_log) > self._max_log_size:
            self._event_log = self._event_log[-self._max_log_size:]

        subscriptions = list(self._handlers.get(event_type, []))
        if not subscriptions:
            logger.debug("No handlers for event '%s'", event_type)
            return

        results = await asyncio.gather(
            *(s.handler(payload) for s in subscriptions),
            return_exceptions=True,
        )
        critical_error: BaseException | None = None
        for sub, result in zip(subscriptions, results):
            if not isinstance(result, BaseException):
                continue
            if sub.critical:
                logger.error(
                    "Critical handler %s failed for '%s'",
                    sub.handler.__name__,
                    event_type,
                    exc_info=result,
                )
                critical_error = critical_error or result
            else:
                logger.warning(
                    "Event handler %s failed for '%s'",
                    sub.handler.__name__,
                    event_type,
                    exc_info=result,
                )
        if critical_error is not None:
            raise critical_error

    @property
    def handler_count(self) -> int:
        return sum(len(h) for h in self._handlers.values())

    @property
    def recent_events(self) -> list[dict]:
        return [e.to_dict() for e in self._event_log[-20:]]

    def clear_handlers(self) -> None:
        """Remove all handlers. Useful for testing."""
        self._handlers.clear()

    def stats(self) -> dict:
        return {
            "registered_handlers": self.handler_count,
            "event_types": sorted(k for k, v in self._handlers.items() if v),
            "recent_event_count": len(self._event_log),
        }
