"""Process-wide publish/subscribe channel used by the doctor.

Topics are plain strings. Publishing fans out to every subscriber of the
topic concurrently; each subscriber runs under its own timeout so a hung or
failing subscriber never blocks or breaks the publisher.
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

LOGGER = logging.getLogger(__name__)

DIAGNOSTIC_STATUS_TOPIC = "diagnostic-status"
DEFAULT_SUBSCRIBER_TIMEOUT = 10.0

Handler = Callable[[Any], "Awaitable[object] | object"]


@dataclass(slots=True, frozen=True)
class PublishOutcome:
    """Result of delivering one publication to one subscriber."""

    topic: str
    subscriber: str
    ok: bool
    value: object = None
    error: str | None = None
    timed_out: bool = False


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`."""

    def __init__(self, bus: EventBus, topic: str, token: int, handler: Handler) -> None:
        """Bind the handle to its bus entry."""
        self.bus = bus
        self.topic = topic
        self.token = token
        self.handler = handler

    @property
    def active(self) -> bool:
        """Return ``True`` while the handler is still registered."""
        return self.bus.has_subscription(self)

    def cancel(self) -> None:
        """Remove the handler from the bus (idempotent)."""
        self.bus.unsubscribe(self)


class EventBus:
    """Multi-producer / multi-consumer topic bus."""

    def __init__(self, *, subscriber_timeout: float = DEFAULT_SUBSCRIBER_TIMEOUT) -> None:
        """Create an empty bus."""
        self.subscriber_timeout = subscriber_timeout
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)
        self._subscribers: dict[str, dict[int, Handler]] = {}

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        """Register *handler* for *topic*; it stays registered until cancelled."""
        token = next(self._tokens)
        with self._lock:
            self._subscribers.setdefault(topic, {})[token] = handler
        return Subscription(self, topic, token, handler)

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a previously registered handler."""
        with self._lock:
            handlers = self._subscribers.get(subscription.topic)
            if handlers is None:
                return
            handlers.pop(subscription.token, None)
            if not handlers:
                del self._subscribers[subscription.topic]

    def has_subscription(self, subscription: Subscription) -> bool:
        """Return ``True`` when *subscription* is still registered."""
        with self._lock:
            return subscription.token in self._subscribers.get(subscription.topic, {})

    def subscriber_count(self, topic: str) -> int:
        """Return how many handlers are registered for *topic*."""
        with self._lock:
            return len(self._subscribers.get(topic, {}))

    def topics(self) -> list[str]:
        """Return the topics that currently have subscribers."""
        with self._lock:
            return sorted(self._subscribers)

    def clear(self) -> None:
        """Drop every subscription."""
        with self._lock:
            self._subscribers.clear()

    async def publish(
        self,
        topic: str,
        payload: object = None,
        *,
        timeout: float | None = None,
    ) -> list[PublishOutcome]:
        """Deliver *payload* to every subscriber of *topic* and wait for them."""
        with self._lock:
            handlers = list(self._subscribers.get(topic, {}).values())
        if not handlers:
            LOGGER.debug("No subscribers for topic %s", topic)
            return []
        limit = self.subscriber_timeout if timeout is None else timeout
        return list(
            await asyncio.gather(
                *(self._deliver(topic, handler, payload, limit) for handler in handlers)
            )
        )

    async def _deliver(
        self,
        topic: str,
        handler: Handler,
        payload: object,
        limit: float,
    ) -> PublishOutcome:
        name = _handler_name(handler)
        try:
            if inspect.iscoroutinefunction(handler):
                call = handler(payload)
            else:
                # Sync handlers run in a worker thread so the timeout bounds them too.
                call = asyncio.to_thread(handler, payload)
            value = await asyncio.wait_for(call, timeout=limit)
            if inspect.isawaitable(value):
                value = await asyncio.wait_for(value, timeout=limit)
        except TimeoutError:
            LOGGER.warning("Subscriber %s timed out after %.1fs on %s", name, limit, topic)
            return PublishOutcome(
                topic=topic,
                subscriber=name,
                ok=False,
                error=f"timed out after {limit:g}s",
                timed_out=True,
            )
        except Exception as exc:
            LOGGER.warning("Subscriber %s failed on %s: %s", name, topic, exc)
            return PublishOutcome(topic=topic, subscriber=name, ok=False, error=str(exc))
        return PublishOutcome(topic=topic, subscriber=name, ok=True, value=value)


def _handler_name(handler: Handler) -> str:
    name = getattr(handler, "__qualname__", None) or getattr(handler, "__name__", None)
    return str(name or repr(handler))


_default_bus = EventBus()


def get_event_bus() -> EventBus:
    """Return the process-wide event bus."""
    return _default_bus


__all__ = [
    "DEFAULT_SUBSCRIBER_TIMEOUT",
    "DIAGNOSTIC_STATUS_TOPIC",
    "EventBus",
    "PublishOutcome",
    "Subscription",
    "get_event_bus",
]
