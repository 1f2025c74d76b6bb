"""Event bus and state snapshot streams for session observers."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, TypeVar

from glasslink.common.logging import get_logger

T = TypeVar("T")


@dataclass
class Event:
    """Event message."""

    topic: str
    data: dict[str, Any]
    source: str
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)


EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """In-process pub/sub for transcripts and tool-call activity.

    Topics used by the session core:
    - ``session.transcript``: model or user transcript text
    - ``tool.started`` / ``tool.completed`` / ``tool.failed`` /
      ``tool.cancelled``: tool-call lifecycle

    Handlers run concurrently; a failing handler is logged and never
    affects the publisher or the other handlers.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = {}
        self._wildcard_subscribers: list[tuple[str, EventHandler]] = []
        self.logger = get_logger("event_bus")

    async def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers."""
        self.logger.debug(
            "publishing_event",
            topic=event.topic,
            event_id=event.event_id,
            source=event.source,
        )

        handlers = list(self._subscribers.get(event.topic, []))
        handlers.extend(
            handler
            for pattern, handler in self._wildcard_subscribers
            if matches_topic(event.topic, pattern)
        )

        if handlers:
            await asyncio.gather(
                *[self._safe_dispatch(handler, event) for handler in handlers],
            )

    async def emit(self, topic: str, source: str, **data: Any) -> None:
        """Shorthand for publishing an event built from keyword data."""
        await self.publish(Event(topic=topic, data=data, source=source))

    async def _safe_dispatch(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except Exception as e:
            self.logger.exception(
                "event_handler_error",
                topic=event.topic,
                event_id=event.event_id,
                error=str(e),
            )

    def subscribe(
        self,
        topic: str,
        handler: EventHandler | None = None,
    ) -> Callable[[EventHandler], EventHandler] | Callable[[], None]:
        """Subscribe to events on a topic.

        Can be used as a decorator or called directly.

        Args:
            topic: Topic to subscribe to. Supports wildcards (* and **).
            handler: Async function to handle events (optional for decorator use).

        Returns:
            Decorator (when handler is None) or unsubscribe function.
        """
        if handler is not None:
            return self._register(topic, handler)

        def decorator(fn: EventHandler) -> EventHandler:
            self._register(topic, fn)
            return fn

        return decorator

    def _register(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        if "*" in topic:
            entry = (topic, handler)
            self._wildcard_subscribers.append(entry)

            def unsubscribe() -> None:
                if entry in self._wildcard_subscribers:
                    self._wildcard_subscribers.remove(entry)

        else:
            self._subscribers.setdefault(topic, []).append(handler)

            def unsubscribe() -> None:
                handlers = self._subscribers.get(topic, [])
                if handler in handlers:
                    handlers.remove(handler)

        self.logger.debug("subscribed", topic=topic)
        return unsubscribe


def matches_topic(topic: str, pattern: str) -> bool:
    """Check if a dotted topic matches a wildcard pattern.

    ``*`` matches exactly one segment, ``**`` matches one or more.
    """
    topic_parts = topic.split(".")
    pattern_parts = pattern.split(".")

    i, j = 0, 0
    while i < len(topic_parts) and j < len(pattern_parts):
        if pattern_parts[j] == "**":
            if j == len(pattern_parts) - 1:
                return True
            rest = ".".join(pattern_parts[j + 1 :])
            return any(
                matches_topic(".".join(topic_parts[k:]), rest)
                for k in range(i + 1, len(topic_parts))
            )
        if pattern_parts[j] not in ("*", topic_parts[i]):
            return False
        i += 1
        j += 1

    return i == len(topic_parts) and j == len(pattern_parts)


_CLOSED = object()


class StateStream(Generic[T]):
    """Latest-value channel for immutable state snapshots.

    Each subscriber first receives the current snapshot, then every
    snapshot published after it subscribed, in order. Iteration ends when
    the stream is closed.

    Example:
        async for snapshot in session.updates.subscribe():
            render(snapshot)
    """

    def __init__(self, initial: T) -> None:
        self._latest = initial
        self._queues: list[asyncio.Queue[Any]] = []
        self._closed = False

    @property
    def latest(self) -> T:
        """Most recently published snapshot."""
        return self._latest

    def publish(self, snapshot: T) -> None:
        """Publish a new snapshot to every subscriber."""
        self._latest = snapshot
        for queue in self._queues:
            queue.put_nowait(snapshot)

    def close(self) -> None:
        """End every active subscription."""
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(_CLOSED)

    async def subscribe(self) -> AsyncIterator[T]:
        """Yield the latest snapshot, then each subsequent one."""
        queue: asyncio.Queue[Any] = asyncio.Queue()
        queue.put_nowait(self._latest)
        if self._closed:
            queue.put_nowait(_CLOSED)
        self._queues.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            self._queues.remove(queue)
