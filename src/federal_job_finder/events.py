"""In-process pub/sub channel for sync and connectivity notifications."""

import asyncio
import threading
from collections import defaultdict
from typing import Any, AsyncIterator, Callable

from loguru import logger

CONNECTIVITY_CHANGED = "connectivity_changed"
SYNC_STATE_CHANGED = "sync_state_changed"
SYNC_STARTED = "sync_started"
SYNC_COMPLETED = "sync_completed"
SYNC_ITEM_FAILED = "sync_item_failed"
CACHED_COUNT_CHANGED = "cached_count_changed"

ALL_TOPICS = "*"

Event = dict[str, Any]
Handler = Callable[[str, Event], None]


class EventChannel:
    """Topic-routed event channel with callback and async-stream subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Subscribe a handler to a topic ("*" for all). Returns an unsubscribe callable."""
        with self._lock:
            self._subscribers[topic].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._subscribers[topic]:
                    self._subscribers[topic].remove(handler)

        return unsubscribe

    def publish(self, topic: str, event: Event | None = None) -> None:
        """Deliver an event to the topic's handlers and to "*" handlers."""
        payload = event or {}
        handlers: list[Handler] = []
        with self._lock:
            handlers.extend(self._subscribers.get(topic, []))
            handlers.extend(self._subscribers.get(ALL_TOPICS, []))
        for handler in handlers:
            try:
                handler(topic, payload)
            except Exception as exc:
                logger.error(f"Event handler failed for topic '{topic}': {exc}")

    async def stream(self, topic: str = ALL_TOPICS) -> AsyncIterator[tuple[str, Event]]:
        """Yield (topic, event) pairs as they are published, until cancelled.

        Safe to publish from any thread; delivery is marshalled onto the
        loop that iterates the stream.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[tuple[str, Event]] = asyncio.Queue()
        unsubscribe = self.subscribe(
            topic, lambda t, e: loop.call_soon_threadsafe(queue.put_nowait, (t, e))
        )
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
