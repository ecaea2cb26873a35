"""Async event bus connecting the enrichment pipeline to its observers."""

import asyncio
import inspect
import weakref
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

# Bus event type -> message name seen by popup/page observers
WIRE_NAMES = {
    "task.update": "backgroundTaskUpdate",
    "task.review": "backgroundTaskReview",
    "task.complete": "backgroundTaskComplete",
    "task.error": "backgroundTaskError",
}


@dataclass
class Event:
    """Base event class."""
    type: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.utcnow)
    source: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        """Render as an observer-facing broadcast message."""
        return {"action": WIRE_NAMES.get(self.type, self.type), **self.data}


class EventBus:
    """
    Async pub/sub event bus for in-process communication.

    Event types follow pattern: category.action
    Examples: task.update, task.complete

    Publishing never waits on subscribers: events are queued and fanned
    out by a processor task. Observers that are not subscribed when an
    event goes out simply never see it.
    """

    def __init__(self, maxsize: int = 1000):
        self._subscribers: Dict[str, List[weakref.ref]] = defaultdict(list)
        self._event_queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._running = False
        self._processor_task: Optional[asyncio.Task] = None
        self._stats = defaultdict(int)

    def subscribe(self, event_pattern: str, handler: Callable[[Event], Any]) -> None:
        """
        Subscribe to events matching pattern.
        Pattern can use wildcards: 'task.*' matches all task events.
        Handlers are held weakly; keep a reference for as long as you listen.
        """
        if inspect.ismethod(handler):
            handler_ref = weakref.WeakMethod(handler)
        else:
            handler_ref = weakref.ref(handler)
        self._subscribers[event_pattern].append(handler_ref)
        logger.debug(f"Subscribed handler to pattern: {event_pattern}")

    def unsubscribe(self, event_pattern: str, handler: Callable[[Event], Any]) -> None:
        """Unsubscribe handler from event pattern."""
        self._subscribers[event_pattern] = [
            ref for ref in self._subscribers[event_pattern]
            if ref() is not None and ref() != handler
        ]

    def subscriber_count(self, event_pattern: Optional[str] = None) -> int:
        patterns = [event_pattern] if event_pattern else list(self._subscribers)
        return sum(
            1 for pattern in patterns
            for ref in self._subscribers.get(pattern, [])
            if ref() is not None
        )

    def publish(self, event: Event) -> bool:
        """
        Queue an event without waiting.
        Returns True if queued, False if the queue was full and it was dropped.
        """
        try:
            self._event_queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Event queue full, dropping event: {event.type}")
            self._stats['dropped'] += 1
            return False
        self._stats['emitted'] += 1
        logger.debug(f"Emitted event: {event.type}")
        return True

    async def start(self) -> None:
        """Start the event processor."""
        if self._running:
            logger.warning("Event bus already running")
            return

        self._running = True
        self._processor_task = asyncio.create_task(self._process_events())
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the event processor."""
        self._running = False
        if self._processor_task:
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
            self._processor_task = None
        logger.info("Event bus stopped")

    async def wait_idle(self) -> None:
        """Wait until every queued event has been delivered."""
        await self._event_queue.join()

    async def _process_events(self) -> None:
        """Process events from the queue."""
        while self._running:
            event = await self._event_queue.get()
            try:
                await self._dispatch(event)
                self._stats['processed'] += 1
            except Exception as e:
                logger.error(f"Error processing event {event.type}: {e}")
                self._stats['processing_errors'] += 1
            finally:
                self._event_queue.task_done()

    async def _dispatch(self, event: Event) -> None:
        handlers = []
        for pattern, refs in list(self._subscribers.items()):
            if not self._matches_pattern(event.type, pattern):
                continue
            # Clean up dead weak references
            valid_refs = []
            for ref in refs:
                handler = ref()
                if handler is not None:
                    handlers.append(handler)
                    valid_refs.append(ref)
            self._subscribers[pattern] = valid_refs

        if not handlers:
            return

        pending = []
        for handler in handlers:
            try:
                result = handler(event)
            except Exception as e:
                logger.error(f"Handler error for event {event.type}: {e}")
                self._stats['handler_errors'] += 1
                continue
            if inspect.isawaitable(result):
                pending.append(result)

        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Handler error for event {event.type}: {result}")
                self._stats['handler_errors'] += 1

    def _matches_pattern(self, event_type: str, pattern: str) -> bool:
        """Check if event type matches subscription pattern."""
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            prefix = pattern[:-2]
            return event_type.startswith(prefix + ".")
        return event_type == pattern

    def get_stats(self) -> Dict[str, int]:
        """Get event bus statistics."""
        return dict(self._stats)
