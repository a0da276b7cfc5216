"""
In-process pub/sub for trip events.

publish() calls subscribers synchronously, in registration order. A
subscriber that returns a coroutine has it scheduled as a task, so the
publisher never waits on entry-action delivery. drain() awaits whatever is
still in flight.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Hashable, List, Optional, Set, Tuple

from voyaj.store.records import utcnow

logger = logging.getLogger(__name__)

STAGE_CHANGED = "stage_changed"
MEMBER_JOINED = "member_joined"
VOTE_RECORDED = "vote_recorded"
FLIGHT_ADDED = "flight_added"


@dataclass(frozen=True)
class StageChanged:
    trip_id: int
    from_stage: str
    to_stage: str
    occurred_at: datetime = field(default_factory=utcnow)
    reason: str = ""

    event_type = STAGE_CHANGED

    @property
    def is_reannouncement(self) -> bool:
        """Raised for a stage the trip was already in (immediate stages)."""
        return self.from_stage == self.to_stage


@dataclass(frozen=True)
class TripEvent:
    event_type: str
    trip_id: int
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


class EventBus:
    def __init__(self):
        self._subscribers: Dict[str, List[Tuple[str, Callable]]] = {}
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event_type: str, handler: Callable, name: Optional[str] = None) -> bool:
        """
        Register ``handler`` for ``event_type``.

        Returns False, and registers nothing, when a handler with the same
        name is already subscribed to that event type.
        """
        name = name or getattr(handler, "__qualname__", repr(handler))
        handlers = self._subscribers.setdefault(event_type, [])
        if any(existing == name for existing, _ in handlers):
            logger.warning(f"Subscriber {name} already registered for {event_type}")
            return False
        handlers.append((name, handler))
        logger.debug(f"Subscribed {name} to {event_type}")
        return True

    def is_subscribed(self, event_type: str, name: str) -> bool:
        return any(existing == name for existing, _ in self._subscribers.get(event_type, []))

    def subscriber_count(self, event_type: str) -> int:
        return len(self._subscribers.get(event_type, []))

    def publish(self, event) -> int:
        """Deliver ``event`` to its subscribers. Returns how many were called."""
        event_type = event.event_type
        handlers = list(self._subscribers.get(event_type, []))
        for name, handler in handlers:
            try:
                result = handler(event)
            except Exception as e:
                logger.exception(f"Subscriber {name} failed on {event_type}: {e}")
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._task_done)
        return len(handlers)

    def _task_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Event subscriber task failed: {error!r}")

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait for scheduled subscriber work, including work it schedules in turn."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class TTLCache:
    """
    Bounded map of keys that expire after ``ttl_seconds``.

    Used as a plain key set (``add(key)`` / ``key in cache``) or as a value
    cache (``add(key, value)`` / ``get(key)``). Expired keys are swept every
    ``sweep_interval`` inserts, and the oldest keys are dropped once
    ``max_size`` is reached.
    """

    def __init__(self, ttl_seconds: float, max_size: int = 1024, sweep_interval: int = 64,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._inserts = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self._live(key) is not None

    def _live(self, key: Hashable) -> Optional[Tuple[float, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry[0] >= self.ttl_seconds:
            del self._entries[key]
            return None
        return entry

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._live(key)
        return entry[1] if entry is not None else default

    def add(self, key: Hashable, value: Any = True):
        self._entries.pop(key, None)
        self._entries[key] = (self._clock(), value)
        self._inserts += 1
        if self._inserts % self.sweep_interval == 0:
            self.evict_expired()
        while len(self._entries) > self.max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (stamp, _) in self._entries.items() if now - stamp >= self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self):
        self._entries.clear()
