"""
Per-trip message ordering.

Each trip gets a FIFO and at most one worker task draining it. Trips never
wait on each other. A message whose processing raises is logged and dropped
so one bad message cannot wedge its trip.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from voyaj.store.records import InboundMessage

logger = logging.getLogger(__name__)

Processor = Callable[[int, InboundMessage], Awaitable[Any]]


class PerTripSequencer:
    def __init__(self, process: Processor):
        self._process = process
        self._queues: Dict[int, Deque[InboundMessage]] = {}
        self._workers: Dict[int, asyncio.Task] = {}
        self.processed = 0
        self.failed = 0

    def enqueue(self, trip_id: int, message: InboundMessage) -> int:
        """Queue ``message`` for ``trip_id``. Returns the trip's queue length."""
        queue = self._queues.setdefault(trip_id, deque())
        queue.append(message)
        if trip_id not in self._workers:
            self._workers[trip_id] = asyncio.get_running_loop().create_task(
                self._drain(trip_id), name=f"trip-{trip_id}-worker",
            )
        return len(queue)

    async def _drain(self, trip_id: int):
        queue = self._queues[trip_id]
        try:
            while queue:
                message = queue[0]
                try:
                    await self._process(trip_id, message)
                    self.processed += 1
                except Exception as e:
                    self.failed += 1
                    logger.exception(f"Dropping message for trip {trip_id} from {message.from_phone}: {e}")
                finally:
                    queue.popleft()
        finally:
            # No await between the empty check and this cleanup, so a
            # concurrent enqueue either lands in the queue above or starts a new worker
            self._workers.pop(trip_id, None)
            if not queue:
                self._queues.pop(trip_id, None)

    def pending_trip_for(self, phone_number: str) -> Optional[int]:
        """A trip holding a queued or in-flight message from ``phone_number``."""
        for trip_id, queue in self._queues.items():
            if any(message.from_phone == phone_number for message in queue):
                return trip_id
        return None

    def queue_length(self, trip_id: int) -> int:
        return len(self._queues.get(trip_id, ()))

    def is_processing(self, trip_id: int) -> bool:
        return trip_id in self._workers

    @property
    def active_trips(self) -> int:
        return len(self._workers)

    def stats(self) -> Dict[str, int]:
        return {
            "active_trips": self.active_trips,
            "queued": sum(len(q) for q in self._queues.values()),
            "processed": self.processed,
            "failed": self.failed,
        }

    async def join(self, trip_id: Optional[int] = None):
        """Wait until the given trip's queue, or every queue, is empty."""
        while True:
            if trip_id is not None:
                worker = self._workers.get(trip_id)
                workers = [worker] if worker else []
            else:
                workers = list(self._workers.values())
            if not workers:
                return
            await asyncio.gather(*workers, return_exceptions=True)

    async def shutdown(self):
        for worker in list(self._workers.values()):
            worker.cancel()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
