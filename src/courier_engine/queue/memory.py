"""In-process delivery queue for tests and single-node development.

Not durable: pending jobs are lost on restart. Use the database queue in
anything resembling production.
"""

import asyncio
import heapq
import itertools
import time
from typing import Callable, Optional

from courier_engine.common.models import generate_uuid
from courier_engine.queue.base import DeliveryJob, DeliveryQueue


class InMemoryDeliveryQueue(DeliveryQueue):
    """Heap of jobs ordered by the time they become visible."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, nack_delay: float = 5.0):
        self._clock = clock
        self._heap: list[tuple[float, int, DeliveryJob]] = []
        self._seq = itertools.count()
        self._in_flight: dict[str, DeliveryJob] = {}
        self._lock = asyncio.Lock()
        self.nack_delay = nack_delay

    async def enqueue(self, delivery_id: str, delay: float = 0.0) -> DeliveryJob:
        job = DeliveryJob(id=generate_uuid(), delivery_id=delivery_id, receive_count=0)
        async with self._lock:
            heapq.heappush(self._heap, (self._clock() + max(delay, 0.0), next(self._seq), job))
        return job

    async def dequeue(self) -> Optional[DeliveryJob]:
        async with self._lock:
            if not self._heap or self._heap[0][0] > self._clock():
                return None
            _, _, job = heapq.heappop(self._heap)
            leased = DeliveryJob(
                id=job.id, delivery_id=job.delivery_id,
                receive_count=job.receive_count + 1,
            )
            self._in_flight[leased.id] = leased
            return leased

    async def ack(self, job: DeliveryJob) -> None:
        async with self._lock:
            self._in_flight.pop(job.id, None)

    async def nack(self, job: DeliveryJob, delay: float = 0.0) -> None:
        async with self._lock:
            leased = self._in_flight.pop(job.id, job)
            heapq.heappush(self._heap, (self._clock() + max(delay, 0.0), next(self._seq), leased))

    def pending_count(self) -> int:
        return len(self._heap)

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def scheduled(self) -> list[tuple[float, str]]:
        """(visible_at, delivery_id) for every queued job, soonest first."""
        return [(ready_at, job.delivery_id) for ready_at, _, job in sorted(self._heap)]
