"""Delivery queue contract.

Any broker that offers at-least-once delivery and delayed jobs can back the
worker pool. Jobs carry only a delivery id; the payload stays in the store.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryJob:
    """A unit of work handed to the delivery worker."""
    id: str
    delivery_id: str
    receive_count: int = 1


JobHandler = Callable[[DeliveryJob], Awaitable[None]]


class DeliveryQueue(ABC):
    """At-least-once job queue with delayed scheduling."""

    nack_delay: float = 5.0

    @abstractmethod
    async def enqueue(self, delivery_id: str, delay: float = 0.0) -> DeliveryJob:
        """Schedule ``delivery_id`` to become visible after ``delay`` seconds."""

    @abstractmethod
    async def dequeue(self) -> Optional[DeliveryJob]:
        """Lease the next visible job, or ``None`` if nothing is due."""

    @abstractmethod
    async def ack(self, job: DeliveryJob) -> None:
        """Remove a finished job."""

    @abstractmethod
    async def nack(self, job: DeliveryJob, delay: float = 0.0) -> None:
        """Return a job to the queue, visible again after ``delay`` seconds."""

    async def process(
        self,
        handler: JobHandler,
        concurrency: int = 10,
        poll_interval: float = 1.0,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Feed jobs to ``handler`` with at most ``concurrency`` in flight.

        A job is acked when the handler returns and nacked when it raises.
        Runs until ``stop_event`` is set, then drains in-flight handlers.
        """
        stop_event = stop_event or asyncio.Event()
        semaphore = asyncio.Semaphore(concurrency)
        in_flight: set[asyncio.Task] = set()

        while not stop_event.is_set():
            await semaphore.acquire()
            job = None
            try:
                job = await self.dequeue()
            except Exception:
                logger.exception("Failed to dequeue delivery job")
            if job is None:
                semaphore.release()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue

            task = asyncio.create_task(self._run(handler, job, semaphore))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)

        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)

    async def _run(self, handler: JobHandler, job: DeliveryJob, semaphore: asyncio.Semaphore) -> None:
        try:
            await handler(job)
        except Exception:
            logger.exception("Delivery job %s failed; returning it to the queue", job.id)
            try:
                await self.nack(job, delay=self.nack_delay)
            except Exception:
                logger.exception("Failed to nack delivery job %s", job.id)
        else:
            try:
                await self.ack(job)
            except Exception:
                logger.exception("Failed to ack delivery job %s", job.id)
        finally:
            semaphore.release()
