"""Durable delivery queue backed by the ``webhook_jobs`` table.

Jobs are leased by setting ``locked_until``; a worker that dies without
acking simply lets the lease expire and the job becomes visible again
(at-least-once). Delayed jobs use ``available_at``.
"""

from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, func, or_, select, update

from courier_engine.common.database import DatabaseManager
from courier_engine.common.models import utcnow
from courier_engine.queue.base import DeliveryJob, DeliveryQueue
from courier_engine.queue.models import DeliveryJobModel


class DatabaseDeliveryQueue(DeliveryQueue):
    """Persisted job table with a polling consumer."""

    def __init__(
        self,
        db: DatabaseManager,
        visibility_timeout: int = 60,
        nack_delay: float = 5.0,
        batch_size: int = 10,
    ):
        self.db = db
        self.visibility_timeout = visibility_timeout
        self.nack_delay = nack_delay
        self.batch_size = batch_size

    async def enqueue(self, delivery_id: str, delay: float = 0.0) -> DeliveryJob:
        job = DeliveryJobModel(
            delivery_id=delivery_id,
            available_at=utcnow() + timedelta(seconds=max(delay, 0.0)),
        )
        async with self.db.get_session() as session:
            session.add(job)
            await session.flush()
            return DeliveryJob(id=job.id, delivery_id=delivery_id, receive_count=0)

    async def dequeue(self) -> Optional[DeliveryJob]:
        now = utcnow()
        visible = or_(
            DeliveryJobModel.locked_until.is_(None),
            DeliveryJobModel.locked_until <= now,
        )
        async with self.db.get_session() as session:
            result = await session.execute(
                select(DeliveryJobModel.id, DeliveryJobModel.delivery_id, DeliveryJobModel.receive_count)
                .where(DeliveryJobModel.available_at <= now, visible)
                .order_by(DeliveryJobModel.available_at.asc())
                .limit(self.batch_size)
            )
            for job_id, delivery_id, receive_count in result.all():
                leased = await session.execute(
                    update(DeliveryJobModel)
                    .where(DeliveryJobModel.id == job_id, visible)
                    .values(
                        locked_until=now + timedelta(seconds=self.visibility_timeout),
                        receive_count=DeliveryJobModel.receive_count + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if leased.rowcount == 1:
                    return DeliveryJob(
                        id=job_id, delivery_id=delivery_id,
                        receive_count=receive_count + 1,
                    )
        return None

    async def ack(self, job: DeliveryJob) -> None:
        async with self.db.get_session() as session:
            await session.execute(
                delete(DeliveryJobModel).where(DeliveryJobModel.id == job.id)
            )

    async def nack(self, job: DeliveryJob, delay: float = 0.0) -> None:
        async with self.db.get_session() as session:
            await session.execute(
                update(DeliveryJobModel)
                .where(DeliveryJobModel.id == job.id)
                .values(
                    available_at=utcnow() + timedelta(seconds=max(delay, 0.0)),
                    locked_until=None,
                )
                .execution_options(synchronize_session=False)
            )

    async def pending_count(self) -> int:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(func.count()).select_from(DeliveryJobModel)
            )
            return result.scalar() or 0
