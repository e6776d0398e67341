"""Delivery record store — the single source of truth for delivery state.

Every status change goes through ``update_delivery_attempt``, a conditional
UPDATE guarded by the record's current status (compare-and-swap). Nothing
else in the codebase writes to an existing delivery row.
"""

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courier_engine.common.config import CourierSettings
from courier_engine.common.exceptions import InvalidTransitionError, NotFoundError
from courier_engine.common.models import utcnow
from courier_engine.deliveries.models import (
    CLAIMABLE_STATUSES,
    DEAD_LETTER,
    FAILED,
    PENDING,
    PROCESSING,
    RETRYING,
    SUCCESS,
    WebhookDeliveryModel,
)
from courier_engine.endpoints.registry import EndpointSnapshot

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    # Self-transitions only move next_attempt_at (stall sweep reschedule).
    PENDING: frozenset({PROCESSING, PENDING}),
    RETRYING: frozenset({PROCESSING, RETRYING}),
    PROCESSING: frozenset({SUCCESS, RETRYING, FAILED, DEAD_LETTER}),
    SUCCESS: frozenset(),
    FAILED: frozenset(),
    DEAD_LETTER: frozenset(),
}

# Operator-initiated re-delivery of a finished record.
MANUAL_TRANSITIONS: dict[str, frozenset[str]] = {
    FAILED: frozenset({PENDING}),
    DEAD_LETTER: frozenset({PENDING}),
}

MUTABLE_FIELDS: frozenset[str] = frozenset({
    "attempt_count", "first_attempt_at", "last_attempt_at", "next_attempt_at",
    "completed_at", "response_status", "response_body", "response_time_ms",
    "error_code", "error_message",
})


def idempotency_key(endpoint_id: str, event_id: str) -> str:
    """Deterministic key for one (endpoint, event) pairing."""
    return hashlib.sha256(f"{endpoint_id}:{event_id}".encode()).hexdigest()


class DeliveryStore:
    """Persistence operations for ``WebhookDeliveryModel``."""

    def __init__(self, settings: CourierSettings):
        self.settings = settings

    # ── Create ──

    async def create_pending(
        self,
        session: AsyncSession,
        endpoint: EndpointSnapshot,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        delivery_id: str | None = None,
    ) -> WebhookDeliveryModel:
        """Insert a ``pending`` record. Raises ``IntegrityError`` on a duplicate key."""
        delivery = WebhookDeliveryModel(
            endpoint_id=endpoint.id,
            tenant_id=endpoint.tenant_id,
            event_type=event_type,
            event_id=event_id,
            idempotency_key=idempotency_key(endpoint.id, event_id),
            payload=payload,
            status=PENDING,
            attempt_count=0,
            max_attempts=endpoint.retry_policy.max_attempts,
            next_attempt_at=utcnow(),
        )
        if delivery_id is not None:
            delivery.id = delivery_id
        session.add(delivery)
        await session.flush()
        return delivery

    # ── Read ──

    async def get(
        self, session: AsyncSession, delivery_id: str,
        tenant_id: str | None = None,
    ) -> Optional[WebhookDeliveryModel]:
        query = select(WebhookDeliveryModel).where(
            WebhookDeliveryModel.id == delivery_id,
        )
        if tenant_id is not None:
            query = query.where(WebhookDeliveryModel.tenant_id == tenant_id)
        result = await session.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(
        self, session: AsyncSession, key: str,
    ) -> Optional[WebhookDeliveryModel]:
        result = await session.execute(
            select(WebhookDeliveryModel).where(
                WebhookDeliveryModel.idempotency_key == key,
            )
        )
        return result.scalar_one_or_none()

    async def list_deliveries(
        self,
        session: AsyncSession,
        endpoint_id: str | None = None,
        tenant_id: str | None = None,
        event_type: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookDeliveryModel]:
        query = select(WebhookDeliveryModel)
        if endpoint_id is not None:
            query = query.where(WebhookDeliveryModel.endpoint_id == endpoint_id)
        if tenant_id is not None:
            query = query.where(WebhookDeliveryModel.tenant_id == tenant_id)
        if event_type is not None:
            query = query.where(WebhookDeliveryModel.event_type == event_type)
        if status is not None:
            query = query.where(WebhookDeliveryModel.status == status)
        query = query.order_by(WebhookDeliveryModel.created_at.desc())
        query = query.offset(offset).limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())

    # ── Mutation ──

    async def update_delivery_attempt(
        self,
        session: AsyncSession,
        delivery_id: str,
        from_statuses: Iterable[str],
        status: str,
        manual: bool = False,
        **changes: Any,
    ) -> bool:
        """Move a record to ``status`` if it is currently in ``from_statuses``.

        Returns ``False`` when the guard did not match (another writer got
        there first, or the record is gone). Raises ``InvalidTransitionError``
        for transitions the state machine never allows.
        """
        sources = frozenset(from_statuses)
        table = MANUAL_TRANSITIONS if manual else TRANSITIONS
        for source in sources:
            if status not in table.get(source, frozenset()):
                raise InvalidTransitionError(f"Cannot move delivery from {source} to {status}")
        illegal = set(changes) - MUTABLE_FIELDS
        if illegal:
            raise InvalidTransitionError(f"Delivery fields are not mutable: {sorted(illegal)}")

        stmt = update(WebhookDeliveryModel).where(
            WebhookDeliveryModel.id == delivery_id,
            WebhookDeliveryModel.status.in_(sources),
        )
        attempts = changes.get("attempt_count")
        if isinstance(attempts, int):
            stmt = stmt.where(WebhookDeliveryModel.max_attempts >= attempts)
        stmt = stmt.values(status=status, **changes).execution_options(
            synchronize_session=False,
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def claim(
        self, session: AsyncSession, delivery_id: str,
        now: datetime | None = None,
    ) -> Optional[WebhookDeliveryModel]:
        """CAS ``pending|retrying → processing``. ``None`` if someone else owns it."""
        now = now or utcnow()
        claimed = await self.update_delivery_attempt(
            session,
            delivery_id,
            from_statuses=CLAIMABLE_STATUSES,
            status=PROCESSING,
            last_attempt_at=now,
            first_attempt_at=func.coalesce(WebhookDeliveryModel.first_attempt_at, now),
        )
        if not claimed:
            return None
        return await self.get(session, delivery_id)

    async def reset_for_retry(
        self, session: AsyncSession, delivery_id: str,
        tenant_id: str | None = None,
    ) -> WebhookDeliveryModel:
        """Admin retry: back to ``pending`` with a fresh attempt budget."""
        delivery = await self.get(session, delivery_id, tenant_id=tenant_id)
        if delivery is None:
            raise NotFoundError(f"Delivery {delivery_id} not found")
        if delivery.status not in MANUAL_TRANSITIONS:
            raise InvalidTransitionError(
                f"Only failed or dead-lettered deliveries can be retried (status: {delivery.status})"
            )
        reset = await self.update_delivery_attempt(
            session,
            delivery_id,
            from_statuses={delivery.status},
            status=PENDING,
            manual=True,
            attempt_count=0,
            next_attempt_at=utcnow(),
            completed_at=None,
            error_code=None,
            error_message=None,
        )
        if not reset:
            raise InvalidTransitionError(f"Delivery {delivery_id} changed state concurrently")
        return await self.get(session, delivery_id)

    async def recover_stalled(
        self, session: AsyncSession, older_than: timedelta,
        limit: int = 100,
    ) -> list[str]:
        """Find records whose queue job was lost and return their ids for re-enqueue.

        ``processing`` records claimed longer than ``older_than`` ago are moved
        back to ``retrying``; overdue ``pending``/``retrying`` records keep their
        status. Either way ``next_attempt_at`` is reset to now, so a record is
        returned at most once per ``older_than`` window. Re-enqueueing is safe
        because claiming is a CAS.
        """
        now = utcnow()
        cutoff = now - older_than
        result = await session.execute(
            select(WebhookDeliveryModel.id, WebhookDeliveryModel.status)
            .where(
                or_(
                    and_(
                        WebhookDeliveryModel.status == PROCESSING,
                        WebhookDeliveryModel.last_attempt_at < cutoff,
                    ),
                    and_(
                        WebhookDeliveryModel.status.in_(CLAIMABLE_STATUSES),
                        WebhookDeliveryModel.next_attempt_at < cutoff,
                    ),
                )
            )
            .limit(limit)
        )
        recovered: list[str] = []
        for delivery_id, status in result.all():
            if status == PROCESSING:
                moved = await self.update_delivery_attempt(
                    session,
                    delivery_id,
                    from_statuses={PROCESSING},
                    status=RETRYING,
                    next_attempt_at=now,
                    error_code="worker_timeout",
                    error_message="Delivery attempt did not complete; rescheduled",
                )
                if moved:
                    logger.warning("Recovered stalled delivery %s", delivery_id)
            else:
                moved = await self.update_delivery_attempt(
                    session,
                    delivery_id,
                    from_statuses={status},
                    status=status,
                    next_attempt_at=now,
                )
            if moved:
                recovered.append(delivery_id)
        return recovered
