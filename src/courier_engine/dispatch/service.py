"""Dispatcher — turns lifecycle events into pending delivery records and queue jobs."""

import json
import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from courier_engine.common.config import CourierSettings
from courier_engine.common.database import DatabaseManager
from courier_engine.common.models import generate_uuid, utcnow
from courier_engine.conditions.evaluator import evaluate
from courier_engine.deliveries.models import WebhookDeliveryModel
from courier_engine.deliveries.store import DeliveryStore, idempotency_key
from courier_engine.dispatch.schemas import LifecycleEvent
from courier_engine.endpoints.registry import EndpointSnapshot, WebhookRegistry
from courier_engine.queue.base import DeliveryQueue

logger = logging.getLogger(__name__)

TEST_EVENT_TYPE = "webhook.test"


def build_payload(
    delivery_id: str,
    endpoint: EndpointSnapshot,
    event: LifecycleEvent,
) -> dict[str, Any]:
    """Outbound body for one delivery, as a detached JSON-safe snapshot."""
    payload: dict[str, Any] = {
        "id": delivery_id,
        "type": event.event_type,
        "created_at": utcnow().isoformat(),
        "data": event.data,
        "webhook": {"id": endpoint.id, "name": endpoint.name},
        "meta": {
            "tenantId": event.context.tenant_id,
            "userId": event.context.user_id,
            "requestId": event.context.request_id,
        },
    }
    if event.previous is not None:
        payload["previous"] = event.previous
    return json.loads(json.dumps(payload, default=str))


class Dispatcher:
    """Fans a lifecycle event out to every matching endpoint.

    Never raises into the caller: a webhook problem must not fail the
    business operation that emitted the event.
    """

    def __init__(
        self,
        settings: CourierSettings,
        db: DatabaseManager,
        registry: WebhookRegistry,
        store: DeliveryStore,
        queue: DeliveryQueue,
    ):
        self.settings = settings
        self.db = db
        self.registry = registry
        self.store = store
        self.queue = queue

    async def on_lifecycle_event(
        self, event: LifecycleEvent | dict[str, Any],
    ) -> list[WebhookDeliveryModel]:
        """Create (or find) one delivery per matching endpoint and enqueue new ones."""
        if not isinstance(event, LifecycleEvent):
            try:
                event = LifecycleEvent.model_validate(event)
            except ValidationError as exc:
                logger.error("Dropping malformed lifecycle event: %s", exc)
                return []

        tenant_id = event.context.tenant_id
        try:
            async with self.db.get_session() as session:
                endpoints = await self.registry.find_active_for_event(
                    session, tenant_id, event.model, event.event,
                )
        except Exception:
            logger.exception(
                "Endpoint lookup failed for %s (tenant %s); event dropped",
                event.event_type, tenant_id,
            )
            return []

        if not endpoints:
            logger.debug("No webhooks subscribed to %s for tenant %s", event.event_type, tenant_id)
            return []

        deliveries: list[WebhookDeliveryModel] = []
        for endpoint in endpoints:
            try:
                if not evaluate(endpoint.conditions, event, self.registry.predicates):
                    logger.debug(
                        "Conditions rejected %s for endpoint %s", event.event_type, endpoint.id,
                    )
                    continue
                delivery, created = await self._create_delivery(endpoint, event)
            except Exception:
                logger.exception(
                    "Failed to dispatch %s to endpoint %s", event.event_type, endpoint.id,
                )
                continue
            if created:
                await self._enqueue(delivery.id)
            deliveries.append(delivery)
        return deliveries

    async def dispatch_test(
        self, endpoint_id: str, tenant_id: str | None = None,
    ) -> WebhookDeliveryModel:
        """Queue a ``webhook.test`` ping for an endpoint (admin "test" action)."""
        async with self.db.get_session() as session:
            model = await self.registry.require(session, endpoint_id, tenant_id=tenant_id)
            endpoint = EndpointSnapshot.from_model(model)

        event = LifecycleEvent(
            id=f"test-{generate_uuid()}",
            event="test",
            model="webhook",
            data={"message": "Test ping from Courier-Engine"},
            context={"tenant_id": endpoint.tenant_id, "request_id": generate_uuid(), "source": "admin"},
        )
        delivery, _ = await self._create_delivery(endpoint, event)
        await self._enqueue(delivery.id)
        return delivery

    async def redeliver(
        self, delivery_id: str, tenant_id: str | None = None,
    ) -> WebhookDeliveryModel:
        """Admin retry of a failed or dead-lettered delivery."""
        async with self.db.get_session() as session:
            delivery = await self.store.reset_for_retry(session, delivery_id, tenant_id=tenant_id)
        logger.info("Delivery %s reset for manual retry", delivery_id)
        await self._enqueue(delivery.id)
        return delivery

    async def _create_delivery(
        self, endpoint: EndpointSnapshot, event: LifecycleEvent,
    ) -> tuple[WebhookDeliveryModel, bool]:
        """Insert a pending record; on an idempotency-key hit return the existing one."""
        key = idempotency_key(endpoint.id, event.event_id)
        async with self.db.get_session() as session:
            existing = await self.store.get_by_idempotency_key(session, key)
        if existing is not None:
            logger.info(
                "Duplicate %s for endpoint %s; reusing delivery %s",
                event.event_type, endpoint.id, existing.id,
            )
            return existing, False

        delivery_id = generate_uuid()
        payload = build_payload(delivery_id, endpoint, event)
        try:
            async with self.db.get_session() as session:
                delivery = await self.store.create_pending(
                    session,
                    endpoint,
                    event_id=event.event_id,
                    event_type=event.event_type,
                    payload=payload,
                    delivery_id=delivery_id,
                )
            return delivery, True
        except IntegrityError:
            # Lost an insert race with a concurrent dispatch of the same event.
            async with self.db.get_session() as session:
                existing = await self.store.get_by_idempotency_key(session, key)
            if existing is None:
                raise
            return existing, False

    async def _enqueue(self, delivery_id: str) -> None:
        try:
            await self.queue.enqueue(delivery_id)
        except Exception:
            logger.exception(
                "Failed to enqueue delivery %s; the stall sweep will retry it", delivery_id,
            )
