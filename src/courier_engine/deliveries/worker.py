"""Delivery worker — signed HTTP execution and the retry state machine.

States::

    pending ──► processing ──► success
    retrying ─┘      │    ├──► failed        (non-retryable response, inactive endpoint)
                     │    └──► dead_letter   (retry budget exhausted)
                     └──► retrying ──► (re-enqueued with a delay)

A worker only acts on a record after winning the compare-and-swap into
``processing``; losing the swap means another worker owns the attempt and
this one returns without side effects.
"""

import asyncio
import inspect
import logging
import random
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

import httpx

from courier_engine.common.config import CourierSettings
from courier_engine.common.database import DatabaseManager
from courier_engine.common.exceptions import (
    CourierError,
    DeliveryRejectedError,
    DeliveryTransportError,
    ExhaustedRetriesError,
)
from courier_engine.common.models import utcnow
from courier_engine.deliveries.backoff import compute_delay, is_retryable_status, is_success
from courier_engine.deliveries.models import (
    DEAD_LETTER,
    FAILED,
    PROCESSING,
    RETRYING,
    SUCCESS,
    WebhookDeliveryModel,
)
from courier_engine.deliveries.signing import serialize_body, signature_header
from courier_engine.deliveries.store import DeliveryStore
from courier_engine.endpoints.registry import EndpointSnapshot, WebhookRegistry
from courier_engine.queue.base import DeliveryJob, DeliveryQueue

logger = logging.getLogger(__name__)

ENDPOINT_INACTIVE = "endpoint_inactive"

AlertSink = Callable[[ExhaustedRetriesError], Optional[Awaitable[None]]]


def log_dead_letter(error: ExhaustedRetriesError) -> None:
    """Default alert sink: a WARNING line an external alerting rule can match."""
    logger.warning(
        "Delivery dead-lettered: %s",
        error.message,
        extra={
            "alert": "webhook_dead_letter",
            "delivery_id": error.delivery_id,
            "endpoint_id": error.endpoint_id,
            "attempts": error.attempts,
        },
    )


@dataclass
class AttemptOutcome:
    """What happened on the wire for one attempt."""
    status_code: Optional[int] = None
    body: Optional[str] = None
    elapsed_ms: Optional[float] = None
    error: Optional[CourierError] = None


class DeliveryWorker:
    """Executes one delivery attempt per dequeued job."""

    def __init__(
        self,
        settings: CourierSettings,
        db: DatabaseManager,
        registry: WebhookRegistry,
        store: DeliveryStore,
        queue: DeliveryQueue,
        http_client: Optional[httpx.AsyncClient] = None,
        alert_sinks: Optional[list[AlertSink]] = None,
        jitter_source: Callable[[], float] = random.random,
    ):
        self.settings = settings
        self.db = db
        self.registry = registry
        self.store = store
        self.queue = queue
        self._http_client = http_client
        self.alert_sinks: list[AlertSink] = list(alert_sinks) if alert_sinks is not None else [log_dead_letter]
        self._jitter = jitter_source

    def _get_http_client(self) -> httpx.AsyncClient:
        """Lazy-init httpx.AsyncClient."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                headers={"User-Agent": self.settings.user_agent},
                follow_redirects=False,
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def handle(self, job: DeliveryJob) -> None:
        """Queue handler entry point."""
        await self.process_delivery(job.delivery_id)

    async def process_delivery(self, delivery_id: str) -> Optional[str]:
        """Run one attempt. Returns the resulting status, or ``None`` if not claimed."""
        async with self.db.get_session() as session:
            delivery = await self.store.claim(session, delivery_id)
            if delivery is None:
                logger.debug("Delivery %s not claimable; skipping", delivery_id)
                return None
            endpoint = await self.registry.get_snapshot(session, delivery.endpoint_id)

        if endpoint is None or not endpoint.active:
            return await self._finish(
                delivery,
                FAILED,
                completed_at=utcnow(),
                next_attempt_at=None,
                error_code=ENDPOINT_INACTIVE,
                error_message=ENDPOINT_INACTIVE,
            )

        outcome = await self._send(delivery, endpoint)
        return await self._record_outcome(delivery, endpoint, outcome)

    # ── HTTP ──

    def build_request(
        self, delivery: WebhookDeliveryModel, endpoint: EndpointSnapshot,
    ) -> tuple[str, dict[str, str]]:
        """Serialized body and headers for an attempt against ``endpoint``."""
        body = serialize_body(delivery.payload)
        headers = dict(endpoint.headers)
        headers.update({
            "Content-Type": "application/json",
            "X-Webhook-Signature-256": signature_header(body, endpoint.secret),
            "X-Webhook-Event": delivery.event_type,
            "X-Webhook-Delivery": delivery.id,
            "X-Webhook-Timestamp": utcnow().isoformat(),
        })
        return body, headers

    async def _send(
        self, delivery: WebhookDeliveryModel, endpoint: EndpointSnapshot,
    ) -> AttemptOutcome:
        body, headers = self.build_request(delivery, endpoint)
        timeout = endpoint.timeout_seconds or self.settings.delivery_timeout_seconds
        started = time.perf_counter()

        try:
            client = self._get_http_client()
            resp = await client.request(
                endpoint.method or "POST",
                endpoint.url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException:
            return AttemptOutcome(
                elapsed_ms=_elapsed_ms(started),
                error=DeliveryTransportError("Request timed out", error_code="timeout"),
            )
        except httpx.HTTPError as e:
            return AttemptOutcome(
                elapsed_ms=_elapsed_ms(started),
                error=DeliveryTransportError(str(e) or type(e).__name__, error_code="connection_error"),
            )
        except Exception as e:
            logger.exception("Unexpected error delivering %s", delivery.id)
            return AttemptOutcome(
                elapsed_ms=_elapsed_ms(started),
                error=DeliveryTransportError(f"Unexpected error: {e}", error_code="unexpected_error"),
            )

        limit = self.settings.response_body_limit
        text = resp.text[:limit] if resp.text else None
        error = None
        if not is_success(resp.status_code):
            error = DeliveryRejectedError(resp.status_code, f"HTTP {resp.status_code}")
        return AttemptOutcome(
            status_code=resp.status_code,
            body=text,
            elapsed_ms=_elapsed_ms(started),
            error=error,
        )

    # ── State machine ──

    async def _record_outcome(
        self,
        delivery: WebhookDeliveryModel,
        endpoint: EndpointSnapshot,
        outcome: AttemptOutcome,
    ) -> Optional[str]:
        now = utcnow()
        attempts = delivery.attempt_count + 1
        changes: dict[str, Any] = {
            "attempt_count": attempts,
            "response_status": outcome.status_code,
            "response_body": outcome.body,
            "response_time_ms": outcome.elapsed_ms,
        }
        delay_ms: Optional[int] = None
        error = outcome.error

        if error is None:
            status = SUCCESS
            changes.update(completed_at=now, next_attempt_at=None, error_code=None, error_message=None)
        elif isinstance(error, DeliveryRejectedError) and not is_retryable_status(
            error.status_code, endpoint.retry_policy,
        ):
            status = FAILED
            changes.update(
                completed_at=now, next_attempt_at=None,
                error_code=f"http_{error.status_code}", error_message=error.message,
            )
        else:
            error_code = (
                f"http_{error.status_code}" if isinstance(error, DeliveryRejectedError)
                else getattr(error, "error_code", "transport_error")
            )
            changes.update(error_code=error_code, error_message=error.message[:1024])
            if attempts >= delivery.max_attempts:
                status = DEAD_LETTER
                changes.update(completed_at=now, next_attempt_at=None)
            else:
                status = RETRYING
                delay_ms = compute_delay(attempts, endpoint.retry_policy, self._jitter)
                changes["next_attempt_at"] = now + timedelta(milliseconds=delay_ms)

        result = await self._finish(delivery, status, **changes)
        if result is None:
            return None

        if status == RETRYING:
            try:
                await self.queue.enqueue(delivery.id, delay=delay_ms / 1000)
            except Exception:
                logger.exception(
                    "Failed to schedule retry for %s; the stall sweep will pick it up", delivery.id,
                )
            logger.info(
                "Webhook %s to %s scheduled for retry (attempt %d/%d in %d ms)",
                delivery.event_type, endpoint.url, attempts, delivery.max_attempts, delay_ms,
            )
        elif status == DEAD_LETTER:
            await self._alert(ExhaustedRetriesError(
                delivery_id=delivery.id,
                endpoint_id=delivery.endpoint_id,
                attempts=attempts,
                last_error=changes.get("error_message"),
            ))
        elif status == SUCCESS:
            logger.info(
                "Webhook delivered: %s to %s (status %d)",
                delivery.event_type, endpoint.url, outcome.status_code,
            )
        else:
            logger.warning(
                "Webhook rejected: %s to %s (status %s)",
                delivery.event_type, endpoint.url, outcome.status_code,
            )
        return status

    async def _finish(
        self, delivery: WebhookDeliveryModel, status: str, **changes: Any,
    ) -> Optional[str]:
        async with self.db.get_session() as session:
            written = await self.store.update_delivery_attempt(
                session, delivery.id, from_statuses={PROCESSING}, status=status, **changes,
            )
        if not written:
            logger.warning("Delivery %s changed owner before %s could be recorded", delivery.id, status)
            return None
        return status

    async def _alert(self, error: ExhaustedRetriesError) -> None:
        for sink in self.alert_sinks:
            try:
                result = sink(error)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Dead-letter alert sink failed for %s", error.delivery_id)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class DeliveryWorkerPool:
    """Runs the worker against the queue with bounded global concurrency.

    Also sweeps for records whose queue job was lost (worker crash, failed
    enqueue) and re-enqueues them.
    """

    def __init__(
        self,
        settings: CourierSettings,
        db: DatabaseManager,
        worker: DeliveryWorker,
        store: DeliveryStore,
        queue: DeliveryQueue,
    ):
        self.settings = settings
        self.db = db
        self.worker = worker
        self.store = store
        self.queue = queue
        self._stop: Optional[asyncio.Event] = None
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not all(t.done() for t in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self.queue.process(
                self.worker.handle,
                concurrency=self.settings.worker_concurrency,
                poll_interval=self.settings.worker_poll_interval,
                stop_event=self._stop,
            )),
            asyncio.create_task(self._sweep_loop(self._stop)),
        ]
        logger.info(
            "Delivery worker pool started (concurrency=%d)", self.settings.worker_concurrency,
        )

    async def stop(self) -> None:
        if self._stop is None:
            return
        self._stop.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._stop = None
        await self.worker.aclose()
        logger.info("Delivery worker pool stopped")

    async def wait(self) -> None:
        """Block until the pool is stopped."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def sweep_once(self) -> int:
        async with self.db.get_session() as session:
            stalled = await self.store.recover_stalled(
                session, timedelta(seconds=self.settings.processing_timeout),
            )
        for delivery_id in stalled:
            await self.queue.enqueue(delivery_id)
        return len(stalled)

    async def _sweep_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.settings.sweep_interval)
            except asyncio.TimeoutError:
                pass
            if stop.is_set():
                break
            try:
                recovered = await self.sweep_once()
                if recovered:
                    logger.info("Re-enqueued %d stalled deliveries", recovered)
            except Exception:
                logger.exception("Stalled delivery sweep failed")
