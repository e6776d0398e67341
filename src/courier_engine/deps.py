"""Dependency injection singletons for Courier-Engine."""

from courier_engine.analytics.service import AnalyticsService
from courier_engine.common.config import get_settings
from courier_engine.common.database import DatabaseManager
from courier_engine.conditions.predicates import PredicateRegistry, default_predicates
from courier_engine.deliveries.store import DeliveryStore
from courier_engine.deliveries.worker import DeliveryWorker, DeliveryWorkerPool
from courier_engine.dispatch.service import Dispatcher
from courier_engine.endpoints.registry import WebhookRegistry
from courier_engine.queue.base import DeliveryQueue
from courier_engine.queue.database import DatabaseDeliveryQueue
from courier_engine.queue.memory import InMemoryDeliveryQueue

_db: DatabaseManager | None = None
_predicates: PredicateRegistry | None = None
_registry: WebhookRegistry | None = None
_store: DeliveryStore | None = None
_queue: DeliveryQueue | None = None
_dispatcher: Dispatcher | None = None
_worker: DeliveryWorker | None = None
_pool: DeliveryWorkerPool | None = None
_analytics: AnalyticsService | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_predicates() -> PredicateRegistry:
    global _predicates
    if _predicates is None:
        _predicates = default_predicates()
    return _predicates


def get_registry() -> WebhookRegistry:
    global _registry
    if _registry is None:
        _registry = WebhookRegistry(get_settings(), predicates=get_predicates())
    return _registry


def get_store() -> DeliveryStore:
    global _store
    if _store is None:
        _store = DeliveryStore(get_settings())
    return _store


def get_queue() -> DeliveryQueue:
    global _queue
    if _queue is None:
        settings = get_settings()
        if settings.queue_backend == "memory":
            _queue = InMemoryDeliveryQueue(nack_delay=settings.queue_nack_delay)
        else:
            _queue = DatabaseDeliveryQueue(
                get_db(),
                visibility_timeout=settings.queue_visibility_timeout,
                nack_delay=settings.queue_nack_delay,
            )
    return _queue


def get_dispatcher() -> Dispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = Dispatcher(
            get_settings(), get_db(), get_registry(), get_store(), get_queue(),
        )
    return _dispatcher


def get_worker() -> DeliveryWorker:
    global _worker
    if _worker is None:
        _worker = DeliveryWorker(
            get_settings(), get_db(), get_registry(), get_store(), get_queue(),
        )
    return _worker


def get_worker_pool() -> DeliveryWorkerPool:
    global _pool
    if _pool is None:
        _pool = DeliveryWorkerPool(
            get_settings(), get_db(), get_worker(), get_store(), get_queue(),
        )
    return _pool


def get_analytics() -> AnalyticsService:
    global _analytics
    if _analytics is None:
        _analytics = AnalyticsService(get_settings())
    return _analytics


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _predicates, _registry, _store, _queue, _dispatcher, _worker, _pool, _analytics
    _db = None
    _predicates = None
    _registry = None
    _store = None
    _queue = None
    _dispatcher = None
    _worker = None
    _pool = None
    _analytics = None
