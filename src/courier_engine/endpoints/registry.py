"""Webhook endpoint registry — configuration CRUD and trigger resolution."""

import copy
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courier_engine.common.config import CourierSettings
from courier_engine.common.exceptions import ConfigurationError, NotFoundError
from courier_engine.conditions.evaluator import validate_tree
from courier_engine.conditions.predicates import PredicateRegistry
from courier_engine.endpoints.models import WebhookEndpointModel
from courier_engine.endpoints.schemas import RetryPolicy, WebhookEndpointCreate, WebhookEndpointUpdate

logger = logging.getLogger(__name__)

ACTION_ALIASES: dict[str, str] = {
    "created": "create",
    "updated": "update",
    "deleted": "delete",
    "restored": "restore",
    "archived": "archive",
}

RESERVED_HEADER_PREFIX = "x-webhook-"
ALLOWED_METHODS = ("POST", "PUT", "PATCH")

_UPDATABLE_FIELDS = (
    "name", "description", "url", "method", "headers", "triggers",
    "conditions", "active", "retry_policy", "timeout_seconds",
)


def generate_secret() -> str:
    """256-bit random signing secret, hex encoded."""
    return secrets.token_hex(32)


def event_name(event: str) -> str:
    """Bare event name: ``"user.created"`` and ``"created"`` both give ``"created"``."""
    return event.rsplit(".", 1)[-1].strip().lower()


def normalize_action(event: str) -> str:
    """Map an emitted event name to the action key used in ``triggers``."""
    name = event_name(event)
    return ACTION_ALIASES.get(name, name)


@dataclass(frozen=True)
class EndpointSnapshot:
    """Immutable copy of an endpoint's configuration at read time."""

    id: str
    tenant_id: str
    name: str
    url: str
    method: str
    secret: str
    active: bool
    headers: dict[str, str] = field(default_factory=dict)
    triggers: dict[str, dict[str, bool]] = field(default_factory=dict)
    conditions: Any = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_seconds: Optional[float] = None

    @classmethod
    def from_model(cls, ep: WebhookEndpointModel) -> "EndpointSnapshot":
        return cls(
            id=ep.id,
            tenant_id=ep.tenant_id,
            name=ep.name,
            url=ep.url,
            method=ep.method or "POST",
            secret=ep.secret,
            active=bool(ep.active),
            headers=dict(ep.headers or {}),
            triggers=copy.deepcopy(ep.triggers or {}),
            conditions=copy.deepcopy(ep.conditions),
            retry_policy=RetryPolicy(**(ep.retry_policy or {})),
            timeout_seconds=ep.timeout_seconds,
        )

    def is_triggered_by(self, model: str, event: str) -> bool:
        flags = self.triggers.get(model.lower()) or {}
        return flags.get(normalize_action(event)) is True or flags.get(event_name(event)) is True


class EndpointCache:
    """Per-tenant TTL cache of trigger lookups."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, dict[tuple[str, str], tuple[float, list[EndpointSnapshot]]]] = {}

    def get(self, tenant_id: str, key: tuple[str, str]) -> Optional[list[EndpointSnapshot]]:
        entry = self._entries.get(tenant_id, {}).get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries[tenant_id].pop(key, None)
            return None
        return value

    def set(self, tenant_id: str, key: tuple[str, str], value: list[EndpointSnapshot]) -> None:
        if self.ttl <= 0:
            return
        self._entries.setdefault(tenant_id, {})[key] = (self._clock() + self.ttl, value)

    def invalidate_tenant(self, tenant_id: str) -> None:
        self._entries.pop(tenant_id, None)

    def clear(self) -> None:
        self._entries.clear()


class WebhookRegistry:
    """Owns endpoint configuration and resolves endpoints for lifecycle events."""

    def __init__(
        self,
        settings: CourierSettings,
        predicates: Optional[PredicateRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.predicates = predicates or PredicateRegistry()
        self.cache = EndpointCache(settings.registry_cache_ttl, clock=clock)

    # ── Validation ──

    def _validate_url(self, url: str) -> str:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise ConfigurationError(f"Webhook URL must use http or https, got: {url!r}")
        if not parsed.netloc:
            raise ConfigurationError(f"Webhook URL has no host: {url!r}")
        if self.settings.require_https and parsed.scheme != "https":
            raise ConfigurationError("Webhook URL must use https in this environment")
        return url

    @staticmethod
    def _normalize_triggers(triggers: dict[str, dict[str, bool]]) -> dict[str, dict[str, bool]]:
        if not isinstance(triggers, dict) or not triggers:
            raise ConfigurationError("Webhook triggers must not be empty")
        normalized: dict[str, dict[str, bool]] = {}
        for model, actions in triggers.items():
            if not isinstance(actions, dict):
                raise ConfigurationError(f"Triggers for {model!r} must map actions to booleans")
            bucket = normalized.setdefault(str(model).strip().lower(), {})
            for action, enabled in actions.items():
                bucket[str(action).strip().lower()] = bool(enabled)
        if not any(enabled for actions in normalized.values() for enabled in actions.values()):
            raise ConfigurationError("Webhook triggers must enable at least one model action")
        return normalized

    @staticmethod
    def _validate_headers(headers: dict[str, str]) -> dict[str, str]:
        for name in headers:
            lowered = name.lower()
            if lowered.startswith(RESERVED_HEADER_PREFIX) or lowered == "content-type":
                raise ConfigurationError(f"Header {name!r} is reserved and cannot be configured")
        return dict(headers)

    def _validate_conditions(self, conditions: Any) -> Any:
        validate_tree(conditions, self.predicates)
        return conditions

    # ── CRUD ──

    async def register(
        self,
        session: AsyncSession,
        tenant_id: str,
        config: WebhookEndpointCreate | dict[str, Any],
    ) -> WebhookEndpointModel:
        """Validate and persist a new endpoint with a freshly generated secret."""
        if isinstance(config, dict):
            try:
                config = WebhookEndpointCreate(**config)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
        if not tenant_id:
            raise ConfigurationError("tenant_id is required")

        endpoint = WebhookEndpointModel(
            tenant_id=tenant_id,
            name=config.name,
            description=config.description,
            url=self._validate_url(config.url),
            method=config.method,
            headers=self._validate_headers(config.headers),
            triggers=self._normalize_triggers(config.triggers),
            conditions=self._validate_conditions(config.conditions),
            secret=generate_secret(),
            active=config.active,
            retry_policy=config.retry_policy.model_dump(),
            timeout_seconds=config.timeout_seconds,
        )
        session.add(endpoint)
        await session.flush()
        self.cache.invalidate_tenant(tenant_id)
        logger.info("Registered webhook endpoint %s for tenant %s", endpoint.id, tenant_id)
        return endpoint

    async def get(
        self, session: AsyncSession, endpoint_id: str,
        tenant_id: str | None = None,
    ) -> Optional[WebhookEndpointModel]:
        query = select(WebhookEndpointModel).where(
            WebhookEndpointModel.id == endpoint_id,
        )
        if tenant_id is not None:
            query = query.where(WebhookEndpointModel.tenant_id == tenant_id)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def require(
        self, session: AsyncSession, endpoint_id: str,
        tenant_id: str | None = None,
    ) -> WebhookEndpointModel:
        endpoint = await self.get(session, endpoint_id, tenant_id=tenant_id)
        if endpoint is None:
            raise NotFoundError(f"Webhook endpoint {endpoint_id} not found")
        return endpoint

    async def list_endpoints(
        self,
        session: AsyncSession,
        tenant_id: str,
        active: bool | None = None,
    ) -> list[WebhookEndpointModel]:
        query = select(WebhookEndpointModel).where(
            WebhookEndpointModel.tenant_id == tenant_id,
        )
        if active is not None:
            query = query.where(WebhookEndpointModel.active == active)
        query = query.order_by(WebhookEndpointModel.created_at.desc())
        result = await session.execute(query)
        return list(result.scalars().all())

    async def update(
        self,
        session: AsyncSession,
        endpoint_id: str,
        patch: WebhookEndpointUpdate | dict[str, Any],
        tenant_id: str | None = None,
    ) -> WebhookEndpointModel:
        """Re-validate and apply changed fields. The secret is never patched."""
        if isinstance(patch, WebhookEndpointUpdate):
            changes = patch.model_dump(exclude_unset=True)
        else:
            changes = dict(patch)
        if "secret" in changes:
            raise ConfigurationError("Secrets can only be changed through rotate_secret")
        unknown = set(changes) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ConfigurationError(f"Unknown endpoint fields: {sorted(unknown)}")

        for required in ("name", "url", "method", "active", "triggers", "retry_policy"):
            if required in changes and changes[required] is None:
                raise ConfigurationError(f"Field {required!r} cannot be null")
        if "description" in changes and changes["description"] is None:
            changes["description"] = ""

        endpoint = await self.require(session, endpoint_id, tenant_id=tenant_id)

        if "url" in changes:
            changes["url"] = self._validate_url(changes["url"])
        if "triggers" in changes:
            changes["triggers"] = self._normalize_triggers(changes["triggers"])
        if "headers" in changes:
            changes["headers"] = self._validate_headers(changes["headers"] or {})
        if "conditions" in changes:
            changes["conditions"] = self._validate_conditions(changes["conditions"])
        if "retry_policy" in changes:
            policy = changes["retry_policy"]
            try:
                if isinstance(policy, RetryPolicy):
                    policy = policy.model_dump(exclude_unset=True)
                merged = {**(endpoint.retry_policy or {}), **(policy or {})}
                changes["retry_policy"] = RetryPolicy(**merged).model_dump()
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
        if "method" in changes:
            changes["method"] = str(changes["method"]).upper()
            if changes["method"] not in ALLOWED_METHODS:
                raise ConfigurationError(f"Unsupported HTTP method: {changes['method']}")

        for name, value in changes.items():
            setattr(endpoint, name, value)
        await session.flush()
        self.cache.invalidate_tenant(endpoint.tenant_id)
        return endpoint

    async def deactivate(
        self, session: AsyncSession, endpoint_id: str,
        tenant_id: str | None = None,
    ) -> WebhookEndpointModel:
        """Stop matching new events. Already-queued deliveries still run their checks."""
        return await self.update(session, endpoint_id, {"active": False}, tenant_id=tenant_id)

    async def activate(
        self, session: AsyncSession, endpoint_id: str,
        tenant_id: str | None = None,
    ) -> WebhookEndpointModel:
        return await self.update(session, endpoint_id, {"active": True}, tenant_id=tenant_id)

    async def rotate_secret(
        self, session: AsyncSession, endpoint_id: str,
        tenant_id: str | None = None,
    ) -> WebhookEndpointModel:
        endpoint = await self.require(session, endpoint_id, tenant_id=tenant_id)
        endpoint.secret = generate_secret()
        await session.flush()
        self.cache.invalidate_tenant(endpoint.tenant_id)
        logger.info("Rotated secret for webhook endpoint %s", endpoint.id)
        return endpoint

    async def delete(
        self, session: AsyncSession, endpoint_id: str,
        tenant_id: str | None = None,
    ) -> None:
        endpoint = await self.require(session, endpoint_id, tenant_id=tenant_id)
        owner = endpoint.tenant_id
        await session.delete(endpoint)
        await session.flush()
        self.cache.invalidate_tenant(owner)

    # ── Resolution ──

    async def find_active_for_event(
        self,
        session: AsyncSession,
        tenant_id: str,
        model: str,
        event: str,
    ) -> list[EndpointSnapshot]:
        """Active endpoints of ``tenant_id`` whose triggers enable ``model.event``."""
        key = (model.lower(), event_name(event))
        cached = self.cache.get(tenant_id, key)
        if cached is not None:
            return cached

        endpoints = await self.list_endpoints(session, tenant_id, active=True)
        matches = [
            snapshot
            for snapshot in (EndpointSnapshot.from_model(ep) for ep in endpoints)
            if snapshot.is_triggered_by(model, event)
        ]
        self.cache.set(tenant_id, key, matches)
        return matches

    async def get_snapshot(
        self, session: AsyncSession, endpoint_id: str,
    ) -> Optional[EndpointSnapshot]:
        """Uncached read of the current configuration, one per delivery attempt."""
        endpoint = await self.get(session, endpoint_id)
        if endpoint is None:
            return None
        return EndpointSnapshot.from_model(endpoint)
