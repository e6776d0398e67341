"""Tests for the endpoint registry — validation, CRUD, trigger resolution, TTL cache."""

import pytest

from courier_engine.common.config import CourierSettings
from courier_engine.common.database import DatabaseManager
from courier_engine.common.exceptions import ConfigurationError, NotFoundError
from courier_engine.conditions.predicates import default_predicates
from courier_engine.endpoints.registry import (
    EndpointCache,
    WebhookRegistry,
    event_name,
    normalize_action,
)


def make_settings(**overrides) -> CourierSettings:
    defaults = {"db_url": "sqlite+aiosqlite://", "environment": "test"}
    defaults.update(overrides)
    return CourierSettings(**defaults)


def endpoint_config(**overrides) -> dict:
    config = {
        "name": "Orders hook",
        "url": "https://example.com/hook",
        "triggers": {"order": {"create": True, "update": False}},
    }
    config.update(overrides)
    return config


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
async def db():
    manager = DatabaseManager(make_settings())
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return WebhookRegistry(make_settings(), predicates=default_predicates(), clock=clock)


# ── Event names ──


class TestEventNames:
    def test_event_name_strips_model(self):
        assert event_name("user.created") == "created"
        assert event_name("Created") == "created"

    def test_normalize_action(self):
        assert normalize_action("created") == "create"
        assert normalize_action("order.archived") == "archive"
        assert normalize_action("approved") == "approved"


# ── Register ──


class TestRegister:
    async def test_register_generates_secret(self, db, registry):
        async with db.get_session() as session:
            ep = await registry.register(session, "tenant-a", endpoint_config())
            assert len(ep.secret) == 64
            assert ep.active is True
            assert ep.method == "POST"
            assert ep.retry_policy["max_attempts"] == 3

    async def test_register_normalizes_trigger_keys(self, db, registry):
        async with db.get_session() as session:
            ep = await registry.register(
                session, "tenant-a", endpoint_config(triggers={"Order": {"Create": True}}),
            )
            assert ep.triggers == {"order": {"create": True}}

    async def test_rejects_empty_triggers(self, db, registry):
        async with db.get_session() as session:
            with pytest.raises(ConfigurationError):
                await registry.register(session, "tenant-a", endpoint_config(triggers={}))

    async def test_rejects_all_false_triggers(self, db, registry):
        async with db.get_session() as session:
            with pytest.raises(ConfigurationError):
                await registry.register(
                    session, "tenant-a", endpoint_config(triggers={"order": {"create": False}}),
                )

    async def test_rejects_bad_url(self, db, registry):
        async with db.get_session() as session:
            with pytest.raises(ConfigurationError):
                await registry.register(session, "tenant-a", endpoint_config(url="ftp://example.com"))

    async def test_requires_https_in_production_mode(self, db, clock):
        strict = WebhookRegistry(make_settings(https_only=True), clock=clock)
        async with db.get_session() as session:
            with pytest.raises(ConfigurationError):
                await strict.register(session, "tenant-a", endpoint_config(url="http://example.com/hook"))

    async def test_rejects_reserved_headers(self, db, registry):
        async with db.get_session() as session:
            with pytest.raises(ConfigurationError):
                await registry.register(
                    session, "tenant-a",
                    endpoint_config(headers={"X-Webhook-Signature-256": "forged"}),
                )

    async def test_rejects_invalid_conditions(self, db, registry):
        async with db.get_session() as session:
            with pytest.raises(ConfigurationError):
                await registry.register(
                    session, "tenant-a",
                    endpoint_config(conditions={"type": "field", "field": "a", "operator": "like"}),
                )

    async def test_rejects_bad_retry_policy(self, db, registry):
        async with db.get_session() as session:
            with pytest.raises(ConfigurationError):
                await registry.register(
                    session, "tenant-a",
                    endpoint_config(retry_policy={"initial_delay": 5000, "max_delay": 1000}),
                )


# ── Read / update / delete ──


class TestCrud:
    async def test_get_is_tenant_scoped(self, db, registry):
        async with db.get_session() as session:
            ep = await registry.register(session, "tenant-a", endpoint_config())
        async with db.get_session() as session:
            assert await registry.get(session, ep.id, tenant_id="tenant-a") is not None
            assert await registry.get(session, ep.id, tenant_id="tenant-b") is None
            with pytest.raises(NotFoundError):
                await registry.require(session, ep.id, tenant_id="tenant-b")

    async def test_list_filters_active(self, db, registry):
        async with db.get_session() as session:
            await registry.register(session, "tenant-a", endpoint_config(name="one"))
            await registry.register(session, "tenant-a", endpoint_config(name="two", active=False))
            await registry.register(session, "tenant-b", endpoint_config(name="three"))
        async with db.get_session() as session:
            assert len(await registry.list_endpoints(session, "tenant-a")) == 2
            active = await registry.list_endpoints(session, "tenant-a", active=True)
            assert [ep.name for ep in active] == ["one"]

    async def test_update_merges_retry_policy(self, db, registry):
        async with db.get_session() as session:
            ep = await registry.register(session, "tenant-a", endpoint_config())
            updated = await registry.update(
                session, ep.id, {"retry_policy": {"max_attempts": 5}, "name": "Renamed"},
            )
            assert updated.name == "Renamed"
            assert updated.retry_policy["max_attempts"] == 5
            assert updated.retry_policy["backoff_strategy"] == "exponential"

    async def test_update_rejects_secret(self, db, registry):
        async with db.get_session() as session:
            ep = await registry.register(session, "tenant-a", endpoint_config())
            with pytest.raises(ConfigurationError):
                await registry.update(session, ep.id, {"secret": "mine"})

    async def test_update_rejects_unknown_field(self, db, registry):
        async with db.get_session() as session:
            ep = await registry.register(session, "tenant-a", endpoint_config())
            with pytest.raises(ConfigurationError):
                await registry.update(session, ep.id, {"colour": "blue"})

    async def test_update_revalidates_url(self, db, registry):
        async with db.get_session() as session:
            ep = await registry.register(session, "tenant-a", endpoint_config())
            with pytest.raises(ConfigurationError):
                await registry.update(session, ep.id, {"url": "not a url"})

    async def test_rotate_secret(self, db, registry):
        async with db.get_session() as session:
            ep = await registry.register(session, "tenant-a", endpoint_config())
            old = ep.secret
            rotated = await registry.rotate_secret(session, ep.id)
            assert rotated.secret != old

    async def test_delete(self, db, registry):
        async with db.get_session() as session:
            ep = await registry.register(session, "tenant-a", endpoint_config())
        async with db.get_session() as session:
            await registry.delete(session, ep.id, tenant_id="tenant-a")
        async with db.get_session() as session:
            assert await registry.get(session, ep.id) is None

    async def test_delete_missing_raises(self, db, registry):
        async with db.get_session() as session:
            with pytest.raises(NotFoundError):
                await registry.delete(session, "missing")


# ── Resolution ──


class TestFindActiveForEvent:
    async def test_matches_normalized_action(self, db, registry):
        async with db.get_session() as session:
            ep = await registry.register(session, "tenant-a", endpoint_config())
        async with db.get_session() as session:
            matches = await registry.find_active_for_event(session, "tenant-a", "order", "created")
            assert [m.id for m in matches] == [ep.id]
            assert await registry.find_active_for_event(session, "tenant-a", "order", "updated") == []
            assert await registry.find_active_for_event(session, "tenant-a", "invoice", "created") == []

    async def test_matches_raw_event_name(self, db, registry):
        async with db.get_session() as session:
            await registry.register(
                session, "tenant-a", endpoint_config(triggers={"order": {"approved": True}}),
            )
        async with db.get_session() as session:
            assert len(await registry.find_active_for_event(session, "tenant-a", "order", "approved")) == 1

    async def test_excludes_inactive_and_other_tenants(self, db, registry):
        async with db.get_session() as session:
            await registry.register(session, "tenant-a", endpoint_config(active=False))
            await registry.register(session, "tenant-b", endpoint_config())
        async with db.get_session() as session:
            assert await registry.find_active_for_event(session, "tenant-a", "order", "created") == []

    async def test_cache_serves_until_ttl(self, db, registry, clock):
        async with db.get_session() as session:
            await registry.register(session, "tenant-a", endpoint_config())
        async with db.get_session() as session:
            first = await registry.find_active_for_event(session, "tenant-a", "order", "created")
            assert len(first) == 1

        # A write that bypasses the registry is invisible until the TTL expires
        from courier_engine.endpoints.models import WebhookEndpointModel
        async with db.get_session() as session:
            session.add(WebhookEndpointModel(
                tenant_id="tenant-a", name="direct", url="https://example.com/other",
                triggers={"order": {"create": True}}, secret="s" * 64,
                retry_policy={},
            ))

        async with db.get_session() as session:
            assert len(await registry.find_active_for_event(session, "tenant-a", "order", "created")) == 1
            clock.now += 301
            assert len(await registry.find_active_for_event(session, "tenant-a", "order", "created")) == 2

    async def test_update_invalidates_cache(self, db, registry):
        async with db.get_session() as session:
            ep = await registry.register(session, "tenant-a", endpoint_config())
        async with db.get_session() as session:
            assert len(await registry.find_active_for_event(session, "tenant-a", "order", "created")) == 1
            await registry.deactivate(session, ep.id)
            assert await registry.find_active_for_event(session, "tenant-a", "order", "created") == []
            await registry.activate(session, ep.id)
            assert len(await registry.find_active_for_event(session, "tenant-a", "order", "created")) == 1

    async def test_snapshot_is_detached(self, db, registry):
        async with db.get_session() as session:
            ep = await registry.register(session, "tenant-a", endpoint_config())
            snapshot = await registry.get_snapshot(session, ep.id)
            assert snapshot.secret == ep.secret
            assert snapshot.retry_policy.max_attempts == 3
            assert snapshot.is_triggered_by("Order", "order.created") is True


class TestEndpointCache:
    def test_zero_ttl_disables_cache(self):
        cache = EndpointCache(ttl=0)
        cache.set("t", ("order", "created"), [])
        assert cache.get("t", ("order", "created")) is None

    def test_invalidate_tenant(self):
        clock = FakeClock()
        cache = EndpointCache(ttl=60, clock=clock)
        cache.set("t", ("order", "created"), [])
        assert cache.get("t", ("order", "created")) == []
        cache.invalidate_tenant("t")
        assert cache.get("t", ("order", "created")) is None
