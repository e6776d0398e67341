"""Integration tests for the webhook management and event ingest API."""

from courier_engine.common.models import utcnow
from courier_engine.deliveries.models import DEAD_LETTER, PROCESSING


def endpoint_body(**overrides) -> dict:
    body = {
        "name": "Users hook",
        "url": "https://example.com/hook",
        "triggers": {"user": {"create": True}},
    }
    body.update(overrides)
    return body


def user_event(event_id="evt-1", tenant_id="tenant-a") -> dict:
    return {
        "id": event_id,
        "event": "created",
        "model": "user",
        "data": {"id": "u-1"},
        "context": {"tenantId": tenant_id, "requestId": "req-1"},
    }


async def create_endpoint(client, headers, **overrides) -> dict:
    resp = await client.post("/webhooks", headers=headers, json=endpoint_body(**overrides))
    assert resp.status_code == 201
    return resp.json()


async def dead_letter(delivery_id: str) -> None:
    from courier_engine.deps import get_db, get_store
    store = get_store()
    async with get_db().get_session() as session:
        await store.claim(session, delivery_id)
        await store.update_delivery_attempt(
            session, delivery_id, {PROCESSING}, DEAD_LETTER,
            attempt_count=3, completed_at=utcnow(), error_code="http_500",
        )


class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["service"] == "courier-engine"
        assert resp.json()["database"] == "ok"


class TestAuth:
    async def test_missing_api_key(self, client):
        resp = await client.get("/webhooks", headers={"X-Courier-Tenant": "tenant-a"})
        assert resp.status_code in (401, 403, 422)

    async def test_wrong_api_key(self, client):
        resp = await client.get(
            "/webhooks", headers={"X-Courier-Api-Key": "wrong", "X-Courier-Tenant": "tenant-a"},
        )
        assert resp.status_code == 403

    async def test_missing_tenant(self, client, api_key):
        resp = await client.get("/webhooks", headers={"X-Courier-Api-Key": api_key})
        assert resp.status_code == 422


class TestCreateWebhookEndpoint:
    async def test_create_returns_secret_once(self, client, admin_headers):
        data = await create_endpoint(client, admin_headers, triggers={"User": {"Create": True}})
        assert len(data["secret"]) == 64
        assert data["tenant_id"] == "tenant-a"
        assert data["triggers"] == {"user": {"create": True}}
        assert data["retry_policy"]["max_attempts"] == 3

        resp = await client.get(f"/webhooks/{data['id']}", headers=admin_headers)
        assert resp.status_code == 200
        assert "secret" not in resp.json()

    async def test_create_rejects_empty_triggers(self, client, admin_headers):
        resp = await client.post("/webhooks", headers=admin_headers, json=endpoint_body(triggers={}))
        assert resp.status_code == 422

    async def test_create_rejects_reserved_header(self, client, admin_headers):
        resp = await client.post(
            "/webhooks", headers=admin_headers,
            json=endpoint_body(headers={"X-Webhook-Event": "spoofed"}),
        )
        assert resp.status_code == 422

    async def test_create_rejects_bad_conditions(self, client, admin_headers):
        resp = await client.post(
            "/webhooks", headers=admin_headers,
            json=endpoint_body(conditions={"type": "custom", "name": "not_registered"}),
        )
        assert resp.status_code == 422

    async def test_create_rejects_bad_method(self, client, admin_headers):
        resp = await client.post("/webhooks", headers=admin_headers, json=endpoint_body(method="GET"))
        assert resp.status_code == 422


class TestManageWebhookEndpoints:
    async def test_list_is_tenant_scoped(self, client, admin_headers):
        await create_endpoint(client, admin_headers)
        other = {**admin_headers, "X-Courier-Tenant": "tenant-b"}
        await create_endpoint(client, other, name="Other tenant")

        resp = await client.get("/webhooks", headers=admin_headers)
        assert resp.status_code == 200
        assert [ep["name"] for ep in resp.json()] == ["Users hook"]

    async def test_get_other_tenant_404(self, client, admin_headers):
        data = await create_endpoint(client, admin_headers)
        other = {**admin_headers, "X-Courier-Tenant": "tenant-b"}
        resp = await client.get(f"/webhooks/{data['id']}", headers=other)
        assert resp.status_code == 404

    async def test_patch(self, client, admin_headers):
        data = await create_endpoint(client, admin_headers)
        resp = await client.patch(
            f"/webhooks/{data['id']}", headers=admin_headers,
            json={"name": "Renamed", "active": False, "retry_policy": {"max_attempts": 5}},
        )
        assert resp.status_code == 200
        updated = resp.json()
        assert updated["name"] == "Renamed"
        assert updated["active"] is False
        assert updated["retry_policy"]["max_attempts"] == 5

    async def test_patch_invalid_url(self, client, admin_headers):
        data = await create_endpoint(client, admin_headers)
        resp = await client.patch(
            f"/webhooks/{data['id']}", headers=admin_headers, json={"url": "mailto:x@example.com"},
        )
        assert resp.status_code == 422

    async def test_patch_missing(self, client, admin_headers):
        resp = await client.patch("/webhooks/missing", headers=admin_headers, json={"name": "x"})
        assert resp.status_code == 404

    async def test_delete(self, client, admin_headers):
        data = await create_endpoint(client, admin_headers)
        resp = await client.delete(f"/webhooks/{data['id']}", headers=admin_headers)
        assert resp.status_code == 204
        resp = await client.get(f"/webhooks/{data['id']}", headers=admin_headers)
        assert resp.status_code == 404

    async def test_rotate_secret(self, client, admin_headers):
        data = await create_endpoint(client, admin_headers)
        resp = await client.post(f"/webhooks/{data['id']}/rotate-secret", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["secret"] != data["secret"]


class TestEventsAndDeliveries:
    async def test_ingest_event_creates_delivery(self, client, admin_headers, api_key):
        ep = await create_endpoint(client, admin_headers)
        resp = await client.post("/events", headers={"X-Courier-Api-Key": api_key}, json=user_event())
        assert resp.status_code == 202
        data = resp.json()
        assert data["event_type"] == "user.created"
        assert data["event_id"] == "evt-1"
        assert len(data["delivery_ids"]) == 1

        resp = await client.get(f"/webhooks/{ep['id']}/deliveries", headers=admin_headers)
        assert resp.status_code == 200
        deliveries = resp.json()
        assert [d["id"] for d in deliveries] == data["delivery_ids"]
        assert deliveries[0]["status"] == "pending"
        assert deliveries[0]["payload"]["id"] == deliveries[0]["id"]

    async def test_ingest_duplicate_event(self, client, admin_headers, api_key):
        await create_endpoint(client, admin_headers)
        headers = {"X-Courier-Api-Key": api_key}
        first = (await client.post("/events", headers=headers, json=user_event())).json()
        second = (await client.post("/events", headers=headers, json=user_event())).json()
        assert first["delivery_ids"] == second["delivery_ids"]

    async def test_ingest_rejects_malformed(self, client, api_key):
        resp = await client.post(
            "/events", headers={"X-Courier-Api-Key": api_key}, json={"event": "created"},
        )
        assert resp.status_code == 422

    async def test_list_deliveries_rejects_bad_status(self, client, admin_headers):
        ep = await create_endpoint(client, admin_headers)
        resp = await client.get(
            f"/webhooks/{ep['id']}/deliveries", headers=admin_headers, params={"status": "lost"},
        )
        assert resp.status_code == 422

    async def test_test_ping(self, client, admin_headers):
        ep = await create_endpoint(client, admin_headers)
        resp = await client.post(f"/webhooks/{ep['id']}/test", headers=admin_headers)
        assert resp.status_code == 202
        data = resp.json()
        assert data["event_type"] == "webhook.test"
        assert data["status"] == "pending"

    async def test_test_ping_missing_endpoint(self, client, admin_headers):
        resp = await client.post("/webhooks/missing/test", headers=admin_headers)
        assert resp.status_code == 404

    async def test_get_delivery(self, client, admin_headers, api_key):
        await create_endpoint(client, admin_headers)
        ids = (await client.post("/events", headers={"X-Courier-Api-Key": api_key}, json=user_event())).json()["delivery_ids"]

        resp = await client.get(f"/webhooks/deliveries/{ids[0]}", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["event_id"] == "evt-1"

        other = {**admin_headers, "X-Courier-Tenant": "tenant-b"}
        resp = await client.get(f"/webhooks/deliveries/{ids[0]}", headers=other)
        assert resp.status_code == 404

    async def test_retry_pending_conflict(self, client, admin_headers, api_key):
        await create_endpoint(client, admin_headers)
        ids = (await client.post("/events", headers={"X-Courier-Api-Key": api_key}, json=user_event())).json()["delivery_ids"]
        resp = await client.post(f"/webhooks/deliveries/{ids[0]}/retry", headers=admin_headers)
        assert resp.status_code == 409

    async def test_retry_dead_letter(self, client, admin_headers, api_key):
        await create_endpoint(client, admin_headers)
        ids = (await client.post("/events", headers={"X-Courier-Api-Key": api_key}, json=user_event())).json()["delivery_ids"]
        await dead_letter(ids[0])

        resp = await client.post(f"/webhooks/deliveries/{ids[0]}/retry", headers=admin_headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "pending"
        assert data["attempt_count"] == 0
        assert data["error_code"] is None

    async def test_retry_missing(self, client, admin_headers):
        resp = await client.post("/webhooks/deliveries/missing/retry", headers=admin_headers)
        assert resp.status_code == 404


class TestAnalyticsRoutes:
    async def test_stats(self, client, admin_headers, api_key):
        await create_endpoint(client, admin_headers)
        ids = (await client.post("/events", headers={"X-Courier-Api-Key": api_key}, json=user_event())).json()["delivery_ids"]
        await dead_letter(ids[0])
        await client.post("/events", headers={"X-Courier-Api-Key": api_key}, json=user_event("evt-2"))

        resp = await client.get("/webhooks/stats", headers=admin_headers)
        assert resp.status_code == 200
        stats = resp.json()
        assert stats["total"] == 2
        assert stats["finished"] == 1
        assert stats["success_rate"] == 0.0
        assert stats["status_breakdown"]["dead_letter"] == 1
        assert stats["top_errors"] == [{"error_code": "http_500", "count": 1}]

    async def test_endpoint_health(self, client, admin_headers):
        ep = await create_endpoint(client, admin_headers)
        resp = await client.get(f"/webhooks/{ep['id']}/health", headers=admin_headers)
        assert resp.status_code == 200
        health = resp.json()
        assert health["status"] == "unknown"
        assert health["stats"]["total"] == 0

    async def test_endpoint_health_missing(self, client, admin_headers):
        resp = await client.get("/webhooks/missing/health", headers=admin_headers)
        assert resp.status_code == 404
