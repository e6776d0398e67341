"""Webhook management API router."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from courier_engine.analytics.schemas import DeliveryStatsResponse, EndpointHealthResponse
from courier_engine.common.exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
)
from courier_engine.common.security import TenantContext, require_api_key, require_tenant
from courier_engine.deliveries.models import DELIVERY_STATUSES
from courier_engine.deliveries.schemas import WebhookDeliveryResponse
from courier_engine.endpoints.schemas import (
    WebhookEndpointCreate,
    WebhookEndpointResponse,
    WebhookEndpointSecretResponse,
    WebhookEndpointUpdate,
)

router = APIRouter(dependencies=[Depends(require_api_key)])


def _get_registry():
    from courier_engine.deps import get_registry
    return get_registry()


def _get_store():
    from courier_engine.deps import get_store
    return get_store()


def _get_dispatcher():
    from courier_engine.deps import get_dispatcher
    return get_dispatcher()


def _get_analytics():
    from courier_engine.deps import get_analytics
    return get_analytics()


def _get_db():
    from courier_engine.deps import get_db
    return get_db()


def _endpoint_to_response(ep, with_secret: bool = False) -> WebhookEndpointResponse:
    fields = dict(
        id=ep.id,
        tenant_id=ep.tenant_id,
        name=ep.name,
        description=ep.description,
        url=ep.url,
        method=ep.method,
        headers=ep.headers or {},
        triggers=ep.triggers or {},
        conditions=ep.conditions,
        active=ep.active,
        retry_policy=ep.retry_policy or {},
        timeout_seconds=ep.timeout_seconds,
        created_at=ep.created_at,
        updated_at=ep.updated_at,
    )
    if with_secret:
        return WebhookEndpointSecretResponse(secret=ep.secret, **fields)
    return WebhookEndpointResponse(**fields)


def _delivery_to_response(d) -> WebhookDeliveryResponse:
    return WebhookDeliveryResponse.model_validate(d)


@router.post("/webhooks", response_model=WebhookEndpointSecretResponse, status_code=201)
async def create_webhook_endpoint(
    body: WebhookEndpointCreate,
    tenant: TenantContext = Depends(require_tenant),
):
    registry = _get_registry()
    db = _get_db()
    try:
        async with db.get_session() as session:
            ep = await registry.register(session, tenant.tenant_id, body)
            return _endpoint_to_response(ep, with_secret=True)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=e.message)


@router.get("/webhooks", response_model=list[WebhookEndpointResponse])
async def list_webhook_endpoints(
    active: bool | None = Query(None),
    tenant: TenantContext = Depends(require_tenant),
):
    registry = _get_registry()
    db = _get_db()
    async with db.get_session() as session:
        endpoints = await registry.list_endpoints(session, tenant.tenant_id, active=active)
        return [_endpoint_to_response(ep) for ep in endpoints]


@router.get("/webhooks/stats", response_model=DeliveryStatsResponse)
async def get_delivery_stats(
    endpoint_id: str | None = Query(None),
    since: datetime | None = Query(None),
    until: datetime | None = Query(None),
    tenant: TenantContext = Depends(require_tenant),
):
    analytics = _get_analytics()
    db = _get_db()
    async with db.get_session() as session:
        stats = await analytics.get_delivery_stats(
            session,
            tenant_id=tenant.tenant_id,
            endpoint_id=endpoint_id,
            since=since,
            until=until,
        )
        return DeliveryStatsResponse(**stats)


@router.get("/webhooks/deliveries/{delivery_id}", response_model=WebhookDeliveryResponse)
async def get_webhook_delivery(
    delivery_id: str,
    tenant: TenantContext = Depends(require_tenant),
):
    store = _get_store()
    db = _get_db()
    async with db.get_session() as session:
        delivery = await store.get(session, delivery_id, tenant_id=tenant.tenant_id)
        if delivery is None:
            raise HTTPException(status_code=404, detail="Delivery not found")
        return _delivery_to_response(delivery)


@router.post(
    "/webhooks/deliveries/{delivery_id}/retry",
    response_model=WebhookDeliveryResponse,
)
async def retry_webhook_delivery(
    delivery_id: str,
    tenant: TenantContext = Depends(require_tenant),
):
    """Re-queue a failed or dead-lettered delivery with a fresh attempt budget."""
    try:
        delivery = await _get_dispatcher().redeliver(delivery_id, tenant_id=tenant.tenant_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Delivery not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return _delivery_to_response(delivery)


@router.get("/webhooks/{endpoint_id}", response_model=WebhookEndpointResponse)
async def get_webhook_endpoint(
    endpoint_id: str,
    tenant: TenantContext = Depends(require_tenant),
):
    registry = _get_registry()
    db = _get_db()
    async with db.get_session() as session:
        ep = await registry.get(session, endpoint_id, tenant_id=tenant.tenant_id)
        if ep is None:
            raise HTTPException(status_code=404, detail="Webhook endpoint not found")
        return _endpoint_to_response(ep)


@router.patch("/webhooks/{endpoint_id}", response_model=WebhookEndpointResponse)
async def update_webhook_endpoint(
    endpoint_id: str,
    body: WebhookEndpointUpdate,
    tenant: TenantContext = Depends(require_tenant),
):
    registry = _get_registry()
    db = _get_db()
    try:
        async with db.get_session() as session:
            ep = await registry.update(session, endpoint_id, body, tenant_id=tenant.tenant_id)
            return _endpoint_to_response(ep)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Webhook endpoint not found")
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=e.message)


@router.delete("/webhooks/{endpoint_id}", status_code=204)
async def delete_webhook_endpoint(
    endpoint_id: str,
    tenant: TenantContext = Depends(require_tenant),
):
    registry = _get_registry()
    db = _get_db()
    try:
        async with db.get_session() as session:
            await registry.delete(session, endpoint_id, tenant_id=tenant.tenant_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Webhook endpoint not found")
    return Response(status_code=204)


@router.post(
    "/webhooks/{endpoint_id}/rotate-secret",
    response_model=WebhookEndpointSecretResponse,
)
async def rotate_webhook_secret(
    endpoint_id: str,
    tenant: TenantContext = Depends(require_tenant),
):
    registry = _get_registry()
    db = _get_db()
    try:
        async with db.get_session() as session:
            ep = await registry.rotate_secret(session, endpoint_id, tenant_id=tenant.tenant_id)
            return _endpoint_to_response(ep, with_secret=True)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Webhook endpoint not found")


@router.post(
    "/webhooks/{endpoint_id}/test",
    response_model=WebhookDeliveryResponse,
    status_code=202,
)
async def test_webhook_endpoint(
    endpoint_id: str,
    tenant: TenantContext = Depends(require_tenant),
):
    """Queue a signed ``webhook.test`` ping to the endpoint."""
    try:
        delivery = await _get_dispatcher().dispatch_test(endpoint_id, tenant_id=tenant.tenant_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Webhook endpoint not found")
    return _delivery_to_response(delivery)


@router.get(
    "/webhooks/{endpoint_id}/deliveries",
    response_model=list[WebhookDeliveryResponse],
)
async def list_endpoint_deliveries(
    endpoint_id: str,
    event_type: str | None = Query(None),
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    tenant: TenantContext = Depends(require_tenant),
):
    if status is not None and status not in DELIVERY_STATUSES:
        raise HTTPException(
            status_code=422,
            detail=f"Invalid status: {status}. Valid statuses: {sorted(DELIVERY_STATUSES)}",
        )

    registry = _get_registry()
    store = _get_store()
    db = _get_db()
    async with db.get_session() as session:
        # Verify endpoint exists for this tenant
        ep = await registry.get(session, endpoint_id, tenant_id=tenant.tenant_id)
        if ep is None:
            raise HTTPException(status_code=404, detail="Webhook endpoint not found")
        deliveries = await store.list_deliveries(
            session,
            endpoint_id=endpoint_id,
            event_type=event_type,
            status=status,
            limit=limit,
            offset=offset,
        )
        return [_delivery_to_response(d) for d in deliveries]


@router.get("/webhooks/{endpoint_id}/health", response_model=EndpointHealthResponse)
async def get_endpoint_health(
    endpoint_id: str,
    window_hours: int = Query(24, ge=1, le=24 * 90),
    tenant: TenantContext = Depends(require_tenant),
):
    registry = _get_registry()
    analytics = _get_analytics()
    db = _get_db()
    async with db.get_session() as session:
        ep = await registry.get(session, endpoint_id, tenant_id=tenant.tenant_id)
        if ep is None:
            raise HTTPException(status_code=404, detail="Webhook endpoint not found")
        health = await analytics.get_endpoint_health(session, endpoint_id, window_hours=window_hours)
        return EndpointHealthResponse(**health)
