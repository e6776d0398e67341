"""API key authentication and tenant resolution dependencies."""

import hmac
from dataclasses import dataclass

from fastapi import Header, HTTPException


@dataclass
class TenantContext:
    """Resolved tenant info available to request handlers."""
    tenant_id: str


async def require_api_key(
    x_courier_api_key: str = Header(..., alias="X-Courier-Api-Key"),
) -> str:
    """FastAPI dependency that validates admin API key from header."""
    from courier_engine.common.config import get_settings

    settings = get_settings()
    if not hmac.compare_digest(x_courier_api_key, settings.api_key):
        raise HTTPException(status_code=403, detail="Invalid API key")
    return x_courier_api_key


async def require_tenant(
    x_courier_tenant: str = Header(..., alias="X-Courier-Tenant", min_length=1),
) -> TenantContext:
    """FastAPI dependency that scopes admin calls to one tenant."""
    return TenantContext(tenant_id=x_courier_tenant)
