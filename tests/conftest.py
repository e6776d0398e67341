"""Shared test fixtures for Courier-Engine."""

import os
import pytest
from httpx import ASGITransport, AsyncClient


API_KEY = "test-admin-api-key"
TENANT_ID = "tenant-a"


@pytest.fixture
def api_key():
    return API_KEY


@pytest.fixture
def app():
    """Create a test app with in-memory DB and queue."""
    os.environ["COURIER_DB_URL"] = "sqlite+aiosqlite://"
    os.environ["COURIER_API_KEY"] = API_KEY
    os.environ["COURIER_ENVIRONMENT"] = "test"
    os.environ["COURIER_QUEUE_BACKEND"] = "memory"
    os.environ["COURIER_RUN_WORKER_IN_APP"] = "false"

    # Clear caches and singletons so new env vars take effect
    from courier_engine.common.config import get_settings
    get_settings.cache_clear()

    from courier_engine.deps import reset_singletons
    reset_singletons()

    from courier_engine.app import create_app
    return create_app()


@pytest.fixture
async def client(app):
    # Manually init DB since ASGITransport doesn't run lifespan
    from courier_engine.deps import get_db
    db = get_db()
    await db.init()
    await db.create_all()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await db.close()


@pytest.fixture
def admin_headers():
    return {"X-Courier-Api-Key": API_KEY, "X-Courier-Tenant": TENANT_ID}
