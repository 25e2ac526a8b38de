"""
Pytest configuration and shared fixtures.

Environment variables point the service at SQLite files in a temporary
directory. They must be set before any inbox_bridge import, since settings
and the main engine are created at import time.
"""

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="inbox_bridge_tests_")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DIR}/main.db")
os.environ.setdefault("TENANT_DATABASE_URL_TEMPLATE", f"sqlite+aiosqlite:///{_TEST_DIR}/{{db_name}}.db")
os.environ.setdefault("TENANT_SCHEMA_AUTOCREATE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio

# Clear settings cache before any app imports to ensure test env vars are used
from inbox_bridge.config import get_settings
get_settings.cache_clear()

from inbox_bridge.bot_routing import BotCallbackClient, BotRoutingCoordinator
from inbox_bridge.messaging import MessagingClient
from inbox_bridge.pipeline import WebhookIngestionPipeline
from inbox_bridge.pool import TenantConnectionPool
from inbox_bridge.storage import Base, SessionLocal, create_company, engine, init_tenant_schema

from tests.helpers import bot_replies, provider_accepts, unique_tenant_name

TENANT_URL_TEMPLATE = os.environ["TENANT_DATABASE_URL_TEMPLATE"]


@pytest_asyncio.fixture
async def main_db():
    """Main database session with fresh tables for each test."""
    from inbox_bridge import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with SessionLocal() as db:
        yield db

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def pool():
    tenant_pool = TenantConnectionPool(TENANT_URL_TEMPLATE, initializer=init_tenant_schema)
    yield tenant_pool
    await tenant_pool.close_all()


@pytest.fixture
def tenant_name() -> str:
    return unique_tenant_name()


@pytest_asyncio.fixture
async def tenant_engine(pool, tenant_name):
    return await pool.get_connection(tenant_name)


@pytest_asyncio.fixture
async def company(main_db, tenant_name):
    return await create_company(main_db, name="Acme", database_name=tenant_name, api_key="acme-key")


@pytest.fixture
def bot_transport():
    """Bot hook stub; override in a test module to change its behaviour."""
    return bot_replies()


@pytest.fixture
def provider_transport():
    return provider_accepts()


@pytest_asyncio.fixture
async def pipeline(pool, bot_transport, provider_transport):
    callbacks = BotCallbackClient(timeout=5.0, transport=bot_transport.transport)
    messaging = MessagingClient("http://provider.test/v3", transport=provider_transport.transport)
    yield WebhookIngestionPipeline(pool, BotRoutingCoordinator(callbacks, messaging))
    await callbacks.aclose()
    await messaging.aclose()
