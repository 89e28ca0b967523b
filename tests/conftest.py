"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- Database fixtures (file-based SQLite per test, full schema)
- A controllable clock and a recording sleep
- An in-memory WooCommerce store served through httpx.MockTransport
- A fully wired StoreSyncService on top of all of the above
"""

import pytest

from src.cli.config import RemoteConfig, StoreSyncConfig, WebhookConfig
from src.clients.woocommerce import WooCommerceClient
from src.db.connection import create_engine_for_url, create_session_factory, init_schema
from src.services.sync_service import StoreSyncService
from tests.helpers import FakeClock, FakeWooStore, RecordingSleep

SITE_URL = "https://shop.example.com"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
async def db_engine(tmp_path):
    """File-based SQLite engine with every table created."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'storesync.db'}")
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


# ============================================================================
# Remote store
# ============================================================================


@pytest.fixture
def woo_store() -> FakeWooStore:
    return FakeWooStore()


@pytest.fixture
async def woo_client(woo_store, sleep):
    client = WooCommerceClient(
        site_url=SITE_URL,
        consumer_key="ck_test",
        consumer_secret="cs_test",
        max_retries=0,
        transport=woo_store.transport(),
        sleep=sleep,
    )
    yield client
    await client.close()


# ============================================================================
# Service graph
# ============================================================================


@pytest.fixture
def storesync_config() -> StoreSyncConfig:
    return StoreSyncConfig(
        remote=RemoteConfig(site_url=SITE_URL, consumer_key="ck_test", consumer_secret="cs_test"),
        webhook=WebhookConfig(secret="whsec_test"),
    )


@pytest.fixture
async def service(storesync_config, session_factory, woo_client, clock, sleep):
    svc = StoreSyncService(
        storesync_config, session_factory, client=woo_client, clock=clock, sleep=sleep
    )
    yield svc
    await svc.stop()
