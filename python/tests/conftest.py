"""Pytest configuration and fixtures for chat core tests.

Test isolation strategy:
- Every test gets a fresh FakeTreeStore driven by a manual clock
- sql_store runs the same contract against an in-memory SQLite database
- Settings are rebuilt from a clean environment for every test
"""

from collections.abc import Generator

import pytest

from chatapp.config import clear_settings_cache
from chatapp.db import create_db_engine, create_session_factory, init_schema
from chatapp.storage.client import FakeStorageClient
from chatapp.store import FakeTreeStore, SqlTreeStore

SETTINGS_ENV_VARS = (
    "CHATAPP_ENV",
    "TREE_STORE_BACKEND",
    "DATABASE_URL",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
    "STORAGE_BUCKET",
    "CONTACT_MATCH_TIMEOUT_S",
    "UPLOAD_MAX_RETRIES",
    "UPLOAD_RETRY_BACKOFF_S",
    "DETERMINISTIC_CONVERSATION_IDS",
    "LOG_JSON",
)


class ManualClock:
    """Epoch-millisecond clock advanced explicitly by tests."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1) -> int:
        self.now += ms
        return self.now


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch) -> Generator[None, None, None]:
    """Run every test against default settings."""
    for name in SETTINGS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store(clock: ManualClock) -> FakeTreeStore:
    """Fresh in-memory tree store."""
    return FakeTreeStore(clock=clock)


@pytest.fixture
def sql_store(clock: ManualClock) -> Generator[SqlTreeStore, None, None]:
    """Tree store persisted in a private in-memory SQLite database."""
    engine = create_db_engine("sqlite+pysqlite:///:memory:")
    init_schema(engine)
    yield SqlTreeStore(create_session_factory(engine), clock=clock)
    engine.dispose()


@pytest.fixture
def storage() -> FakeStorageClient:
    return FakeStorageClient()
