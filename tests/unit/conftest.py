"""Pytest configuration and fixtures for unit tests."""

from datetime import date

import pytest

from kin.core.config import Settings
from kin.core.db_client import MEMORY_DB, DBClient
from kin.core.schema import init_db
from kin.services.completion_service import CompletionService
from kin.services.points_ledger import PointsLedger
from kin.services.store import SQLiteCompletionStore
from tests.unit.mocks import FakeVerifier, FixedClock, InMemoryObjectStore


TODAY = date(2024, 1, 6)  # A Saturday; with Sunday-start weeks this is the last day of the week


@pytest.fixture
async def db():
    """Fresh in-memory SQLite database with the full schema."""
    client = DBClient(MEMORY_DB)
    await init_db(client)
    yield client
    await client.close()


@pytest.fixture
def store(db: DBClient) -> SQLiteCompletionStore:
    return SQLiteCompletionStore(db)


@pytest.fixture
def ledger(store: SQLiteCompletionStore) -> PointsLedger:
    return PointsLedger(store)


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        openrouter_api_key="test-key",
        task_completion_points=10,
        weekly_goal_bonus_points=20,
        default_weekly_goal=3,
        week_start_day=6,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(TODAY)


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def object_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def service(
    store: SQLiteCompletionStore,
    object_store: InMemoryObjectStore,
    verifier: FakeVerifier,
    test_settings: Settings,
    clock: FixedClock,
) -> CompletionService:
    """CompletionService over the in-memory store with fake collaborators and a fixed clock."""
    return CompletionService(
        store=store,
        object_store=object_store,
        verifier=verifier,
        settings=test_settings,
        clock=clock,
    )


@pytest.fixture
def proof_image() -> bytes:
    return b"\xff\xd8\xff\xe0fake-jpeg-bytes"
