"""
Pytest fixtures for thumbpick tests.
Provides a per-test database, storage directories and the API test client.

Uses a SQLite file per test so the suite runs without a database server.
"""

import os
import tempfile
from pathlib import Path
from typing import AsyncGenerator

import pytest
import sqlalchemy as sa
from databases import Database

# Set up test environment BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["THUMBPICK_TEST_MODE"] = "1"
os.environ["THUMBPICK_STORAGE_PATH"] = _test_temp_dir
os.environ["THUMBPICK_DATABASE_URL"] = f"sqlite:///{_test_temp_dir}/thumbpick.db"
os.environ["THUMBPICK_AUDIT_LOG_ENABLED"] = "false"
os.environ["THUMBPICK_RATE_LIMIT_ENABLED"] = "false"
os.environ["THUMBPICK_AI_API_KEY"] = ""

from api.candidate_store import CandidateStore  # noqa: E402
from api.database import metadata  # noqa: E402
from worker.orchestrator import ThumbnailGenerator  # noqa: E402
from worker.uploader import ArtifactUploader, FrameStaging  # noqa: E402

from fakes import FakeAIScorer, FakeExtractor, FakePixelScorer, FakeResolver, FakeStorage  # noqa: E402


def _create_tables(db_url: str) -> None:
    """Create all tables in the test database."""
    engine = sa.create_engine(db_url)
    metadata.create_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    """Create a fresh SQLite database with all tables and return its URL."""
    db_url = f"sqlite:///{tmp_path / 'test.db'}"
    _create_tables(db_url)
    return db_url


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """Connect to the per-test database."""
    database = Database(test_db_url)
    await database.connect()

    yield database

    await database.disconnect()


@pytest.fixture(scope="function")
def test_storage(tmp_path: Path) -> dict:
    """Create test storage directories."""
    staging_dir = tmp_path / "staging"
    thumbnails_dir = tmp_path / "thumbnails"
    uploads_dir = tmp_path / "uploads"

    staging_dir.mkdir(parents=True, exist_ok=True)
    thumbnails_dir.mkdir(parents=True, exist_ok=True)
    uploads_dir.mkdir(parents=True, exist_ok=True)

    return {
        "staging": staging_dir,
        "thumbnails": thumbnails_dir,
        "uploads": uploads_dir,
    }


@pytest.fixture
async def store(test_database: Database) -> CandidateStore:
    return CandidateStore(test_database)


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def make_generator(test_storage: dict, fake_storage: FakeStorage):
    """Factory for a generator wired to fakes; keyword arguments override the defaults."""

    def _make(store: CandidateStore, **overrides) -> ThumbnailGenerator:
        options = {
            "resolver": FakeResolver(duration=200.0),
            "extractor": FakeExtractor(),
            "ai_scorer": FakeAIScorer(),
            "pixel_scorer": FakePixelScorer(),
            "staging": FrameStaging(test_storage["staging"]),
            "uploader": ArtifactUploader(fake_storage, base_delay=0, max_delay=0),
            "run_deadline": 10.0,
        }
        options.update(overrides)
        uploader = options.pop("uploader")
        resolver = options.pop("resolver")
        return ThumbnailGenerator(resolver=resolver, store=store, uploader=uploader, **options)

    return _make


@pytest.fixture(scope="function")
def api_client(test_db_url: str, make_generator, monkeypatch):
    """
    Create a test client for the thumbnail API.

    The app manages its own database connection through its lifespan; the
    module-level database is swapped for the per-test one and the generator
    is wired to fakes. Yields (client, generator).
    """
    from fastapi.testclient import TestClient

    import api.common
    import api.thumbnail_api
    from api.thumbnail_api import app, get_generator, get_store

    database = Database(test_db_url)
    monkeypatch.setattr(api.thumbnail_api, "database", database)
    monkeypatch.setattr(api.common, "database", database)
    monkeypatch.setattr(api.thumbnail_api, "_store", None)
    monkeypatch.setattr(api.thumbnail_api, "_generator", None)

    candidate_store = CandidateStore(database)
    generator = make_generator(candidate_store)
    app.dependency_overrides[get_store] = lambda: candidate_store
    app.dependency_overrides[get_generator] = lambda: generator

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, generator

    app.dependency_overrides.clear()
