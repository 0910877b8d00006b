"""Shared fixtures — module-scoped DB template eliminates per-test init_db overhead."""

import shutil

import pytest

from contextchat.indexer.embedder import EmbeddingCache, Embedder
from contextchat.storage.sqlite_store import SqliteStore
from tests.helpers import RecordingNotifier, _make_chat_provider


@pytest.fixture(scope="module")
def _module_db_path(tmp_path_factory):
    """Create one fully-initialized DB per test module as a template."""
    db_path = tmp_path_factory.mktemp("db") / "test.db"
    s = SqliteStore(db_path)
    s.init_db()
    s._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
    s._conn.close()
    return db_path


@pytest.fixture
def db_path(tmp_path, _module_db_path):
    """Copy the template DB into a per-test tmp dir (fast file copy, no init_db)."""
    path = tmp_path / "test.db"
    shutil.copy2(_module_db_path, path)
    return path


@pytest.fixture
def store(db_path):
    """Per-test SqliteStore backed by a pre-initialized DB copy."""
    return SqliteStore(db_path)


@pytest.fixture
def provider():
    """MagicMock Gemini provider with deterministic embeddings and canned replies."""
    return _make_chat_provider()


@pytest.fixture
def embedder(provider):
    """Embedder over the mock provider with a fresh cache and no retry sleeps."""
    return Embedder(provider=provider, cache=EmbeddingCache(), retry_delay=0)


@pytest.fixture
def notifier():
    return RecordingNotifier()
