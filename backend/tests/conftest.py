"""Test fixtures for ragforge."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset global singletons and environment between tests."""
    monkeypatch.setenv("RAGF_DB_PATH", str(tmp_path / "ragforge.db"))
    monkeypatch.setenv("RAGF_STORAGE_ROOT", str(tmp_path / "uploads"))
    monkeypatch.delenv("RAGF_CONFIG", raising=False)
    monkeypatch.delenv("RAGF_OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("RAGF_OPENROUTER_API_KEY", raising=False)

    from ragforge.api import dependencies as deps
    from ragforge.core.config import get_settings
    from ragforge.ingest.embeddings import clear_provider_cache

    clear_provider_cache()
    get_settings.cache_clear()
    deps.reset_dependencies()
    yield
    clear_provider_cache()
    get_settings.cache_clear()
    deps.reset_dependencies()


@pytest.fixture
def settings(tmp_path: Path):
    from ragforge.core.config import Settings

    return Settings(
        db_path=tmp_path / "ragforge.db",
        storage_root=tmp_path / "uploads",
        job_backoff_base=0.0,
        job_backoff_max=0.0,
    )


@pytest.fixture
def db(settings):
    from ragforge.db.sqlite import SQLiteDatabase

    database = SQLiteDatabase(settings.db_path)
    database.ensure_schema()
    yield database
    database.close()


@pytest.fixture
def knowledge_base(db, settings):
    from ragforge.ingest.pipeline import KnowledgeBaseRepository

    return KnowledgeBaseRepository(db, settings).create("test-kb")


@pytest.fixture(scope="session")
def sample_text() -> str:
    return "The capital of France is Paris. The Eiffel Tower is 330 meters tall."


@pytest.fixture
def document(db, knowledge_base):
    from ragforge.ingest.pipeline import DocumentRepository

    return DocumentRepository(db).create(knowledge_base.id, "notes.txt", "notes.txt", "text/plain")
