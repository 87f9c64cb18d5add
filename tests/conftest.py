"""Common test fixtures for the notebase engine."""

import tempfile
from pathlib import Path

import pytest

from notebase.config import config
from notebase.services.base_service import BaseService
from notebase.services.notes_service import NotesService
from notebase.storage.index_store import IndexStore


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def temp_dirs():
    """Create temporary directories for notes and database."""
    with tempfile.TemporaryDirectory() as notes_dir:
        with tempfile.TemporaryDirectory() as db_dir:
            yield Path(notes_dir), Path(db_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    notes_dir, db_dir = temp_dirs
    monkeypatch.setattr(config, "notes_dir", notes_dir)
    monkeypatch.setattr(config, "database_path", db_dir / "test_index.db")
    yield config


@pytest.fixture
def index_store(test_config):
    """An index over the temporary notes root."""
    store = IndexStore(
        db_path=test_config.database_path, notes_root=test_config.notes_dir
    )
    yield store
    store.close()


@pytest.fixture
def notes_root(test_config):
    return Path(test_config.notes_dir)


@pytest.fixture
def notes_service(index_store, notes_root):
    """A NotesService sharing the test index."""
    yield NotesService(notes_root=notes_root, store=index_store)


@pytest.fixture
def base_service(index_store):
    yield BaseService(index_store)


@pytest.fixture
def index_text(index_store, notes_root):
    """Write a note file and index it; returns the note id."""

    def _index(name: str, content: str, folder: str = None) -> int:
        directory = notes_root / folder if folder else notes_root
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{name}.md"
        path.write_text(content, encoding="utf-8")
        return index_store.index_note(name, str(path), content, folder)

    return _index
