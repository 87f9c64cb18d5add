"""Tests for filesystem sync into the index."""

import os
import time

import pytest

from notebase.services.sync_service import NoteSync
from notebase.storage.index_store import IndexStore


@pytest.fixture
def sync(index_store, notes_root):
    return NoteSync(index_store, notes_root)


def _write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _touch_future(path, seconds=120):
    future = time.time() + seconds
    os.utime(path, (future, future))


class TestScan:
    """Tests for NoteSync.scan."""

    def test_finds_markdown_recursively(self, sync, notes_root):
        _write(notes_root / "a.md", "a")
        _write(notes_root / "sub" / "deep" / "b.md", "b")
        _write(notes_root / "sub" / "readme.txt", "not a note")
        assert [p.name for p in sync.scan()] == ["a.md", "b.md"]

    def test_skips_dot_dirs_but_keeps_hidden_folders(self, sync, notes_root):
        _write(notes_root / ".git" / "x.md", "x")
        _write(notes_root / ".notebase" / "y.md", "y")
        _write(notes_root / ".trash" / "old.md", "old")
        _write(notes_root / ".draft.md", "dot file")
        assert [p.name for p in sync.scan()] == ["old.md"]

    def test_missing_root(self, index_store, tmp_path):
        assert NoteSync(index_store, tmp_path / "absent").scan() == []

    def test_needs_a_root(self, temp_dirs):
        _, db_dir = temp_dirs
        store = IndexStore(db_path=db_dir / "rootless.db")
        try:
            with pytest.raises(ValueError):
                NoteSync(store)
        finally:
            store.close()


class TestIndexAllNotes:
    """Tests for incremental and forced indexing."""

    def test_first_pass_indexes_everything(self, sync, index_store, notes_root):
        _write(notes_root / "a.md", "[k::1] #one")
        _write(notes_root / "folder" / "b.md", "[[a]]")
        report = sync.index_all_notes()
        assert (report.scanned, report.indexed, report.skipped) == (2, 2, 0)
        b = index_store.get_note_by_name("b")
        assert b.folder == "folder"
        assert [t.name for t in index_store.get_tags()] == ["one"]

    def test_unchanged_files_are_skipped(self, sync, notes_root):
        _write(notes_root / "a.md", "a")
        sync.index_all_notes()
        report = sync.index_all_notes()
        assert report.indexed == 0
        assert report.skipped == 1

    def test_modified_file_is_reindexed(self, sync, index_store, notes_root):
        path = _write(notes_root / "a.md", "[estado::todo]")
        sync.index_all_notes()
        path.write_text("[estado::done]", encoding="utf-8")
        _touch_future(path)
        report = sync.index_all_notes()
        assert report.indexed == 1
        note = index_store.get_note_by_name("a")
        assert index_store.get_inline_properties(note.id)[0].raw_value == "done"

    def test_force(self, sync, notes_root):
        _write(notes_root / "a.md", "a")
        _write(notes_root / "b.md", "b")
        sync.index_all_notes()
        assert sync.index_all_notes(force=True).indexed == 2

    def test_hidden_notes_indexed_but_not_listed(self, sync, index_store, notes_root):
        _write(notes_root / ".trash" / "gone.md", "gone")
        sync.index_all_notes()
        assert index_store.list_notes() == []
        assert [n.name for n in index_store.list_notes(include_hidden=True)] == ["gone"]

    def test_failures_do_not_stop_the_pass(self, sync, index_store, notes_root):
        (notes_root / "bad.md").write_bytes(b"\xff\xfe\xfa broken")
        _write(notes_root / "good.md", "fine")
        report = sync.index_all_notes()
        assert not report.ok
        assert list(report.failures) == [str(notes_root / "bad.md")]
        assert report.indexed == 1
        assert index_store.get_note_by_name("good") is not None

    def test_name_conflict_is_reported(self, sync, index_store, notes_root):
        _write(notes_root / "a" / "same.md", "first")
        _write(notes_root / "b" / "same.md", "second")
        report = sync.index_all_notes()
        assert report.indexed == 1
        assert list(report.failures) == [str(notes_root / "b" / "same.md")]
        assert index_store.get_note_by_name("same").folder == "a"


class TestOrphans:
    """Tests for removing index rows of deleted files."""

    def test_sync_reaps_deleted_files(self, sync, index_store, notes_root):
        path = _write(notes_root / "a.md", "[k::v] #tag words")
        _write(notes_root / "b.md", "b")
        sync.sync()
        path.unlink()
        report = sync.sync()
        assert report.removed == 1
        assert index_store.get_note_by_name("a") is None
        assert index_store.search_notes("words") == []
        assert {t.name: t.usage_count for t in index_store.get_tags()} == {"tag": 0}

    def test_reap_with_explicit_list(self, sync, index_store, notes_root):
        _write(notes_root / "a.md", "a")
        _write(notes_root / "b.md", "b")
        sync.index_all_notes()
        assert sync.reap_orphans([notes_root / "a.md"]) == 1
        assert [n.name for n in index_store.list_notes()] == ["a"]
