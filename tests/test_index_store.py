"""Tests for the IndexStore: indexing, deletion, renames, batches and health."""

import pytest
from sqlalchemy import create_engine, text

from notebase.exceptions import (
    ErrorCode,
    MigrationError,
    NoteNotFoundError,
    NoteValidationError,
)
from notebase.models.migrations import (
    CURRENT_SCHEMA_VERSION,
    MIGRATIONS,
    get_schema_version,
    run_migrations,
)
from notebase.storage.index_store import IndexStore


def _count(store, sql, **params):
    with store.reader() as session:
        return session.execute(text(sql), params).scalar_one()


class TestIndexing:
    """Tests for index_note and the rows derived from content."""

    def test_index_creates_note_row(self, index_store, index_text, notes_root):
        note_id = index_text("alpha", "Hello [estado::listo] #tag")
        note = index_store.get_note_by_name("alpha")
        assert note.id == note_id
        assert note.path == str(notes_root / "alpha.md")
        assert note.folder is None
        assert index_store.get_note_tags(note_id) == ["tag"]
        props = index_store.get_inline_properties(note_id)
        assert [(p.key, p.raw_value) for p in props] == [("estado", "listo")]

    def test_reindex_replaces_derived_rows(self, index_store, index_text):
        note_id = index_text("alpha", "[a::1] #one")
        assert index_text("alpha", "[b::2] #two") == note_id
        assert [p.key for p in index_store.get_inline_properties(note_id)] == ["b"]
        assert index_store.get_note_tags(note_id) == ["two"]
        assert index_store.tags.get_tag("one").usage_count == 0
        assert index_store.count_notes() == 1

    def test_name_conflict_across_paths(self, index_store, index_text):
        index_text("dup", "first")
        with pytest.raises(NoteValidationError) as exc_info:
            index_text("dup", "second", folder="other")
        assert exc_info.value.code == ErrorCode.NOTE_NAME_CONFLICT
        assert index_store.count_notes() == 1

    def test_link_property_resolves_later_note(self, index_store, index_text):
        source = index_text("source", "[autor::[[Target]]]")
        prop = index_store.get_inline_properties(source)[0]
        assert prop.linked_note_id is None
        target = index_text("Target", "I am the target")
        prop = index_store.get_inline_properties(source)[0]
        assert prop.linked_note_id == target

    def test_sync_inline_properties(self, index_store, index_text):
        note_id = index_text("alpha", "[a::1]")
        index_store.sync_inline_properties(note_id, "[a::2, b::3]")
        props = index_store.get_inline_properties(note_id)
        assert [(p.key, p.raw_value, p.group_id) for p in props] == [
            ("a", "2", 1),
            ("b", "3", 1),
        ]

    def test_get_property_value_and_location(self, index_store, index_text):
        content = "Intro\n[juego::Minecraft, precio::10]\n[solo::x]"
        note_id = index_text("games", content)
        assert index_store.get_property_value(note_id, 1, "precio").raw_string() == "10"
        location = index_store.get_group_location(note_id, 1)
        assert content[location.char_start:location.char_end] == (
            "[juego::Minecraft, precio::10]"
        )
        single = [p for p in index_store.get_inline_properties(note_id) if p.key == "solo"][0]
        loc = index_store.get_group_location(note_id, -single.row_id)
        assert content[loc.char_start:loc.char_end] == "[solo::x]"
        assert index_store.get_property_value(note_id, -single.row_id, "solo").value == "x"

    def test_identical_groups_ordered_back_to_front(self, index_store, index_text):
        content = "[a::1, b::2]\n[a::1, b::2]\n[a::1, b::3]"
        note_id = index_text("twins", content)
        locations = index_store.get_identical_groups(note_id, 1)
        assert [loc.group_id for loc in locations] == [2, 1]

    def test_identical_groups_compare_source_text(self, index_store, index_text):
        content = "[a::1, b::2]\n[a::1.0, b::2]\n[a::1,b::2]\n[a::1, b::2]"
        note_id = index_text("near", content)
        locations = index_store.get_identical_groups(note_id, 1)
        assert [loc.group_id for loc in locations] == [4, 1]
        assert index_store.get_identical_groups(note_id, 1, content) == locations
        assert [
            loc.group_id for loc in index_store.get_identical_groups(note_id, 2)
        ] == [2]


class TestDeletion:
    """Tests for delete cascades and orphan cleanup."""

    def test_delete_note_removes_everything(self, index_store, index_text):
        note_id = index_text("gone", "[a::1, b::2] #bye searchable")
        index_store.embeddings.insert_embedding(
            index_store.get_note_by_name("gone").path, 0, "chunk", [0.1, 0.2]
        )
        assert index_store.delete_note("gone") is True
        assert index_store.get_note_by_name("gone") is None
        assert index_store.get_inline_properties(note_id) == []
        assert index_store.search_notes("searchable") == []
        assert index_store.tags.get_tag("bye").usage_count == 0
        assert index_store.embeddings.count_embeddings() == 0
        assert _count(index_store, "SELECT COUNT(*) FROM notes_fts") == 0

    def test_delete_unknown_note_returns_false(self, index_store):
        assert index_store.delete_note("missing") is False

    def test_delete_clears_incoming_links(self, index_store, index_text):
        source = index_text("source", "[autor::[[Target]]]")
        index_text("Target", "body")
        index_store.delete_note("Target")
        assert index_store.get_inline_properties(source)[0].linked_note_id is None

    def test_delete_notes_in_folder(self, index_store, index_text):
        index_text("a", "x", folder="proj")
        index_text("b", "x", folder="proj/sub")
        index_text("c", "x", folder="project")
        assert index_store.delete_notes_in_folder("proj") == 2
        assert [n.name for n in index_store.list_notes()] == ["c"]

    def test_cleanup_orphaned_notes(self, index_store, index_text, notes_root):
        index_text("keep", "x #shared")
        index_text("lose", "y #shared #only")
        removed = index_store.cleanup_orphaned_notes([str(notes_root / "keep.md")])
        assert removed == 1
        assert [n.name for n in index_store.list_notes()] == ["keep"]
        assert index_store.tags.get_tag("shared").usage_count == 1
        assert index_store.tags.get_tag("only").usage_count == 0


class TestRenames:
    """Tests for note and folder renames."""

    def test_rename_keeps_id_and_links(self, index_store, index_text, notes_root):
        note_id = index_text("Old", "target body")
        source = index_text("source", "[ref::[[New]]]")
        renamed = index_store.rename_note("Old", "New", str(notes_root / "New.md"))
        assert renamed.id == note_id
        assert renamed.name == "New"
        assert index_store.get_note_by_name("Old") is None
        assert index_store.get_inline_properties(source)[0].linked_note_id == note_id
        assert "New" in [r.note_name for r in index_store.search_notes("New")]

    def test_rename_to_taken_name(self, index_store, index_text, notes_root):
        index_text("a", "x")
        index_text("b", "y")
        with pytest.raises(NoteValidationError) as exc_info:
            index_store.rename_note("a", "b", str(notes_root / "b.md"))
        assert exc_info.value.code == ErrorCode.NOTE_ALREADY_EXISTS

    def test_rename_missing_note(self, index_store, notes_root):
        with pytest.raises(NoteNotFoundError):
            index_store.rename_note("nope", "new", str(notes_root / "new.md"))

    def test_update_notes_folder(self, index_store, index_text, notes_root):
        index_text("a", "x", folder="old")
        index_text("b", "x", folder="old/deep")
        index_store.upsert_folder("old", icon="📁")
        moved = index_store.update_notes_folder("old", "new", notes_root)
        assert moved == 2
        a = index_store.get_note_by_name("a")
        b = index_store.get_note_by_name("b")
        assert a.folder == "new"
        assert a.path == str(notes_root / "new" / "a.md")
        assert b.folder == "new/deep"
        assert b.path == str(notes_root / "new" / "deep" / "b.md")
        assert [f.path for f in index_store.list_folders() if f.icon] == ["new"]


class TestListing:
    """Tests for listing, ordering and hidden folders."""

    def test_list_notes_order_and_folder(self, index_store, index_text):
        index_text("b", "x", folder="f")
        index_text("a", "x", folder="f")
        index_text("c", "x")
        index_store.update_note_order("b", -1)
        assert [n.name for n in index_store.list_notes(folder="f")] == ["b", "a"]
        assert len(index_store.list_notes()) == 3

    def test_hidden_folder_excluded(self, index_store, index_text):
        index_text("visible", "x")
        index_text("trashed", "x", folder=".trash")
        assert [n.name for n in index_store.list_notes()] == ["visible"]
        assert len(index_store.list_notes(include_hidden=True)) == 2
        assert [n.name for n in index_store.get_recent_notes()] == ["visible"]

    def test_list_folders_counts(self, index_store, index_text):
        index_text("a", "x", folder="work")
        index_text("b", "x", folder="work")
        index_store.upsert_folder("empty", color="#f00")
        folders = {f.path: f for f in index_store.list_folders()}
        assert folders["work"].note_count == 2
        assert folders["empty"].color == "#f00"
        assert folders["empty"].note_count == 0


class TestBatch:
    """Tests for explicit batches."""

    def test_batch_commits(self, index_store, index_text):
        with index_store.batch():
            index_text("a", "x")
            index_text("b", "y")
            assert index_store.count_notes() == 2
        assert index_store.count_notes() == 2

    def test_batch_rolls_back_on_error(self, index_store, index_text):
        with pytest.raises(RuntimeError):
            with index_store.batch():
                index_text("a", "x")
                raise RuntimeError("boom")
        assert index_store.count_notes() == 0

    def test_failed_operation_inside_batch_is_isolated(self, index_store, index_text):
        with index_store.batch():
            index_text("a", "x")
            with pytest.raises(NoteValidationError):
                index_text("a", "y", folder="elsewhere")
            index_text("b", "z")
        assert sorted(n.name for n in index_store.list_notes()) == ["a", "b"]


class TestHealth:
    """Tests for schema and health checks."""

    def test_healthy_database(self, index_store, index_text):
        index_text("a", "x")
        report = index_store.check_database_health()
        assert report.healthy
        assert report.schema_version == CURRENT_SCHEMA_VERSION
        assert report.note_count == report.fts_count == 1

    def test_rebuild_fts_from_files(self, index_store, index_text):
        index_text("a", "needle in file")
        with index_store._write_session("wipe") as session:
            session.execute(text("DELETE FROM notes_fts"))
        assert index_store.rebuild_fts() == 1
        assert [r.note_name for r in index_store.search_notes("needle")] == ["a"]

    def test_default_db_path_inside_notes_root(self, tmp_path, monkeypatch):
        from notebase.config import config

        monkeypatch.setattr(config, "database_path", None)
        store = IndexStore(notes_root=tmp_path)
        try:
            assert store.db_path == tmp_path / ".notebase" / "index.db"
            assert store.db_path.exists()
        finally:
            store.close()

    def test_reopen_keeps_data(self, index_store, index_text, test_config):
        index_text("persist", "x")
        index_store.close()
        reopened = IndexStore(db_path=test_config.database_path)
        try:
            assert reopened.get_note_by_name("persist") is not None
        finally:
            reopened.close()


class TestMigrations:
    """Tests for the versioned schema upgrade chain."""

    @staticmethod
    def _engine_at(path, version):
        engine = create_engine(f"sqlite:///{path}")
        with engine.begin() as conn:
            for step in MIGRATIONS[:version]:
                step(conn)
            conn.exec_driver_sql(
                "CREATE TABLE schema_version ("
                "id INTEGER PRIMARY KEY CHECK (id = 1), version INTEGER NOT NULL)"
            )
            conn.execute(
                text("INSERT INTO schema_version (id, version) VALUES (1, :v)"),
                {"v": version},
            )
        return engine

    def test_fts_rebuilt_without_stemmer(self, tmp_path):
        engine = self._engine_at(tmp_path / "old.db", 6)
        with engine.begin() as conn:
            conn.exec_driver_sql(
                "INSERT INTO notes_fts (rowid, name, content) "
                "VALUES (5, 'Shortcuts', 'keybindings for the editor')"
            )
        try:
            assert run_migrations(engine) == CURRENT_SCHEMA_VERSION
            with engine.connect() as conn:
                assert get_schema_version(conn) == CURRENT_SCHEMA_VERSION
                sql = conn.exec_driver_sql(
                    "SELECT sql FROM sqlite_master WHERE name = 'notes_fts'"
                ).scalar_one()
                assert "porter" not in sql
                rows = conn.exec_driver_sql(
                    "SELECT rowid FROM notes_fts WHERE notes_fts MATCH 'key*'"
                ).all()
                assert [r[0] for r in rows] == [5]
        finally:
            engine.dispose()

    def test_unversioned_database_starts_at_one(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'legacy.db'}")
        with engine.begin() as conn:
            MIGRATIONS[0](conn)
            conn.exec_driver_sql(
                "INSERT INTO notes (name, path, created_at, updated_at) "
                "VALUES ('kept', '/n/kept.md', 1, 1)"
            )
        try:
            assert run_migrations(engine) == CURRENT_SCHEMA_VERSION
            with engine.connect() as conn:
                names = conn.exec_driver_sql("SELECT name FROM notes").all()
            assert [n[0] for n in names] == ["kept"]
        finally:
            engine.dispose()

    def test_rerun_is_a_no_op(self, index_store):
        assert run_migrations(index_store.engine) == CURRENT_SCHEMA_VERSION

    def test_newer_database_is_refused(self, tmp_path):
        engine = self._engine_at(tmp_path / "future.db", 0)
        with engine.begin() as conn:
            conn.execute(
                text("UPDATE schema_version SET version = :v"),
                {"v": CURRENT_SCHEMA_VERSION + 1},
            )
        try:
            with pytest.raises(MigrationError):
                run_migrations(engine)
        finally:
            engine.dispose()

    def test_folders_rebuilt_with_id_and_timestamps(self, tmp_path):
        engine = self._engine_at(tmp_path / "v7.db", 7)
        with engine.begin() as conn:
            conn.exec_driver_sql(
                "INSERT INTO folders (path, icon, color, order_index, created_at) "
                "VALUES ('work', 'W', '#0f0', 3, 100)"
            )
        try:
            assert run_migrations(engine) == CURRENT_SCHEMA_VERSION
            with engine.connect() as conn:
                folder_cols = {
                    r[1] for r in conn.exec_driver_sql("PRAGMA table_info(folders)")
                }
                prop_cols = {
                    r[1]
                    for r in conn.exec_driver_sql(
                        "PRAGMA table_info(inline_properties)"
                    )
                }
                row = conn.exec_driver_sql(
                    "SELECT id, path, icon, color, order_index, updated_at "
                    "FROM folders"
                ).one()
            assert {"id", "icon_color", "updated_at"} <= folder_cols
            assert "updated_at" in prop_cols
            assert row[0] is not None
            assert tuple(row[1:]) == ("work", "W", "#0f0", 3, 100)
        finally:
            engine.dispose()

    def test_folder_rows_carry_id_and_update_time(self, index_store):
        created = index_store.upsert_folder("work", icon="W", icon_color="#123")
        assert created.id is not None
        assert created.icon_color == "#123"
        assert created.updated_at is not None
        updated = index_store.upsert_folder("work", color="#f00")
        assert updated.id == created.id
        assert updated.updated_at >= created.updated_at

    def test_inline_property_rows_have_update_time(self, index_store, index_text):
        index_text("alpha", "[a::1]")
        assert _count(
            index_store,
            "SELECT COUNT(*) FROM inline_properties WHERE updated_at > 0",
        ) == 1
