"""SQLite index over a folder of Markdown notes.

The files on disk are the source of truth; this store keeps the derived
index (notes, FTS rows, tags, inline properties, embeddings, bases) in
step with them. Writes are serialized by a process-local lock and each
write operation is one transaction. Batch indexers may open an explicit
batch, in which case every operation runs inside its own SAVEPOINT.
"""
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from sqlalchemy import select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notebase.config import config
from notebase.exceptions import (DatabaseCorruptionError, ErrorCode,
                                 NoteNotFoundError, NoteValidationError,
                                 NotebaseError, StorageError)
from notebase.models.db_models import DBFolder, DBNote, get_session_factory, init_db
from notebase.models.migrations import get_schema_version
from notebase.models.properties import InlineProperty, PropertyType, PropertyValue
from notebase.models.schema import (FolderInfo, GroupedRecord, HealthReport,
                                    NoteMetadata, PropertyLocation, SearchResult,
                                    TagInfo, now_ts)
from notebase.storage.base_repository import BaseRepository
from notebase.storage.embedding_store import EmbeddingRepository
from notebase.storage.fts_index import FtsIndex
from notebase.storage.inline_parser import parse_inline_properties
from notebase.storage.markdown_parser import extract_all_tags
from notebase.storage.record_repository import RecordRepository
from notebase.storage.tag_repository import TagRepository
from notebase.utils import escape_like_pattern, hidden_filter_sql

logger = logging.getLogger(__name__)


class IndexStore:
    """The note index.

    Args:
        db_path: SQLite file. Defaults to ``<notes_root>/.notebase/index.db``.
        notes_root: Root folder of the notes, used for the default DB path.
        engine: Pre-configured engine (shares a connection pool).
        hidden_folders: Folder names excluded from listings and search.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        notes_root: Optional[Path] = None,
        engine: Optional[Engine] = None,
        hidden_folders: Optional[Iterable[str]] = None,
    ):
        self.notes_root = Path(notes_root) if notes_root else None
        if engine is not None:
            self.engine = engine
            self.db_path = Path(engine.url.database) if engine.url.database else None
        else:
            self.db_path = Path(db_path) if db_path else config.get_db_path(self.notes_root)
            self.engine = init_db(self.db_path)
        self.session_factory = get_session_factory(self.engine)

        self.hidden_folders: List[str] = list(
            hidden_folders if hidden_folders is not None else config.hidden_folders
        )
        self.search_limit = config.search_limit
        self.snippet_open = config.snippet_open
        self.snippet_close = config.snippet_close
        self.snippet_tokens = config.snippet_tokens
        self.generic_record_keys: List[str] = list(config.generic_record_keys)

        self._write_lock = threading.RLock()
        self._batch_session: Optional[Session] = None
        self._batch_thread: Optional[int] = None

        self.tags = TagRepository(self)
        self.fts = FtsIndex(self)
        self.embeddings = EmbeddingRepository(self)
        self.bases = BaseRepository(self)
        self.records = RecordRepository(self)

        logger.info(f"IndexStore opened: db={self.db_path}")

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    @staticmethod
    def _storage_error(operation: str, error: Exception) -> StorageError:
        message = str(error).lower()
        if "malformed" in message or "not a database" in message:
            return DatabaseCorruptionError(
                f"Index database is corrupted ({operation})", original_error=error
            )
        return StorageError(
            f"Index operation '{operation}' failed",
            operation=operation,
            code=ErrorCode.STORAGE_WRITE_FAILED,
            original_error=error,
        )

    def _in_batch_thread(self) -> bool:
        return (
            self._batch_session is not None
            and self._batch_thread == threading.get_ident()
        )

    @contextmanager
    def _write_session(self, operation: str) -> Iterator[Session]:
        """Session for one atomic write; rolled back entirely on any error."""
        with self._write_lock:
            try:
                if self._in_batch_thread():
                    with self._batch_session.begin_nested():
                        yield self._batch_session
                else:
                    with self.session_factory() as session:
                        with session.begin():
                            yield session
            except SQLAlchemyError as e:
                logger.error(f"Write '{operation}' rolled back: {e}")
                raise self._storage_error(operation, e) from e

    @contextmanager
    def _read_session(self, operation: str, translate: bool = True) -> Iterator[Session]:
        """Session on a pooled connection; sees pending batch writes on the batch thread."""
        if self._in_batch_thread():
            yield self._batch_session
            return
        try:
            with self.session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            if not translate:
                raise
            raise self._storage_error(operation, e) from e

    def begin_batch(self) -> None:
        """Open a long-lived transaction for a batch of index operations.

        Must be finished with :meth:`commit_batch` or :meth:`rollback_batch`
        from the same thread.
        """
        self._write_lock.acquire()
        if self._batch_session is not None:
            self._write_lock.release()
            raise StorageError("A batch is already open", operation="begin_batch")
        try:
            session = self.session_factory()
            session.begin()
        except SQLAlchemyError as e:
            self._write_lock.release()
            raise self._storage_error("begin_batch", e) from e
        self._batch_session = session
        self._batch_thread = threading.get_ident()

    def _end_batch(self, commit: bool) -> None:
        session = self._batch_session
        if session is None:
            raise StorageError("No batch is open", operation="end_batch")
        try:
            if commit:
                session.commit()
            else:
                session.rollback()
        except SQLAlchemyError as e:
            session.rollback()
            raise self._storage_error("commit_batch", e) from e
        finally:
            session.close()
            self._batch_session = None
            self._batch_thread = None
            self._write_lock.release()

    def commit_batch(self) -> None:
        self._end_batch(commit=True)

    def rollback_batch(self) -> None:
        self._end_batch(commit=False)

    @contextmanager
    def batch(self) -> Iterator["IndexStore"]:
        """Context manager form: commit on success, roll back on error."""
        self.begin_batch()
        try:
            yield self
        except BaseException:
            self.rollback_batch()
            raise
        self.commit_batch()

    def clone_connection(self) -> "IndexStore":
        """An independent store on the same file, with its own pool."""
        return IndexStore(db_path=self.db_path, hidden_folders=self.hidden_folders)

    @contextmanager
    def reader(self) -> Iterator[Session]:
        """Public read-only session for ad-hoc queries."""
        with self._read_session("reader") as session:
            yield session

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_metadata(row: Any) -> NoteMetadata:
        if isinstance(row, DBNote):
            data = {c: getattr(row, c) for c in NoteMetadata.model_fields}
        else:
            data = {c: row[c] for c in NoteMetadata.model_fields if c in row}
        return NoteMetadata(**data)

    @staticmethod
    def _row_to_property(row: Mapping[str, Any]) -> InlineProperty:
        value = PropertyValue.from_columns(
            row["property_type"], row["value_text"], row["value_number"], row["value_bool"]
        )
        return InlineProperty(
            key=row["property_key"],
            value=value,
            raw_value=value.raw_string(),
            line_number=row["line_number"],
            char_start=row["char_start"],
            char_end=row["char_end"],
            group_id=row["group_id"],
            linked_note_id=row["linked_note_id"],
            note_id=row["note_id"],
            row_id=row["id"],
        )

    def _require_note(self, session: Session, name: str) -> DBNote:
        note = session.scalar(select(DBNote).where(DBNote.name == name))
        if note is None:
            raise NoteNotFoundError(name)
        return note

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def index_note(
        self, name: str, path: str, content: str, folder: Optional[str] = None
    ) -> int:
        """Insert or refresh a note and everything derived from its content.

        Note row, FTS row, inline properties, link resolution and tag set
        are all updated in one transaction.

        Raises:
            NoteValidationError: Another note at a different path owns ``name``.
        """
        path = str(path)
        tags = extract_all_tags(content)
        properties = parse_inline_properties(content)
        now = now_ts()

        with self._write_session("index_note") as session:
            owner = session.execute(
                text("SELECT id, path FROM notes WHERE name = :name"), {"name": name}
            ).first()
            if owner is not None and owner.path != path:
                raise NoteValidationError(
                    f"Note name '{name}' is already used by another file",
                    field="name",
                    value=name,
                    code=ErrorCode.NOTE_NAME_CONFLICT,
                )
            session.execute(
                text(
                    "INSERT INTO notes (name, path, folder, created_at, updated_at) "
                    "VALUES (:name, :path, :folder, :now, :now) "
                    "ON CONFLICT(path) DO UPDATE SET name = excluded.name, "
                    "folder = excluded.folder, updated_at = excluded.updated_at"
                ),
                {"name": name, "path": path, "folder": folder, "now": now},
            )
            note_id = session.execute(
                text("SELECT id FROM notes WHERE path = :path"), {"path": path}
            ).scalar_one()

            self._write_fts(session, note_id, name, content)
            self._replace_properties(session, note_id, properties, now)
            self._resolve_links_to(session, note_id, name)
            self.tags.reconcile(session, note_id, tags)

        logger.debug(
            f"Indexed note '{name}' (id={note_id}, {len(properties)} properties, "
            f"{len(tags)} tags)"
        )
        return note_id

    def sync_inline_properties(self, note_id: int, content: str) -> None:
        """Refresh everything derived from new content of an indexed note.

        Used after the content of a note was rewritten in place; name,
        path and folder stay as they are.
        """
        with self._read_session("sync_inline_properties") as session:
            note = session.get(DBNote, note_id)
            if note is None:
                raise NoteNotFoundError(str(note_id))
            name, path, folder = note.name, note.path, note.folder
        self.index_note(name, path, content, folder)

    @staticmethod
    def _write_fts(session: Session, note_id: int, name: str, content: str) -> None:
        session.execute(text("DELETE FROM notes_fts WHERE rowid = :id"), {"id": note_id})
        session.execute(
            text("INSERT INTO notes_fts (rowid, name, content) VALUES (:id, :name, :content)"),
            {"id": note_id, "name": name, "content": content},
        )

    def _replace_properties(
        self,
        session: Session,
        note_id: int,
        properties: List[InlineProperty],
        now: int,
    ) -> None:
        session.execute(
            text("DELETE FROM inline_properties WHERE note_id = :id"), {"id": note_id}
        )
        for prop in properties:
            linked_id = None
            if prop.value.type == PropertyType.LINK:
                linked_id = session.execute(
                    text("SELECT id FROM notes WHERE name = :name"),
                    {"name": prop.value.value},
                ).scalar()
            value_text, value_number, value_bool = prop.value.to_columns()
            session.execute(
                text(
                    "INSERT INTO inline_properties (note_id, property_key, property_type, "
                    "value_text, value_number, value_bool, line_number, char_start, "
                    "char_end, group_id, linked_note_id, created_at, updated_at) VALUES "
                    "(:note_id, :key, :type, :vt, :vn, :vb, :line, :start, :end, "
                    ":group_id, :linked, :now, :now)"
                ),
                {
                    "note_id": note_id,
                    "key": prop.key,
                    "type": prop.value.type.value,
                    "vt": value_text,
                    "vn": value_number,
                    "vb": value_bool,
                    "line": prop.line_number,
                    "start": prop.char_start,
                    "end": prop.char_end,
                    "group_id": prop.group_id,
                    "linked": linked_id,
                    "now": now,
                },
            )

    @staticmethod
    def _resolve_links_to(session: Session, note_id: int, name: str) -> None:
        """Point dangling ``[[name]]`` link properties of other notes at this note."""
        session.execute(
            text(
                "UPDATE inline_properties SET linked_note_id = :id "
                "WHERE property_type = :link AND value_text = :name "
                "AND (linked_note_id IS NULL OR linked_note_id != :id)"
            ),
            {"id": note_id, "link": PropertyType.LINK.value, "name": name},
        )

    # ------------------------------------------------------------------
    # Deletion and cleanup
    # ------------------------------------------------------------------

    def _delete_note_rows(self, session: Session, note_id: int, path: str) -> None:
        self.tags.unlink_all(session, note_id)
        session.execute(text("DELETE FROM notes_fts WHERE rowid = :id"), {"id": note_id})
        session.execute(
            text("DELETE FROM inline_properties WHERE note_id = :id"), {"id": note_id}
        )
        session.execute(
            text(
                "UPDATE inline_properties SET linked_note_id = NULL "
                "WHERE linked_note_id = :id"
            ),
            {"id": note_id},
        )
        session.execute(
            text("DELETE FROM note_embeddings WHERE note_path = :path"), {"path": path}
        )
        session.execute(text("DELETE FROM notes WHERE id = :id"), {"id": note_id})

    def delete_note(self, name: str) -> bool:
        """Remove a note and everything that references it.

        Returns False when no note has that name.
        """
        with self._write_session("delete_note") as session:
            row = session.execute(
                text("SELECT id, path FROM notes WHERE name = :name"), {"name": name}
            ).first()
            if row is None:
                return False
            self._delete_note_rows(session, row.id, row.path)
        logger.info(f"Removed note '{name}' from the index")
        return True

    def delete_note_by_path(self, path: str) -> bool:
        with self._write_session("delete_note_by_path") as session:
            row = session.execute(
                text("SELECT id, path FROM notes WHERE path = :path"), {"path": str(path)}
            ).first()
            if row is None:
                return False
            self._delete_note_rows(session, row.id, row.path)
        return True

    def delete_notes_in_folder(self, folder: str) -> int:
        """Remove every note in ``folder`` and its subfolders; one transaction."""
        with self._write_session("delete_notes_in_folder") as session:
            rows = session.execute(
                text(
                    "SELECT id, path FROM notes WHERE folder = :folder "
                    "OR folder LIKE :below ESCAPE '\\'"
                ),
                {"folder": folder, "below": f"{escape_like_pattern(folder)}/%"},
            ).all()
            for row in rows:
                self._delete_note_rows(session, row.id, row.path)
        if rows:
            logger.info(f"Removed {len(rows)} notes under '{folder}' from the index")
        return len(rows)

    def cleanup_orphaned_notes(self, existing_paths: Iterable[str]) -> int:
        """Drop notes whose path is not in ``existing_paths``.

        Each orphan is removed in its own transaction; failures are logged
        and skipped. A final pass removes property and tag links whose note
        no longer exists and recounts tag usage.
        """
        existing = {str(p) for p in existing_paths}
        with self._read_session("cleanup_orphaned_notes") as session:
            indexed = session.execute(text("SELECT id, name, path FROM notes")).all()

        removed = 0
        for row in indexed:
            if row.path in existing:
                continue
            try:
                with self._write_session("remove_orphan") as session:
                    self._delete_note_rows(session, row.id, row.path)
                removed += 1
            except StorageError as e:
                logger.warning(f"Could not remove orphaned note '{row.name}': {e}")

        with self._write_session("remove_orphan_rows") as session:
            session.execute(
                text(
                    "DELETE FROM inline_properties "
                    "WHERE note_id NOT IN (SELECT id FROM notes)"
                )
            )
            session.execute(
                text("DELETE FROM note_tags WHERE note_id NOT IN (SELECT id FROM notes)")
            )
            session.execute(
                text(
                    "UPDATE tags SET usage_count = "
                    "(SELECT COUNT(*) FROM note_tags nt WHERE nt.tag_id = tags.id)"
                )
            )

        if removed:
            logger.info(f"Removed {removed} orphaned notes from the index")
        return removed

    # ------------------------------------------------------------------
    # Renames and moves
    # ------------------------------------------------------------------

    def rename_note(
        self,
        old_name: str,
        new_name: str,
        new_path: str,
        new_folder: Optional[str] = None,
    ) -> NoteMetadata:
        """Rename a note, keeping its id (and so every link pointing at it)."""
        new_path = str(new_path)
        with self._write_session("rename_note") as session:
            note = self._require_note(session, old_name)
            if new_name != old_name and session.scalar(
                select(DBNote.id).where(DBNote.name == new_name)
            ):
                raise NoteValidationError(
                    f"Note '{new_name}' already exists",
                    field="name",
                    value=new_name,
                    code=ErrorCode.NOTE_ALREADY_EXISTS,
                )
            old_path = note.path
            session.execute(
                text(
                    "UPDATE notes SET name = :name, path = :path, folder = :folder, "
                    "updated_at = :now WHERE id = :id"
                ),
                {
                    "name": new_name,
                    "path": new_path,
                    "folder": new_folder,
                    "now": now_ts(),
                    "id": note.id,
                },
            )
            session.execute(
                text("UPDATE notes_fts SET name = :name WHERE rowid = :id"),
                {"name": new_name, "id": note.id},
            )
            session.execute(
                text("UPDATE note_embeddings SET note_path = :new WHERE note_path = :old"),
                {"new": new_path, "old": old_path},
            )
            self._resolve_links_to(session, note.id, new_name)
            session.expire(note)
            return self._row_to_metadata(session.get(DBNote, note.id))

    def move_note_to_folder(
        self, name: str, folder: Optional[str], new_path: str
    ) -> NoteMetadata:
        return self.rename_note(name, name, new_path, folder)

    def update_notes_folder(
        self, old_folder: str, new_folder: str, notes_root: Optional[Path] = None
    ) -> int:
        """Re-home every note under ``old_folder`` to ``new_folder``.

        Folder values and path prefixes (and embedding keys) are rewritten
        in one transaction. Returns the number of notes updated.
        """
        root = Path(notes_root) if notes_root else self.notes_root
        if root is None:
            raise StorageError(
                "update_notes_folder needs a notes root", operation="update_notes_folder"
            )
        old_prefix = str(root / old_folder)
        new_prefix = str(root / new_folder)
        now = now_ts()

        with self._write_session("update_notes_folder") as session:
            rows = session.execute(
                text(
                    "SELECT id, path, folder FROM notes WHERE folder = :folder "
                    "OR folder LIKE :below ESCAPE '\\'"
                ),
                {"folder": old_folder, "below": f"{escape_like_pattern(old_folder)}/%"},
            ).all()
            for row in rows:
                folder = new_folder + row.folder[len(old_folder):]
                if row.path.startswith(old_prefix):
                    path = new_prefix + row.path[len(old_prefix):]
                else:
                    path = str(root / folder / Path(row.path).name)
                session.execute(
                    text(
                        "UPDATE notes SET folder = :folder, path = :path, "
                        "updated_at = :now WHERE id = :id"
                    ),
                    {"folder": folder, "path": path, "now": now, "id": row.id},
                )
                session.execute(
                    text(
                        "UPDATE note_embeddings SET note_path = :new "
                        "WHERE note_path = :old"
                    ),
                    {"new": path, "old": row.path},
                )
            self._rename_folder_rows(session, old_folder, new_folder)
        logger.info(f"Moved {len(rows)} notes from '{old_folder}' to '{new_folder}'")
        return len(rows)

    def update_note_order(self, name: str, order_index: int) -> None:
        with self._write_session("update_note_order") as session:
            note = self._require_note(session, name)
            note.order_index = order_index

    def set_note_icon(
        self, name: str, icon: Optional[str], color: Optional[str] = None
    ) -> None:
        with self._write_session("set_note_icon") as session:
            note = self._require_note(session, name)
            note.icon = icon
            note.icon_color = color

    # ------------------------------------------------------------------
    # Note look-ups
    # ------------------------------------------------------------------

    def get_note_by_name(self, name: str) -> Optional[NoteMetadata]:
        with self._read_session("get_note_by_name") as session:
            note = session.scalar(select(DBNote).where(DBNote.name == name))
            return self._row_to_metadata(note) if note else None

    def get_note_by_path(self, path: str) -> Optional[NoteMetadata]:
        with self._read_session("get_note_by_path") as session:
            note = session.scalar(select(DBNote).where(DBNote.path == str(path)))
            return self._row_to_metadata(note) if note else None

    def get_note_by_id(self, note_id: int) -> Optional[NoteMetadata]:
        with self._read_session("get_note_by_id") as session:
            note = session.get(DBNote, note_id)
            return self._row_to_metadata(note) if note else None

    def get_note_path_by_id(self, note_id: int) -> Optional[str]:
        with self._read_session("get_note_path_by_id") as session:
            return session.scalar(select(DBNote.path).where(DBNote.id == note_id))

    def list_notes(
        self, folder: Optional[str] = None, include_hidden: bool = False
    ) -> List[NoteMetadata]:
        """Notes ordered by ``order_index`` then name.

        ``folder`` restricts to that folder and its descendants. Notes in
        hidden folders are left out unless ``include_hidden``.
        """
        clauses = []
        params: Dict[str, Any] = {}
        if not include_hidden:
            hidden_sql, params = hidden_filter_sql("n", self.hidden_folders)
            clauses.append(hidden_sql)
        if folder:
            clauses.append("(n.folder = :folder OR n.folder LIKE :below ESCAPE '\\')")
            params["folder"] = folder
            params["below"] = f"{escape_like_pattern(folder)}/%"
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._read_session("list_notes") as session:
            rows = session.execute(
                text(f"SELECT n.* FROM notes n {where} ORDER BY n.order_index, n.name"),
                params,
            ).mappings().all()
        return [self._row_to_metadata(row) for row in rows]

    def get_recent_notes(self, limit: int = 10) -> List[NoteMetadata]:
        hidden_sql, params = hidden_filter_sql("n", self.hidden_folders)
        params["limit"] = limit
        with self._read_session("get_recent_notes") as session:
            rows = session.execute(
                text(
                    f"SELECT n.* FROM notes n WHERE {hidden_sql} "
                    "ORDER BY n.updated_at DESC, n.id DESC LIMIT :limit"
                ),
                params,
            ).mappings().all()
        return [self._row_to_metadata(row) for row in rows]

    def count_notes(self) -> int:
        with self._read_session("count_notes") as session:
            return session.execute(text("SELECT COUNT(*) FROM notes")).scalar_one()

    # ------------------------------------------------------------------
    # Search, tags, records (delegated)
    # ------------------------------------------------------------------

    def search_notes(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        return self.fts.search_notes(query, limit)

    def get_tags(self) -> List[TagInfo]:
        return self.tags.get_tags()

    def get_note_tags(self, note_id: int) -> List[str]:
        return self.tags.get_note_tags(note_id)

    def add_tag(self, note_id: int, tag: str) -> bool:
        return self.tags.add_tag(note_id, tag)

    def remove_tag(self, note_id: int, tag: str) -> bool:
        return self.tags.remove_tag(note_id, tag)

    def get_all_grouped_records(
        self, source_folder: Optional[str] = None
    ) -> List[GroupedRecord]:
        return self.records.get_all_grouped_records(source_folder)

    def get_records_by_property(
        self, key: str, source_folder: Optional[str] = None
    ) -> List[GroupedRecord]:
        return self.records.get_records_by_property(key, source_folder)

    def discover_related_columns(self, key: str) -> List[str]:
        return self.records.discover_related_columns(key)

    def clean_old_cache(self, days: Optional[int] = None) -> int:
        return self.embeddings.clean_old_cache(
            config.query_cache_days if days is None else days
        )

    # ------------------------------------------------------------------
    # Inline properties
    # ------------------------------------------------------------------

    def get_inline_properties(self, note_id: int) -> List[InlineProperty]:
        with self._read_session("get_inline_properties") as session:
            rows = session.execute(
                text(
                    "SELECT * FROM inline_properties WHERE note_id = :id "
                    "ORDER BY char_start, id"
                ),
                {"id": note_id},
            ).mappings().all()
        return [self._row_to_property(row) for row in rows]

    def get_properties_for_notes(
        self, note_ids: Iterable[int]
    ) -> Dict[int, List[InlineProperty]]:
        """Inline properties of many notes in one query, keyed by note id."""
        ids = list(note_ids)
        result: Dict[int, List[InlineProperty]] = {i: [] for i in ids}
        if not ids:
            return result
        with self._read_session("get_properties_for_notes") as session:
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                marks = ", ".join(f":id{i}" for i in range(len(chunk)))
                rows = session.execute(
                    text(
                        f"SELECT * FROM inline_properties WHERE note_id IN ({marks}) "
                        "ORDER BY note_id, char_start, id"
                    ),
                    {f"id{i}": v for i, v in enumerate(chunk)},
                ).mappings().all()
                for row in rows:
                    result[row["note_id"]].append(self._row_to_property(row))
        return result

    def get_tags_for_notes(self, note_ids: Iterable[int]) -> Dict[int, List[str]]:
        ids = list(note_ids)
        result: Dict[int, List[str]] = {i: [] for i in ids}
        if not ids:
            return result
        with self._read_session("get_tags_for_notes") as session:
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                marks = ", ".join(f":id{i}" for i in range(len(chunk)))
                rows = session.execute(
                    text(
                        "SELECT nt.note_id, t.name FROM note_tags nt "
                        f"JOIN tags t ON t.id = nt.tag_id WHERE nt.note_id IN ({marks}) "
                        "ORDER BY t.name"
                    ),
                    {f"id{i}": v for i, v in enumerate(chunk)},
                ).all()
                for row in rows:
                    result[row.note_id].append(row.name)
        return result

    def get_property_value(
        self, note_id: int, group_id: int, key: str
    ) -> Optional[PropertyValue]:
        """Value of ``key`` in a group (negative ids address a single property row)."""
        with self._read_session("get_property_value") as session:
            if group_id < 0:
                row = session.execute(
                    text(
                        "SELECT * FROM inline_properties WHERE id = :rid "
                        "AND note_id = :note AND property_key = :key"
                    ),
                    {"rid": -group_id, "note": note_id, "key": key},
                ).mappings().first()
            else:
                row = session.execute(
                    text(
                        "SELECT * FROM inline_properties WHERE note_id = :note "
                        "AND group_id = :group AND property_key = :key "
                        "ORDER BY char_start LIMIT 1"
                    ),
                    {"note": note_id, "group": group_id, "key": key},
                ).mappings().first()
        return self._row_to_property(row).value if row else None

    def get_group_location(self, note_id: int, group_id: int) -> Optional[PropertyLocation]:
        """Span of a property group (or of a single property for negative ids)."""
        with self._read_session("get_group_location") as session:
            if group_id < 0:
                row = session.execute(
                    text(
                        "SELECT char_start, char_end, line_number FROM inline_properties "
                        "WHERE id = :rid AND note_id = :note"
                    ),
                    {"rid": -group_id, "note": note_id},
                ).first()
            else:
                row = session.execute(
                    text(
                        "SELECT MIN(char_start) AS char_start, MAX(char_end) AS char_end, "
                        "MIN(line_number) AS line_number FROM inline_properties "
                        "WHERE note_id = :note AND group_id = :group"
                    ),
                    {"note": note_id, "group": group_id},
                ).first()
        if row is None or row.char_start is None:
            return None
        return PropertyLocation(
            note_id=note_id,
            group_id=group_id,
            char_start=row.char_start,
            char_end=row.char_end,
            line_number=row.line_number,
        )

    def get_identical_groups(
        self, note_id: int, group_id: int, content: Optional[str] = None
    ) -> List[PropertyLocation]:
        """Every group of the note whose source text equals that of ``group_id``.

        Spans are compared character for character against ``content``, or
        the note file when it is not given, so ``[a::1]`` and ``[a::1.0]``
        are different groups. Includes the group itself; ordered by
        ``char_start`` descending so callers can rewrite spans back to front
        without shifting offsets.
        """
        properties = self.get_inline_properties(note_id)
        spans: Dict[int, Tuple[int, int, int]] = {}
        for prop in properties:
            gid = prop.group_id if prop.group_id is not None else -(prop.row_id or 0)
            spans.setdefault(gid, (prop.char_start, prop.char_end, prop.line_number))

        if group_id not in spans:
            return []
        if content is None:
            content = self._read_note_file(note_id)
        start, end, _ = spans[group_id]
        wanted = content[start:end]
        locations = [
            PropertyLocation(
                note_id=note_id,
                group_id=gid,
                char_start=s,
                char_end=e,
                line_number=line,
            )
            for gid, (s, e, line) in spans.items()
            if content[s:e] == wanted
        ]
        return sorted(locations, key=lambda loc: loc.char_start, reverse=True)

    def _read_note_file(self, note_id: int) -> str:
        path = self.get_note_path_by_id(note_id)
        if path is None:
            raise NoteNotFoundError(str(note_id))
        try:
            return Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(
                f"Cannot read note file {path}",
                operation="read_note",
                path=path,
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

    def get_all_property_keys(self) -> List[str]:
        hidden_sql, params = hidden_filter_sql("n", self.hidden_folders)
        with self._read_session("get_all_property_keys") as session:
            rows = session.execute(
                text(
                    "SELECT DISTINCT p.property_key FROM inline_properties p "
                    f"JOIN notes n ON n.id = p.note_id WHERE {hidden_sql} "
                    "ORDER BY p.property_key"
                ),
                params,
            ).all()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def upsert_folder(
        self,
        path: str,
        icon: Optional[str] = None,
        color: Optional[str] = None,
        order_index: Optional[int] = None,
        icon_color: Optional[str] = None,
    ) -> FolderInfo:
        with self._write_session("upsert_folder") as session:
            now = now_ts()
            folder = session.scalar(select(DBFolder).where(DBFolder.path == path))
            if folder is None:
                folder = DBFolder(path=path, created_at=now, order_index=0)
                session.add(folder)
            if icon is not None:
                folder.icon = icon
            if icon_color is not None:
                folder.icon_color = icon_color
            if color is not None:
                folder.color = color
            if order_index is not None:
                folder.order_index = order_index
            folder.updated_at = now
            session.flush()
            return self._folder_info(folder)

    @staticmethod
    def _folder_info(
        folder: Optional[DBFolder], path: str = "", note_count: int = 0
    ) -> FolderInfo:
        if folder is None:
            return FolderInfo(path=path, note_count=note_count)
        return FolderInfo(
            id=folder.id,
            path=folder.path,
            icon=folder.icon,
            icon_color=folder.icon_color,
            color=folder.color,
            order_index=folder.order_index,
            updated_at=folder.updated_at,
            note_count=note_count,
        )

    def set_folder_style(
        self,
        path: str,
        icon: Optional[str],
        color: Optional[str],
        icon_color: Optional[str] = None,
    ) -> FolderInfo:
        return self.upsert_folder(path, icon=icon, color=color, icon_color=icon_color)

    def list_folders(self) -> List[FolderInfo]:
        """Folders known from folder rows or from indexed notes, hidden ones excluded."""
        with self._read_session("list_folders") as session:
            styled = {f.path: f for f in session.scalars(select(DBFolder)).all()}
            counts = {
                row.folder: row.n
                for row in session.execute(
                    text(
                        "SELECT folder, COUNT(*) AS n FROM notes "
                        "WHERE folder IS NOT NULL GROUP BY folder"
                    )
                )
            }
            infos = []
            for path in sorted(set(styled) | set(counts)):
                if any(part in self.hidden_folders for part in path.split("/")):
                    continue
                infos.append(
                    self._folder_info(styled.get(path), path, counts.get(path, 0))
                )
        return sorted(infos, key=lambda f: (f.order_index, f.path))

    def _rename_folder_rows(self, session: Session, old: str, new: str) -> None:
        rows = session.execute(
            text(
                "SELECT path FROM folders WHERE path = :old OR path LIKE :below ESCAPE '\\'"
            ),
            {"old": old, "below": f"{escape_like_pattern(old)}/%"},
        ).all()
        for row in rows:
            session.execute(
                text(
                    "UPDATE folders SET path = :new, updated_at = :now WHERE path = :old"
                ),
                {"new": new + row.path[len(old):], "old": row.path, "now": now_ts()},
            )

    def rename_folder_rows(self, old: str, new: str) -> None:
        with self._write_session("rename_folder_rows") as session:
            self._rename_folder_rows(session, old, new)

    def delete_folder_rows(self, path: str) -> int:
        with self._write_session("delete_folder_rows") as session:
            result = session.execute(
                text(
                    "DELETE FROM folders WHERE path = :path "
                    "OR path LIKE :below ESCAPE '\\'"
                ),
                {"path": path, "below": f"{escape_like_pattern(path)}/%"},
            )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def check_database_health(self) -> HealthReport:
        """Run SQLite and FTS5 integrity checks and compare row counts."""
        issues: List[str] = []
        sqlite_ok = True
        try:
            with self._read_session("integrity_check", translate=False) as session:
                result = session.execute(text("PRAGMA integrity_check")).scalar()
                if result != "ok":
                    sqlite_ok = False
                    issues.append(f"SQLite integrity check: {result}")
                version = get_schema_version(session.connection())
                note_count = session.execute(text("SELECT COUNT(*) FROM notes")).scalar_one()
                fts_count = session.execute(
                    text("SELECT COUNT(*) FROM notes_fts")
                ).scalar_one()
        except SQLAlchemyError as e:
            raise self._storage_error("check_database_health", e) from e

        fts_ok = self.fts.integrity_check()
        if not fts_ok:
            issues.append("FTS5 integrity check failed")
        if note_count != fts_count:
            issues.append(f"FTS has {fts_count} rows for {note_count} notes")

        return HealthReport(
            healthy=not issues,
            sqlite_ok=sqlite_ok,
            fts_ok=fts_ok,
            schema_version=version,
            note_count=note_count,
            fts_count=fts_count,
            issues=issues,
        )

    def rebuild_fts(self) -> int:
        return self.fts.rebuild()
