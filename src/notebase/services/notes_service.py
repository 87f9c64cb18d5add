"""Service layer for note operations on a notes root.

Files on disk stay the source of truth: every mutation writes the file
first (atomically) and then refreshes the index from the new content.
"""

import logging
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from notebase.config import config
from notebase.exceptions import (BulkOperationError, ConfigurationError,
                                 ErrorCode, NoteNotFoundError,
                                 NoteValidationError, StorageError,
                                 TagNotFoundError)
from notebase.models.base import Base
from notebase.models.properties import PropertyValue
from notebase.models.schema import (FolderInfo, NoteDocument, NoteMetadata,
                                    SearchResult, SyncReport, TagInfo)
from notebase.observability import traced
from notebase.services.base_service import BaseService, BaseTable
from notebase.services.query_engine import BaseQueryEngine
from notebase.services.sync_service import NoteSync
from notebase.storage import markdown_parser
from notebase.storage.index_store import IndexStore
from notebase.utils import (normalize_folder, note_file_path, split_note_name,
                            write_text_atomic)

logger = logging.getLogger(__name__)


class NotesService:
    """Note, tag, folder and Base operations over one notes root."""

    def __init__(
        self,
        notes_root: Optional[Path] = None,
        store: Optional[IndexStore] = None,
    ):
        """Initialize the service.

        Args:
            notes_root: Folder holding the Markdown notes. Defaults to the
                configured notes directory.
            store: Index to use. Opened at the default location for the
                notes root if None.
        """
        if notes_root is None:
            if store is not None and store.notes_root is not None:
                notes_root = store.notes_root
            else:
                notes_root = config.get_notes_root()
        self.notes_root = Path(notes_root)
        if self.notes_root.exists() and not self.notes_root.is_dir():
            raise ConfigurationError(
                f"Notes root {self.notes_root} is not a directory",
                config_key="notes_dir",
            )
        self.notes_root.mkdir(parents=True, exist_ok=True)
        self.store = store or IndexStore(notes_root=self.notes_root)
        if self.store.notes_root is None:
            self.store.notes_root = self.notes_root
        self.sync = NoteSync(self.store, self.notes_root)
        self.queries = BaseQueryEngine(self.store)
        self.bases = BaseService(self.store)

    # =========================================================================
    # File helpers
    # =========================================================================

    def _require(self, name: str) -> NoteMetadata:
        bare, _ = split_note_name(name)
        note = self.store.get_note_by_name(bare)
        if note is None:
            raise NoteNotFoundError(bare)
        return note

    @staticmethod
    def _read_file(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(
                f"Cannot read note file {path}",
                operation="read_note",
                path=str(path),
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

    @staticmethod
    def _write_file(path: Path, content: str) -> None:
        try:
            write_text_atomic(path, content)
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            raise StorageError(
                f"Cannot write note file {path}",
                operation="write_note",
                path=str(path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    @staticmethod
    def _move_file(source: Path, target: Path) -> None:
        if target.exists():
            raise NoteValidationError(
                f"A file already exists at {target.name}",
                field="path",
                value=str(target),
                code=ErrorCode.NOTE_ALREADY_EXISTS,
            )
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            source.replace(target)
        except OSError as e:
            raise StorageError(
                f"Cannot move {source.name}",
                operation="move_note",
                path=str(source),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def _save(self, note: NoteMetadata, content: str) -> NoteMetadata:
        path = Path(note.path)
        self._write_file(path, content)
        self.store.index_note(note.name, str(path), content, note.folder)
        return self.store.get_note_by_name(note.name)

    # =========================================================================
    # Notes
    # =========================================================================

    @traced()
    def create_note(
        self,
        name: str,
        content: str = "",
        folder: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> NoteMetadata:
        """Create a note file and index it.

        ``name`` may carry a folder (``projects/plan``); it is joined below
        ``folder``. Extra ``tags`` are merged into the frontmatter.

        Raises:
            NoteValidationError: The name is empty, escapes the root or is taken.
        """
        bare, folder = split_note_name(name, folder)
        path = note_file_path(self.notes_root, bare, folder)
        if path.exists() or self.store.get_note_by_name(bare) is not None:
            raise NoteValidationError(
                f"Note '{bare}' already exists",
                field="name",
                value=bare,
                code=ErrorCode.NOTE_ALREADY_EXISTS,
            )
        if tags:
            existing = markdown_parser.extract_frontmatter_tags(content)
            content = markdown_parser.update_tags(content, existing + list(tags))

        self._write_file(path, content)
        self.store.index_note(bare, str(path), content, folder)
        logger.info(f"Created note '{bare}' in {folder or 'root'}")
        return self.store.get_note_by_name(bare)

    @traced()
    def read_note(self, name: str) -> NoteDocument:
        note = self._require(name)
        content = self._read_file(Path(note.path))
        return NoteDocument(
            metadata=note, content=content, tags=self.store.get_note_tags(note.id)
        )

    @traced()
    def update_note(self, name: str, content: str) -> NoteMetadata:
        """Replace the whole content of a note."""
        return self._save(self._require(name), content)

    @traced()
    def append_to_note(self, name: str, content: str) -> NoteMetadata:
        """Add text at the end of a note, keeping what is there."""
        note = self._require(name)
        current = self._read_file(Path(note.path))
        return self._save(note, current + content)

    @traced()
    def rename_note(self, name: str, new_name: str) -> NoteMetadata:
        """Rename the file and the index row; links to the note keep resolving."""
        note = self._require(name)
        bare, _ = split_note_name(new_name)
        if bare == note.name:
            return note
        if self.store.get_note_by_name(bare) is not None:
            raise NoteValidationError(
                f"Note '{bare}' already exists",
                field="name",
                value=bare,
                code=ErrorCode.NOTE_ALREADY_EXISTS,
            )
        source = Path(note.path)
        target = note_file_path(self.notes_root, bare, note.folder)
        self._move_file(source, target)
        try:
            renamed = self.store.rename_note(note.name, bare, str(target), note.folder)
        except Exception:
            target.replace(source)
            raise
        logger.info(f"Renamed note '{note.name}' to '{bare}'")
        return renamed

    @traced()
    def delete_note(self, name: str) -> None:
        """Delete the file and every index row that refers to the note.

        Raises:
            NoteNotFoundError: No note with that name is indexed.
        """
        note = self._require(name)
        path = Path(note.path)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(
                f"Cannot delete note file {path}",
                operation="delete_note",
                path=str(path),
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e
        self.store.delete_note(note.name)

    @traced()
    def move_note(self, name: str, folder: Optional[str]) -> NoteMetadata:
        """Move a note to another folder (None is the root)."""
        note = self._require(name)
        folder = normalize_folder(folder)
        if folder == note.folder:
            return note
        source = Path(note.path)
        target = note_file_path(self.notes_root, note.name, folder)
        self._move_file(source, target)
        try:
            moved = self.store.move_note_to_folder(note.name, folder, str(target))
        except Exception:
            target.replace(source)
            raise
        logger.info(f"Moved note '{note.name}' to {folder or 'root'}")
        return moved

    @traced()
    def list_notes(
        self, folder: Optional[str] = None, include_hidden: bool = False
    ) -> List[NoteMetadata]:
        return self.store.list_notes(
            folder=normalize_folder(folder), include_hidden=include_hidden
        )

    @traced()
    def search_notes(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        return self.store.search_notes(query, limit)

    @traced()
    def get_recent_notes(self, limit: int = 10) -> List[NoteMetadata]:
        return self.store.get_recent_notes(limit)

    # =========================================================================
    # Tags and properties
    # =========================================================================

    @traced()
    def get_all_tags(self) -> List[TagInfo]:
        return self.store.get_tags()

    @traced()
    def get_notes_with_tag(self, tag: str) -> List[NoteMetadata]:
        if self.store.tags.get_tag(tag) is None:
            raise TagNotFoundError(tag)
        return self.store.tags.get_notes_with_tag(tag)

    @traced()
    def get_note_properties(self, name: str) -> Dict[str, PropertyValue]:
        """Built-in and inline properties of a note, as a Base view sees them."""
        note = self._require(name)
        return self.queries.load_note_properties(note).properties

    def _retag(
        self, name: str, add: Optional[str] = None, remove: Optional[str] = None
    ) -> NoteMetadata:
        note = self._require(name)
        content = self._read_file(Path(note.path))
        header, _ = markdown_parser.parse_or_empty(content)
        if add:
            header.add_tag(add)
        if remove:
            header.remove_tag(remove)
        return self._save(note, markdown_parser.update_tags(content, header.tags))

    @traced()
    def add_tag(self, name: str, tag: str) -> NoteMetadata:
        """Add a tag to the note's frontmatter."""
        return self._retag(name, add=tag)

    @traced()
    def remove_tag(self, name: str, tag: str) -> NoteMetadata:
        """Remove a frontmatter tag; inline ``#tags`` in the body are left alone."""
        return self._retag(name, remove=tag)

    # =========================================================================
    # Folders
    # =========================================================================

    def _folder_dir(self, folder: str) -> Path:
        folder = normalize_folder(folder)
        if folder is None:
            raise NoteValidationError("Folder is required", field="folder")
        return self.notes_root / folder

    @traced()
    def create_folder(
        self,
        folder: str,
        icon: Optional[str] = None,
        color: Optional[str] = None,
        icon_color: Optional[str] = None,
    ) -> FolderInfo:
        path = self._folder_dir(folder)
        path.mkdir(parents=True, exist_ok=True)
        return self.store.upsert_folder(
            normalize_folder(folder), icon=icon, color=color, icon_color=icon_color
        )

    @traced()
    def list_folders(self) -> List[FolderInfo]:
        return self.store.list_folders()

    @traced()
    def rename_folder(self, folder: str, new_folder: str) -> int:
        """Rename a folder on disk and re-home its notes; returns the note count."""
        old_dir = self._folder_dir(folder)
        new_dir = self._folder_dir(new_folder)
        if not old_dir.is_dir():
            raise NoteValidationError(
                f"Folder '{folder}' does not exist", field="folder", value=folder
            )
        self._move_file(old_dir, new_dir)
        return self.store.update_notes_folder(
            normalize_folder(folder), normalize_folder(new_folder), self.notes_root
        )

    @traced()
    def delete_folder(self, folder: str) -> int:
        """Delete a folder with its notes; returns how many notes were removed."""
        path = self._folder_dir(folder)
        if path.is_dir():
            try:
                shutil.rmtree(path)
            except OSError as e:
                raise StorageError(
                    f"Cannot delete folder {folder}",
                    operation="delete_folder",
                    path=str(path),
                    code=ErrorCode.STORAGE_DELETE_FAILED,
                    original_error=e,
                ) from e
        removed = self.store.delete_notes_in_folder(normalize_folder(folder))
        self.store.delete_folder_rows(normalize_folder(folder))
        return removed

    # =========================================================================
    # Bases
    # =========================================================================

    @traced()
    def list_bases(self) -> List[Base]:
        return self.bases.list_bases()

    @traced()
    def get_base(self, name: str) -> Base:
        return self.bases.get_base(name)

    @traced()
    def create_base(self, base: Base) -> Base:
        return self.bases.create_base(base)

    @traced()
    def update_base(self, base: Base, previous_name: Optional[str] = None) -> Base:
        return self.bases.update_base(base, previous_name)

    @traced()
    def delete_base(self, name: str) -> None:
        self.bases.delete_base(name)

    @traced()
    def render_base(self, name: str, view_index: Optional[int] = None) -> BaseTable:
        return self.bases.render(self.bases.get_base(name), view_index)

    # =========================================================================
    # Indexing
    # =========================================================================

    @traced()
    def index_all_notes(self, force: bool = False, strict: bool = False) -> SyncReport:
        """Bring the index in line with the files under the notes root.

        Per-file failures are returned in the report. With ``strict`` they
        raise :class:`BulkOperationError` once the pass has finished.
        """
        report = self.sync.sync(force=force)
        if strict and not report.ok:
            raise BulkOperationError(
                f"{len(report.failures)} of {report.scanned} notes failed to index",
                operation="index_all_notes",
                total_count=report.scanned,
                success_count=report.scanned - len(report.failures),
                failures=report.failures,
                code=ErrorCode.BULK_OPERATION_PARTIAL,
            )
        return report

    def close(self) -> None:
        self.store.close()
