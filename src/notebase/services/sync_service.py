"""Keep the index in step with the Markdown files under a notes root."""

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from notebase.exceptions import NotebaseError
from notebase.models.schema import SyncReport
from notebase.utils import MARKDOWN_SUFFIX, relative_folder

if TYPE_CHECKING:
    from notebase.storage.index_store import IndexStore

logger = logging.getLogger(__name__)


class NoteSync:
    """Filesystem scanner feeding :class:`IndexStore`.

    The index directory and dot-directories are never scanned, except the
    configured hidden folders, whose notes are indexed but kept out of
    listings by the store.
    """

    def __init__(self, store: "IndexStore", notes_root: Optional[Path] = None):
        root = notes_root or store.notes_root
        if root is None:
            raise ValueError("NoteSync needs a notes root")
        self.store = store
        self.notes_root = Path(root)

    def _skip_dir(self, name: str) -> bool:
        return name.startswith(".") and name not in self.store.hidden_folders

    def scan(self) -> List[Path]:
        """All note files under the root, sorted by path."""
        found: List[Path] = []
        if not self.notes_root.is_dir():
            return found
        for dirpath, dirnames, filenames in os.walk(self.notes_root):
            dirnames[:] = sorted(d for d in dirnames if not self._skip_dir(d))
            for filename in filenames:
                if filename.startswith("."):
                    continue
                if filename.lower().endswith(MARKDOWN_SUFFIX):
                    found.append(Path(dirpath) / filename)
        return sorted(found)

    def _is_stale(self, path: Path, updated_at: Optional[int]) -> bool:
        if updated_at is None:
            return True
        return int(path.stat().st_mtime) > updated_at

    def index_file(self, path: Path) -> int:
        """Read one file and (re)index it; the note name is the file stem."""
        content = path.read_text(encoding="utf-8")
        folder = relative_folder(path, self.notes_root)
        return self.store.index_note(path.stem, str(path), content, folder)

    def index_all_notes(self, force: bool = False) -> SyncReport:
        """Index new and changed files inside one batch.

        A file whose modification time is not newer than its index row is
        skipped unless ``force``. Per-file failures are collected in the
        report and do not stop the pass.
        """
        paths = self.scan()
        report = SyncReport(scanned=len(paths))
        known: Dict[str, int] = {
            note.path: note.updated_at
            for note in self.store.list_notes(include_hidden=True)
        }

        with self.store.batch():
            for path in paths:
                try:
                    if not force and not self._is_stale(path, known.get(str(path))):
                        report.skipped += 1
                        continue
                    self.index_file(path)
                    report.indexed += 1
                except (OSError, UnicodeDecodeError, NotebaseError) as e:
                    logger.warning(f"Failed to index {path}: {e}")
                    report.failures[str(path)] = str(e)

        logger.info(
            f"Indexed {report.indexed} of {report.scanned} notes "
            f"({report.skipped} unchanged, {len(report.failures)} failed)"
        )
        return report

    def reap_orphans(self, existing: Optional[List[Path]] = None) -> int:
        """Drop index rows for files that no longer exist."""
        paths = existing if existing is not None else self.scan()
        return self.store.cleanup_orphaned_notes(str(p) for p in paths)

    def sync(self, force: bool = False) -> SyncReport:
        report = self.index_all_notes(force=force)
        report.removed = self.reap_orphans()
        return report
