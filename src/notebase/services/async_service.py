"""Coroutine façade: every call is handed to a worker thread exactly once."""

import functools
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import anyio
import anyio.to_thread

from notebase.config import config
from notebase.models.base import Base
from notebase.models.properties import PropertyValue
from notebase.models.schema import (FolderInfo, NoteDocument, NoteMetadata,
                                    SearchResult, SyncReport, TagInfo)
from notebase.services.base_service import BaseTable
from notebase.services.notes_service import NotesService

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AsyncNotesService:
    """Async wrapper around :class:`NotesService`.

    Store work is blocking (SQLite, file I/O), so each operation runs in
    anyio's worker threads, bounded by a capacity limiter. A call that was
    cancelled before its thread started never runs; one already running
    completes.
    """

    def __init__(
        self,
        service: Optional[NotesService] = None,
        notes_root: Optional[Path] = None,
        max_workers: Optional[int] = None,
    ):
        self.service = service or NotesService(notes_root=notes_root)
        self.limiter = anyio.CapacityLimiter(max_workers or config.blocking_pool_size)

    async def _run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await anyio.to_thread.run_sync(
            functools.partial(func, *args, **kwargs), limiter=self.limiter
        )

    # Notes

    async def create_note(
        self,
        name: str,
        content: str = "",
        folder: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> NoteMetadata:
        return await self._run(self.service.create_note, name, content, folder, tags)

    async def read_note(self, name: str) -> NoteDocument:
        return await self._run(self.service.read_note, name)

    async def update_note(self, name: str, content: str) -> NoteMetadata:
        return await self._run(self.service.update_note, name, content)

    async def append_to_note(self, name: str, content: str) -> NoteMetadata:
        return await self._run(self.service.append_to_note, name, content)

    async def rename_note(self, name: str, new_name: str) -> NoteMetadata:
        return await self._run(self.service.rename_note, name, new_name)

    async def delete_note(self, name: str) -> None:
        await self._run(self.service.delete_note, name)

    async def move_note(self, name: str, folder: Optional[str]) -> NoteMetadata:
        return await self._run(self.service.move_note, name, folder)

    async def list_notes(
        self, folder: Optional[str] = None, include_hidden: bool = False
    ) -> List[NoteMetadata]:
        return await self._run(self.service.list_notes, folder, include_hidden)

    async def search_notes(
        self, query: str, limit: Optional[int] = None
    ) -> List[SearchResult]:
        return await self._run(self.service.search_notes, query, limit)

    async def get_recent_notes(self, limit: int = 10) -> List[NoteMetadata]:
        return await self._run(self.service.get_recent_notes, limit)

    # Tags and properties

    async def get_all_tags(self) -> List[TagInfo]:
        return await self._run(self.service.get_all_tags)

    async def get_notes_with_tag(self, tag: str) -> List[NoteMetadata]:
        return await self._run(self.service.get_notes_with_tag, tag)

    async def get_note_properties(self, name: str) -> Dict[str, PropertyValue]:
        return await self._run(self.service.get_note_properties, name)

    async def add_tag(self, name: str, tag: str) -> NoteMetadata:
        return await self._run(self.service.add_tag, name, tag)

    async def remove_tag(self, name: str, tag: str) -> NoteMetadata:
        return await self._run(self.service.remove_tag, name, tag)

    # Folders

    async def create_folder(
        self,
        folder: str,
        icon: Optional[str] = None,
        color: Optional[str] = None,
        icon_color: Optional[str] = None,
    ) -> FolderInfo:
        return await self._run(
            self.service.create_folder, folder, icon, color, icon_color
        )

    async def list_folders(self) -> List[FolderInfo]:
        return await self._run(self.service.list_folders)

    async def rename_folder(self, folder: str, new_folder: str) -> int:
        return await self._run(self.service.rename_folder, folder, new_folder)

    async def delete_folder(self, folder: str) -> int:
        return await self._run(self.service.delete_folder, folder)

    # Bases

    async def list_bases(self) -> List[Base]:
        return await self._run(self.service.list_bases)

    async def get_base(self, name: str) -> Base:
        return await self._run(self.service.get_base, name)

    async def create_base(self, base: Base) -> Base:
        return await self._run(self.service.create_base, base)

    async def update_base(self, base: Base, previous_name: Optional[str] = None) -> Base:
        return await self._run(self.service.update_base, base, previous_name)

    async def delete_base(self, name: str) -> None:
        await self._run(self.service.delete_base, name)

    async def render_base(self, name: str, view_index: Optional[int] = None) -> BaseTable:
        return await self._run(self.service.render_base, name, view_index)

    # Indexing

    async def index_all_notes(
        self, force: bool = False, strict: bool = False
    ) -> SyncReport:
        report = await self._run(self.service.index_all_notes, force, strict)
        logger.debug(f"Async index pass finished: {report.indexed} indexed")
        return report

    async def close(self) -> None:
        await self._run(self.service.close)
