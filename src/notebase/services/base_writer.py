"""Write edits made in a Base view back into the owning note files.

Only the edited value span inside its ``[key::value]`` group is rewritten;
the rest of the file is left byte-for-byte intact. After a write the note
is re-synced so the index reflects the new content.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

from notebase.exceptions import ErrorCode, NoteNotFoundError, PropertyError, StorageError
from notebase.storage.inline_parser import parse_group_text
from notebase.utils import write_text_atomic

if TYPE_CHECKING:
    from notebase.storage.index_store import IndexStore

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    """Outcome of a write that may touch several identical groups."""

    updated: int = 0
    failures: Dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def _check_value(key: str, value: str) -> str:
    """Reject values that would not read back as a single ``key::value`` pair."""
    value = value.strip()
    pairs = parse_group_text(f"[{key}::{value}]")
    if "\n" in value or pairs is None or len(pairs) != 1 or pairs[0].value != value:
        raise PropertyError(
            f"Value {value!r} cannot be stored inline for '{key}'",
            key=key,
            code=ErrorCode.PROPERTY_SPAN_INVALID,
        )
    return value


def replace_property_in_group(group_text: str, key: str, new_value: str) -> str:
    """Swap the value of ``key`` inside a group, keeping surrounding spacing.

    >>> replace_property_in_group("[juego::Minecraft, precio::10€]", "precio", "20€")
    '[juego::Minecraft, precio::20€]'
    """
    pairs = parse_group_text(group_text)
    if pairs is None:
        raise PropertyError(
            f"Not a property group: {group_text!r}", key=key,
            code=ErrorCode.PROPERTY_SPAN_INVALID,
        )
    for pair in pairs:
        if pair.key != key:
            continue
        original = group_text[pair.value_start:pair.value_end]
        lead = original[: len(original) - len(original.lstrip())]
        trail = original[len(original.rstrip()):]
        return (
            group_text[: pair.value_start]
            + lead + new_value + trail
            + group_text[pair.value_end:]
        )
    raise PropertyError(f"Property '{key}' not found in group", key=key)


def append_property_to_group(group_text: str, key: str, value: str) -> str:
    """``[juego::Minecraft]`` + precio=20€ -> ``[juego::Minecraft, precio::20€]``."""
    if parse_group_text(group_text) is None:
        raise PropertyError(
            f"Not a property group: {group_text!r}", key=key,
            code=ErrorCode.PROPERTY_SPAN_INVALID,
        )
    return f"{group_text[:-1]}, {key}::{value}]"


class BaseWriter:
    """Bidirectional editing of inline properties from Base views."""

    def __init__(self, store: "IndexStore"):
        self.store = store

    def _note_path(self, note_id: int) -> Path:
        path = self.store.get_note_path_by_id(note_id)
        if path is None:
            raise NoteNotFoundError(f"id={note_id}")
        return Path(path)

    @staticmethod
    def _read(path: Path) -> str:
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

    def _write_and_sync(self, note_id: int, path: Path, content: str) -> None:
        try:
            write_text_atomic(path, content)
        except OSError as e:
            raise StorageError(
                f"Cannot write note file {path}",
                operation="write_note",
                path=str(path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        self.store.sync_inline_properties(note_id, content)

    @staticmethod
    def _group_text(content: str, start: int, end: int) -> Optional[str]:
        if start < 0 or end > len(content) or start >= end:
            return None
        text = content[start:end]
        if not text.startswith("[") or not text.endswith("]"):
            return None
        return text

    def update_property_value(
        self, note_id: int, group_id: int, key: str, new_value: str
    ) -> WriteResult:
        """Set ``key`` in a group and in every identical group of the same note.

        Groups are rewritten from the end of the file backwards so earlier
        offsets stay valid. A group that no longer matches the index is
        skipped and reported in ``failures``.
        """
        new_value = _check_value(key, new_value)
        path = self._note_path(note_id)
        current = self.store.get_property_value(note_id, group_id, key)
        if current is None:
            raise PropertyError(
                f"Property '{key}' not found", note_id=note_id, group_id=group_id, key=key
            )
        if current.raw_string() == new_value:
            return WriteResult()

        content = self._read(path)
        locations = self.store.get_identical_groups(note_id, group_id, content)
        if not locations:
            raise PropertyError(
                "Property group not found", note_id=note_id, group_id=group_id,
                code=ErrorCode.GROUP_NOT_FOUND,
            )
        result = WriteResult()
        for location in locations:
            text = self._group_text(content, location.char_start, location.char_end)
            if text is None:
                result.failures[location.group_id] = (
                    f"span {location.char_start}..{location.char_end} is not a group"
                )
                continue
            try:
                rewritten = replace_property_in_group(text, key, new_value)
            except PropertyError as e:
                result.failures[location.group_id] = e.message
                continue
            content = content[: location.char_start] + rewritten + content[location.char_end:]
            result.updated += 1

        for gid, reason in result.failures.items():
            logger.warning(f"Skipped group {gid} of note {note_id}: {reason}")
        if not result.updated:
            raise PropertyError(
                f"No group of note {note_id} could be updated",
                note_id=note_id, group_id=group_id, key=key,
                code=ErrorCode.PROPERTY_SPAN_INVALID,
            )

        self._write_and_sync(note_id, path, content)
        logger.info(
            f"Set '{key}' in {result.updated} group(s) of note {note_id}"
        )
        return result

    def add_property_to_group(
        self, note_id: int, group_id: int, key: str, value: str
    ) -> None:
        """Append ``key::value`` to an existing group (or single property)."""
        value = _check_value(key, value)
        path = self._note_path(note_id)
        location = self.store.get_group_location(note_id, group_id)
        if location is None:
            raise PropertyError(
                "Property group not found", note_id=note_id, group_id=group_id,
                code=ErrorCode.GROUP_NOT_FOUND,
            )
        content = self._read(path)
        text = self._group_text(content, location.char_start, location.char_end)
        if text is None:
            raise PropertyError(
                "Indexed group no longer matches the file", note_id=note_id,
                group_id=group_id, code=ErrorCode.PROPERTY_SPAN_INVALID,
            )
        rewritten = append_property_to_group(text, key, value)
        content = content[: location.char_start] + rewritten + content[location.char_end:]
        self._write_and_sync(note_id, path, content)

    def expand_individual_to_group(
        self, note_id: int, char_start: int, char_end: int, key: str, value: str
    ) -> None:
        """Turn a single ``[k::v]`` at the given span into ``[k::v, key::value]``."""
        value = _check_value(key, value)
        path = self._note_path(note_id)
        content = self._read(path)
        text = self._group_text(content, char_start, char_end)
        if text is None:
            raise PropertyError(
                f"No property at {char_start}..{char_end}", note_id=note_id,
                code=ErrorCode.PROPERTY_SPAN_INVALID,
            )
        rewritten = append_property_to_group(text, key, value)
        content = content[:char_start] + rewritten + content[char_end:]
        self._write_and_sync(note_id, path, content)

    def append_property_line(self, note_id: int, key: str, value: str) -> None:
        """Add a new ``[key::value]`` line at the end of the note."""
        value = _check_value(key, value)
        path = self._note_path(note_id)
        content = self._read(path)
        separator = "" if not content or content.endswith("\n") else "\n"
        content = f"{content}{separator}[{key}::{value}]\n"
        self._write_and_sync(note_id, path, content)
