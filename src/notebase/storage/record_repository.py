"""Grouped-record view over inline properties.

Each ``[a::1, b::2]`` group in a note becomes a record; a single ungrouped
``[k::v]`` becomes a one-property record with id ``-row_id``. Within a
note, records that describe the same thing are coalesced: two records
merge when they share a non-generic key with the same non-empty value. The
surviving record keeps its own value wherever the two disagree. Records
never merge across notes.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set

from sqlalchemy import text

from notebase.models.properties import PropertyValue
from notebase.models.schema import GroupedRecord
from notebase.utils import escape_like_pattern, hidden_filter_sql

if TYPE_CHECKING:
    from notebase.storage.index_store import IndexStore

logger = logging.getLogger(__name__)


@dataclass
class _Record:
    note_id: int
    note_name: str
    note_path: str
    group_id: int
    values: Dict[str, str] = field(default_factory=dict)

    def to_model(self) -> GroupedRecord:
        return GroupedRecord(
            note_id=self.note_id,
            note_name=self.note_name,
            note_path=self.note_path,
            group_id=self.group_id,
            properties=sorted(self.values.items()),
        )


def _same_entity(a: _Record, b: _Record, generic: Set[str]) -> bool:
    for key in set(a.values) & set(b.values):
        if key.lower() in generic:
            continue
        va = a.values[key].strip()
        if va and va == b.values[key].strip():
            return True
    return False


def _absorb(target: _Record, other: _Record) -> None:
    for key, value in other.values.items():
        if key not in target.values or not target.values[key].strip():
            target.values[key] = value
    if target.group_id < 0 < other.group_id:
        target.group_id = other.group_id


def coalesce_records(records: List[_Record], generic_keys: Iterable[str]) -> List[_Record]:
    """Merge same-entity records of one note until nothing changes, then dedupe."""
    generic = {k.lower() for k in generic_keys}
    pending = list(records)
    changed = True
    while changed:
        changed = False
        for i in range(len(pending)):
            for j in range(i + 1, len(pending)):
                if _same_entity(pending[i], pending[j], generic):
                    _absorb(pending[i], pending[j])
                    del pending[j]
                    changed = True
                    break
            if changed:
                break

    seen: Set[str] = set()
    unique: List[_Record] = []
    for record in pending:
        digest = record_hash(record.values)
        if digest in seen:
            continue
        seen.add(digest)
        unique.append(record)
    return unique


def record_hash(values: Dict[str, str]) -> str:
    """Stable digest of a record's sorted key/value pairs."""
    h = hashlib.sha1()
    for key, value in sorted(values.items()):
        h.update(key.encode("utf-8"))
        h.update(b"\x1f")
        h.update(value.encode("utf-8"))
        h.update(b"\x1e")
    return h.hexdigest()


class RecordRepository:
    """Read-side access to grouped records."""

    def __init__(self, store: "IndexStore"):
        self.store = store

    def _load_records(self, source_folder: Optional[str]) -> List[_Record]:
        hidden_sql, params = hidden_filter_sql("n", self.store.hidden_folders)
        folder_sql = ""
        if source_folder:
            folder_sql = " AND (n.folder = :sf OR n.folder LIKE :sf_below ESCAPE '\\')"
            params["sf"] = source_folder
            params["sf_below"] = f"{escape_like_pattern(source_folder)}/%"
        with self.store._read_session("load_records") as session:
            rows = session.execute(
                text(
                    "SELECT p.id, p.note_id, n.name, n.path, p.property_key, "
                    "p.property_type, p.value_text, p.value_number, p.value_bool, "
                    "p.group_id FROM inline_properties p "
                    "JOIN notes n ON n.id = p.note_id "
                    f"WHERE {hidden_sql}{folder_sql} "
                    "ORDER BY n.name, p.char_start, p.id"
                ),
                params,
            ).all()

        by_note: Dict[int, Dict[int, _Record]] = {}
        for row in rows:
            group_id = row.group_id if row.group_id is not None else -row.id
            note_records = by_note.setdefault(row.note_id, {})
            record = note_records.get(group_id)
            if record is None:
                record = _Record(row.note_id, row.name, row.path, group_id)
                note_records[group_id] = record
            value = PropertyValue.from_columns(
                row.property_type, row.value_text, row.value_number, row.value_bool
            )
            record.values.setdefault(row.property_key, value.raw_string())

        generic = self.store.generic_record_keys
        result: List[_Record] = []
        for note_records in by_note.values():
            result.extend(coalesce_records(list(note_records.values()), generic))
        return result

    def get_all_grouped_records(
        self, source_folder: Optional[str] = None
    ) -> List[GroupedRecord]:
        """All records of visible notes, ordered by note name then position."""
        return [r.to_model() for r in self._load_records(source_folder)]

    def get_records_by_property(
        self, key: str, source_folder: Optional[str] = None
    ) -> List[GroupedRecord]:
        """Records that carry ``key``."""
        return [
            r.to_model() for r in self._load_records(source_folder) if key in r.values
        ]

    def discover_related_columns(self, key: str) -> List[str]:
        """Keys that appear in at least one group alongside ``key``, alphabetically."""
        hidden_sql, params = hidden_filter_sql("n", self.store.hidden_folders)
        params["key"] = key
        with self.store._read_session("discover_related_columns") as session:
            rows = session.execute(
                text(
                    "SELECT DISTINCT p2.property_key FROM inline_properties p1 "
                    "JOIN inline_properties p2 ON p2.note_id = p1.note_id "
                    "AND p2.group_id = p1.group_id "
                    "JOIN notes n ON n.id = p1.note_id "
                    "WHERE p1.property_key = :key AND p1.group_id IS NOT NULL "
                    f"AND p2.property_key != :key AND {hidden_sql} "
                    "ORDER BY p2.property_key"
                ),
                params,
            ).all()
        return [row[0] for row in rows]
