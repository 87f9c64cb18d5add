"""Query engine for Bases: note listing, filtering, sorting and aggregation."""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple, Union

from notebase.models.base import (NOTE_COLUMN, Base, BaseView, FilterGroup,
                                  SortConfig, SortDirection, SourceType,
                                  resolve_property)
from notebase.models.properties import PropertyType, PropertyValue
from notebase.models.schema import GroupedRecord, NoteMetadata, NoteWithProperties

if TYPE_CHECKING:
    from notebase.storage.index_store import IndexStore

logger = logging.getLogger(__name__)

# Built-in properties offered for plain note views
NOTE_PROPERTIES = ("created_at", "folder", "tags", "title", "updated_at")

# Label used for missing values when grouping
EMPTY_GROUP = "—"


@dataclass
class RecordRow:
    """A grouped record with typed values, ready for filtering and display."""

    record: GroupedRecord
    properties: Dict[str, PropertyValue]

    def get(self, key: str) -> Optional[PropertyValue]:
        return self.properties.get(key)


Row = Union[NoteWithProperties, RecordRow]


@dataclass
class PropertyAggregation:
    """Numeric summary of one property over a result set.

    ``avg``, ``min`` and ``max`` are None when no value was numeric.
    ``count`` counts non-empty values; ``total`` counts rows.
    """

    sum: float = 0.0
    avg: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    count: int = 0
    total: int = 0


def merge_property(existing: PropertyValue, new: PropertyValue) -> PropertyValue:
    """Combine two values found under the same key in one note.

    A scalar joins an existing list; two scalars become a list; a
    collection arriving later replaces what was there.
    """
    if new.is_list():
        return new
    if existing.type == PropertyType.LIST:
        return PropertyValue.list(existing.items() + [new.raw_string()])
    if existing.is_list():
        return new
    return PropertyValue.list([existing.raw_string(), new.raw_string()])


def record_properties(record: GroupedRecord) -> Dict[str, PropertyValue]:
    """Typed view of a record; the owning note is exposed as ``_note``."""
    props = {key: PropertyValue.infer(value) for key, value in record.properties}
    props[NOTE_COLUMN] = PropertyValue.text(record.note_name)
    return props


class BaseQueryEngine:
    """Runs Base views against an :class:`IndexStore`."""

    def __init__(self, store: "IndexStore"):
        self.store = store

    # ------------------------------------------------------------------
    # Notes mode
    # ------------------------------------------------------------------

    def load_note_properties(
        self,
        note: NoteMetadata,
        tags: Optional[List[str]] = None,
        inline: Optional[list] = None,
    ) -> NoteWithProperties:
        """Built-in properties of a note merged with its inline properties."""
        properties: Dict[str, PropertyValue] = {
            "title": PropertyValue.text(note.name),
            "name": PropertyValue.text(note.name),
            "path": PropertyValue.text(note.path),
            "created_at": PropertyValue.from_timestamp(note.created_at),
            "updated_at": PropertyValue.from_timestamp(note.updated_at),
        }
        if note.folder:
            properties["folder"] = PropertyValue.text(note.folder)

        if tags is None:
            tags = self.store.get_note_tags(note.id)
        if tags:
            properties["tags"] = PropertyValue.tags(tags)

        if inline is None:
            inline = self.store.get_inline_properties(note.id)
        for prop in inline:
            existing = properties.get(prop.key)
            properties[prop.key] = (
                prop.value if existing is None else merge_property(existing, prop.value)
            )

        return NoteWithProperties(metadata=note, properties=properties)

    def load_notes(self, source_folder: Optional[str] = None) -> List[NoteWithProperties]:
        notes = self.store.list_notes(folder=source_folder)
        ids = [n.id for n in notes]
        tags = self.store.get_tags_for_notes(ids)
        inline = self.store.get_properties_for_notes(ids)
        return [
            self.load_note_properties(n, tags=tags.get(n.id, []), inline=inline.get(n.id, []))
            for n in notes
        ]

    def query(self, base: Base) -> List[Row]:
        """Rows of the Base's active view for its source type."""
        view = base.get_active_view()
        if view is None:
            logger.warning(f"Base '{base.name}' has no active view")
            return []
        if base.source_type is SourceType.NOTES:
            return self.query_view(view, base.source_folder)
        return self.query_records(base, view)

    def query_view(
        self, view: BaseView, source_folder: Optional[str] = None
    ) -> List[NoteWithProperties]:
        results = [
            note
            for note in self.load_notes(source_folder)
            if view.filter.evaluate(note.properties)
        ]
        if view.sort is not None:
            results = self.sort_results(results, view.sort)
        return results

    def filter_notes(
        self,
        filter_group: FilterGroup,
        sort: Optional[SortConfig] = None,
        source_folder: Optional[str] = None,
    ) -> List[NoteWithProperties]:
        """Ad-hoc query without a stored view."""
        view = BaseView(name="adhoc", filter=filter_group, sort=sort)
        return self.query_view(view, source_folder)

    # ------------------------------------------------------------------
    # Record modes
    # ------------------------------------------------------------------

    def load_records(self, base: Base) -> List[RecordRow]:
        if base.source_type is SourceType.PROPERTY_RECORDS:
            records = self.store.get_records_by_property(
                base.filter_property, base.source_folder
            )
        else:
            records = self.store.get_all_grouped_records(base.source_folder)
        return [RecordRow(record=r, properties=record_properties(r)) for r in records]

    def query_records(self, base: Base, view: Optional[BaseView] = None) -> List[RecordRow]:
        view = view or base.get_active_view()
        rows = self.load_records(base)
        if view is None:
            return rows
        rows = [row for row in rows if view.filter.evaluate(row.properties)]
        if view.sort is not None:
            rows = self.sort_results(rows, view.sort)
        return rows

    def suggest_columns(self, base: Base) -> List[str]:
        """Columns for a record Base: the filter property, then its companions."""
        if base.source_type is SourceType.PROPERTY_RECORDS and base.filter_property:
            related = self.store.discover_related_columns(base.filter_property)
            return [base.filter_property] + related + [NOTE_COLUMN]
        return self.discover_inline_properties()

    # ------------------------------------------------------------------
    # Ordering and grouping
    # ------------------------------------------------------------------

    @staticmethod
    def sort_results(rows: List[Row], sort: SortConfig) -> List[Row]:
        """Stable sort by one property; rows without a value go last either way."""
        keyed: List[Tuple[tuple, Row]] = []
        missing: List[Row] = []
        for row in rows:
            value = resolve_property(row.properties, sort.property)
            key = value.sort_key() if value is not None else None
            if key is None:
                missing.append(row)
            else:
                keyed.append((key, row))

        # Keys are (kind rank, payload); payloads only meet within one rank
        keyed.sort(key=lambda item: item[0], reverse=sort.direction is SortDirection.DESC)
        return [row for _, row in keyed] + missing

    @staticmethod
    def group_by(rows: List[Row], prop: str) -> Dict[str, List[Row]]:
        """Bucket rows by the display string of ``prop`` (for board views)."""
        groups: Dict[str, List[Row]] = {}
        for row in rows:
            value = resolve_property(row.properties, prop)
            label = value.to_display_string() if value is not None else EMPTY_GROUP
            groups.setdefault(label, []).append(row)
        return groups

    @staticmethod
    def count_by_property(rows: List[Row], prop: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for row in rows:
            value = resolve_property(row.properties, prop)
            label = value.to_display_string() if value is not None else EMPTY_GROUP
            counts[label] = counts.get(label, 0) + 1
        return counts

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    @staticmethod
    def discover_properties() -> List[str]:
        """Properties offered for plain note views (built-ins only)."""
        return sorted(NOTE_PROPERTIES)

    def discover_inline_properties(self) -> List[str]:
        keys = set(self.store.get_all_property_keys())
        keys.add(NOTE_COLUMN)
        return sorted(keys)

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    @staticmethod
    def aggregate_property(rows: List[Row], prop: str) -> PropertyAggregation:
        """Sum/avg/min/max over numeric values; other values are skipped."""
        numbers: List[float] = []
        non_empty = 0
        for row in rows:
            value = resolve_property(row.properties, prop)
            if value is None:
                continue
            if not value.is_empty():
                non_empty += 1
            number = value.as_number()
            if number is not None:
                numbers.append(number)
        return PropertyAggregation(
            sum=sum(numbers),
            avg=sum(numbers) / len(numbers) if numbers else None,
            min=min(numbers) if numbers else None,
            max=max(numbers) if numbers else None,
            count=non_empty,
            total=len(rows),
        )
