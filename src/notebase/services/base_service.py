"""Bases: persisted views rendered into tables, with edits routed to note files."""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from notebase.exceptions import (BaseConfigError, BaseNotFoundError, ErrorCode,
                                 PropertyError)
from notebase.models.base import (NOTE_COLUMN, Base, BaseView, ColumnConfig,
                                  SourceType, SpecialCellContent, SpecialRow,
                                  resolve_property)
from notebase.models.properties import PropertyValue
from notebase.services.base_writer import BaseWriter, WriteResult
from notebase.services.formula import CellGrid, CellKind, CellRef, CellValue, col_to_letters
from notebase.services.query_engine import BaseQueryEngine, RecordRow, Row

if TYPE_CHECKING:
    from notebase.storage.index_store import IndexStore

logger = logging.getLogger(__name__)

# Built-in note columns that are derived from metadata and never written back
READ_ONLY_COLUMNS = frozenset(
    {"title", "name", "path", "folder", "tags", "created", "created_at",
     "updated", "updated_at", "modified", NOTE_COLUMN}
)


@dataclass
class RenderedCell:
    column: str
    text: str = ""
    value: Optional[PropertyValue] = None
    css: str = ""


@dataclass
class TableRow:
    """One rendered row.

    Data rows carry the note (and, for record sources, the group) they came
    from so edits can be routed back. Special rows carry their id and label.
    """

    cells: List[RenderedCell] = field(default_factory=list)
    note_id: Optional[int] = None
    note_name: Optional[str] = None
    group_id: Optional[int] = None
    special_id: Optional[str] = None
    label: str = ""
    css_class: Optional[str] = None

    @property
    def is_special(self) -> bool:
        return self.special_id is not None

    def cell(self, column: str) -> Optional[RenderedCell]:
        for cell in self.cells:
            if cell.column == column:
                return cell
        return None

    def text(self, column: str) -> str:
        cell = self.cell(column)
        return cell.text if cell else ""


@dataclass
class BaseTable:
    base_name: str
    view_name: str
    source_type: SourceType
    columns: List[ColumnConfig]
    rows: List[TableRow]
    editable: bool
    grid: CellGrid

    @property
    def data_rows(self) -> List[TableRow]:
        return [r for r in self.rows if not r.is_special]

    @property
    def special_rows(self) -> List[TableRow]:
        return [r for r in self.rows if r.is_special]

    def headers(self) -> List[str]:
        return [c.display_title() for c in self.columns]


class BaseService:
    """Create, store, render and edit Bases."""

    def __init__(self, store: "IndexStore"):
        self.store = store
        self.engine = BaseQueryEngine(store)
        self.writer = BaseWriter(store)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def list_bases(self) -> List[Base]:
        return self.store.bases.list_bases()

    def get_base(self, name: str) -> Base:
        base = self.store.bases.get_base(name)
        if base is None:
            raise BaseNotFoundError(name)
        return base

    def create_base(self, base: Base) -> Base:
        self._check_view_properties(base)
        return self.store.bases.create_base(base)

    def update_base(self, base: Base, previous_name: Optional[str] = None) -> Base:
        self._check_view_properties(base)
        return self.store.bases.update_base(base, previous_name)

    def _check_view_properties(self, base: Base) -> None:
        """Columns and sort keys must be built-ins or keys already seen inline."""
        known = READ_ONLY_COLUMNS | set(self.store.get_all_property_keys())
        for view in base.views:
            used = [("columns", c.property) for c in view.columns]
            if view.sort is not None:
                used.append(("sort", view.sort.property))
            for where, prop in used:
                if prop not in known:
                    raise BaseConfigError(
                        f"View '{view.name}' uses unknown property '{prop}'",
                        field=where,
                        value=prop,
                    )

    def delete_base(self, name: str) -> None:
        self.store.bases.delete_base(name)

    def set_source_type(
        self, name: str, source_type: SourceType, filter_property: Optional[str] = None
    ) -> Base:
        """Switch a stored Base's data source; the change is persisted."""
        base = self.get_base(name)
        base.set_source_type(source_type, filter_property)
        return self.update_base(base)

    def add_view(self, name: str, view: BaseView) -> Base:
        base = self.get_base(name)
        base.add_view(view)
        return self.update_base(base)

    def set_active_view(self, name: str, index: int) -> Base:
        base = self.get_base(name)
        if not base.set_active_view(index):
            raise BaseConfigError(
                f"Base '{name}' has no view {index}", field="active_view", value=index
            )
        return self.update_base(base)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    @staticmethod
    def _view(base: Base, view_index: Optional[int]) -> BaseView:
        index = base.active_view if view_index is None else view_index
        if not 0 <= index < len(base.views):
            raise BaseConfigError(
                f"Base '{base.name}' has no view {index}", field="active_view", value=index
            )
        return base.views[index]

    @staticmethod
    def _cell_value(row: Row, column: str) -> Optional[PropertyValue]:
        if isinstance(row, RecordRow):
            return row.properties.get(column)
        if column == NOTE_COLUMN:
            return PropertyValue.text(row.metadata.name)
        return resolve_property(row.properties, column)

    def render(self, base: Base, view_index: Optional[int] = None) -> BaseTable:
        """Evaluate a view into rows of display strings plus special rows.

        Data rows fill a :class:`CellGrid` (column A is the first visible
        column, row 1 the first data row); special-row formulas are
        evaluated against that grid.
        """
        view = self._view(base, view_index)
        if base.source_type is SourceType.NOTES:
            rows: List[Row] = self.engine.query_view(view, base.source_folder)
        else:
            rows = self.engine.query_records(base, view)
        columns = view.visible_columns()

        grid = CellGrid()
        data_rows: List[TableRow] = []
        for r, row in enumerate(rows, start=1):
            table_row = TableRow()
            if isinstance(row, RecordRow):
                table_row.note_id = row.record.note_id
                table_row.note_name = row.record.note_name
                table_row.group_id = row.record.group_id
            else:
                table_row.note_id = row.metadata.id
                table_row.note_name = row.metadata.name
            for c, column in enumerate(columns):
                value = self._cell_value(row, column.property)
                raw = value.raw_string() if value is not None else ""
                grid.set_input(CellRef(c, r), raw)
                text = value.to_display_string() if value is not None else ""
                if raw.startswith("="):
                    text = str(grid.get(CellRef(c, r)))
                table_row.cells.append(
                    RenderedCell(column=column.property, text=text, value=value)
                )
            data_rows.append(table_row)

        specials = [
            self._render_special(special, columns, grid) for special in view.special_rows
        ]
        return BaseTable(
            base_name=base.name,
            view_name=view.name,
            source_type=base.source_type,
            columns=columns,
            rows=self._place_special_rows(data_rows, view.special_rows, specials),
            editable=view.is_editable(base.source_type),
            grid=grid,
        )

    @staticmethod
    def _special_content(
        special: SpecialRow, column: ColumnConfig, index: int
    ) -> Optional[SpecialCellContent]:
        content = special.cells.get(column.property)
        if content is None:
            content = special.cells.get(col_to_letters(index))
        return content

    def _render_special(
        self, special: SpecialRow, columns: List[ColumnConfig], grid: CellGrid
    ) -> TableRow:
        row = TableRow(special_id=special.id, label=special.label, css_class=special.css_class)
        for index, column in enumerate(columns):
            content = self._special_content(special, column, index)
            if content is None:
                row.cells.append(RenderedCell(column=column.property))
                continue
            if content.is_formula:
                value = grid.evaluate(content.content)
                text = self._format_result(value, content)
            else:
                text = content.content
            row.cells.append(
                RenderedCell(column=column.property, text=text, css=content.format.to_css())
            )
        return row

    @staticmethod
    def _format_result(value: CellValue, content: SpecialCellContent) -> str:
        if value.kind is CellKind.NUMBER:
            return content.format.format_number(value.value)
        return str(value)

    @staticmethod
    def _place_special_rows(
        data_rows: List[TableRow], configs: List[SpecialRow], rendered: List[TableRow]
    ) -> List[TableRow]:
        """Insert each special row before the data row at its position (None appends)."""
        before: Dict[int, List[TableRow]] = {}
        trailing: List[TableRow] = []
        for config, row in zip(configs, rendered):
            if config.position is None or config.position >= len(data_rows):
                trailing.append(row)
            else:
                before.setdefault(max(config.position, 0), []).append(row)
        result: List[TableRow] = []
        for index, row in enumerate(data_rows):
            result.extend(before.get(index, []))
            result.append(row)
        return result + trailing

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def _require_editable(self, base: Base, view: BaseView) -> None:
        if not view.is_editable(base.source_type):
            raise BaseConfigError(
                f"View '{view.name}' of base '{base.name}' is read-only",
                field="editable",
                code=ErrorCode.VIEW_NOT_EDITABLE,
            )

    def update_cell(
        self,
        base: Base,
        row: TableRow,
        column: str,
        new_value: str,
        view_index: Optional[int] = None,
    ) -> WriteResult:
        """Write an edited cell back into the note that owns it."""
        view = self._view(base, view_index)
        self._require_editable(base, view)
        if row.is_special or row.note_id is None:
            raise BaseConfigError("Special rows cannot be edited", field="row")
        if column in READ_ONLY_COLUMNS:
            raise BaseConfigError(
                f"Column '{column}' is read-only", field="column", value=column,
                code=ErrorCode.VIEW_NOT_EDITABLE,
            )

        cell = row.cell(column)
        old_raw = cell.value.raw_string() if cell and cell.value is not None else None
        group_id = self._locate_group(row.note_id, column, old_raw, row.group_id)
        if group_id is not None:
            return self.writer.update_property_value(row.note_id, group_id, column, new_value)

        if base.source_type is SourceType.NOTES or row.group_id is None:
            self.writer.append_property_line(row.note_id, column, new_value)
        else:
            self.add_record_property(row.note_id, row.group_id, column, new_value)
        return WriteResult(updated=1)

    def _locate_group(
        self, note_id: int, key: str, old_raw: Optional[str], preferred: Optional[int]
    ) -> Optional[int]:
        """Group (or ``-row_id``) that holds ``key`` for this row.

        Records may be merged from several groups, so the group that holds
        the displayed value is looked up rather than assumed.
        """
        if preferred is not None and self.store.get_property_value(note_id, preferred, key):
            return preferred
        candidates = [p for p in self.store.get_inline_properties(note_id) if p.key == key]
        if old_raw is not None:
            matching = [p for p in candidates if p.value.raw_string() == old_raw]
            candidates = matching or candidates
        if not candidates:
            return None
        prop = candidates[0]
        return prop.group_id if prop.group_id is not None else -prop.row_id

    def add_record_property(
        self, note_id: int, group_id: int, key: str, value: str
    ) -> None:
        """Add a new column value to a record's group, expanding single properties."""
        if group_id > 0:
            self.writer.add_property_to_group(note_id, group_id, key, value)
            return
        location = self.store.get_group_location(note_id, group_id)
        if location is None:
            raise PropertyError(
                "Property not found", note_id=note_id, group_id=group_id,
                code=ErrorCode.GROUP_NOT_FOUND,
            )
        self.writer.expand_individual_to_group(
            note_id, location.char_start, location.char_end, key, value
        )
