"""Bases: saved, spreadsheet-like views over notes or property records.

Every model here keeps unknown YAML keys (``extra="allow"``) so that a
configuration written by a newer version survives a load/save cycle.
"""

import time
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from notebase.exceptions import BaseConfigError, ErrorCode
from notebase.models.properties import NUMBER_EPSILON, PropertyType, PropertyValue

# Filter/sort property aliases for built-in keys
PROPERTY_ALIASES: Dict[str, List[str]] = {
    "name": ["title"],
    "title": ["name"],
    "created": ["created_at"],
    "created_at": ["created"],
    "updated": ["updated_at", "modified"],
    "updated_at": ["updated", "modified"],
    "modified": ["updated_at", "updated"],
}

NOTE_COLUMN = "_note"


def resolve_property(
    properties: Mapping[str, PropertyValue], key: str
) -> Optional[PropertyValue]:
    """Look a key up directly, then through its aliases."""
    value = properties.get(key)
    if value is not None:
        return value
    for alias in PROPERTY_ALIASES.get(key, ()):
        value = properties.get(alias)
        if value is not None:
            return value
    return None


def capitalize(value: str) -> str:
    return value[:1].upper() + value[1:] if value else ""


class _Model(BaseModel):
    model_config = ConfigDict(extra="allow", validate_assignment=True)


class CellFormat(_Model):
    """Presentation of a single special-row cell."""

    decimals: Optional[int] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None
    bold: bool = False
    color: Optional[str] = None
    background: Optional[str] = None

    def format_number(self, value: float) -> str:
        if self.decimals is not None:
            result = f"{value:.{self.decimals}f}"
        elif float(value).is_integer():
            result = str(int(value))
        else:
            result = f"{value:.2f}"
        if self.prefix:
            result = f"{self.prefix}{result}"
        if self.suffix:
            result = f"{result}{self.suffix}"
        return result

    def to_css(self) -> str:
        styles = []
        if self.bold:
            styles.append("font-weight: bold")
        if self.color:
            styles.append(f"color: {self.color}")
        if self.background:
            styles.append(f"background-color: {self.background}")
        return "; ".join(styles)


class SpecialCellContent(_Model):
    """Text or ``=formula`` shown in one column of a special row."""

    content: str = ""
    format: CellFormat = Field(default_factory=CellFormat)

    @classmethod
    def text(cls, content: str) -> "SpecialCellContent":
        return cls(content=content)

    @classmethod
    def formula(cls, formula: str) -> "SpecialCellContent":
        if not formula.startswith("="):
            formula = f"={formula}"
        return cls(content=formula)

    @property
    def is_formula(self) -> bool:
        return self.content.startswith("=")


class SpecialRow(_Model):
    """A non-data row (totals, averages) rendered among the data rows.

    ``position`` is the data-row index the row is inserted before; None
    appends it after the last data row.
    """

    id: str
    label: str = ""
    cells: Dict[str, SpecialCellContent] = Field(default_factory=dict)
    position: Optional[int] = None
    css_class: Optional[str] = None

    @classmethod
    def totals(cls, label: str = "Total") -> "SpecialRow":
        return cls(id="totals", label=label, css_class="special-row-totals")

    def with_cell(self, column: str, content: SpecialCellContent) -> "SpecialRow":
        self.cells[column] = content
        return self

    def with_formula(self, column: str, formula: str) -> "SpecialRow":
        self.cells[column] = SpecialCellContent.formula(formula)
        return self

    def at_position(self, position: int) -> "SpecialRow":
        self.position = position
        return self


class FilterOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_THAN = "less_than"
    LESS_OR_EQUAL = "less_or_equal"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"

    def evaluate(self, value: PropertyValue, operand: PropertyValue) -> bool:
        """Apply the operator to a present property value."""
        if self is FilterOperator.EQUALS:
            return values_equal(value, operand)
        if self is FilterOperator.NOT_EQUALS:
            return not values_equal(value, operand)
        if self is FilterOperator.CONTAINS:
            return value_contains(value, operand)
        if self is FilterOperator.NOT_CONTAINS:
            return not value_contains(value, operand)
        if self is FilterOperator.STARTS_WITH:
            return _text_of(value).startswith(_text_of(operand))
        if self is FilterOperator.ENDS_WITH:
            return _text_of(value).endswith(_text_of(operand))
        if self is FilterOperator.IS_EMPTY:
            return value.is_empty()
        if self is FilterOperator.IS_NOT_EMPTY:
            return not value.is_empty()
        cmp = compare_values(value, operand)
        if cmp is None:
            return False
        if self is FilterOperator.GREATER_THAN:
            return cmp > 0
        if self is FilterOperator.GREATER_OR_EQUAL:
            return cmp >= 0
        if self is FilterOperator.LESS_THAN:
            return cmp < 0
        return cmp <= 0


def _text_of(value: PropertyValue) -> str:
    return value.raw_string().lower()


def _clean_tag(tag: str) -> str:
    return tag.strip().lstrip("#").lower()


def values_equal(a: PropertyValue, b: PropertyValue) -> bool:
    """Equality without cross-kind coercion (tags vs text is membership)."""
    if a.type == PropertyType.TAGS and b.type == PropertyType.TEXT:
        needle = _clean_tag(b.value)
        return any(_clean_tag(t) == needle for t in a.value)
    if a.type != b.type:
        return False
    if a.type == PropertyType.TEXT:
        return a.value.lower() == b.value.lower()
    if a.type == PropertyType.NUMBER:
        return abs(float(a.value) - float(b.value)) < NUMBER_EPSILON
    if a.type == PropertyType.LINK:
        return a.value.lower() == b.value.lower()
    return a.value == b.value


def value_contains(a: PropertyValue, b: PropertyValue) -> bool:
    """Substring match for scalars; element match for collections.

    Tags match when one tag equals the operand (case-insensitive, leading
    ``#`` ignored), so ``rust`` does not match ``rusty``.
    """
    needle = b.raw_string().lower()
    if a.type == PropertyType.TAGS:
        cleaned = _clean_tag(needle)
        return any(_clean_tag(t) == cleaned for t in a.value)
    if a.type in (PropertyType.LIST, PropertyType.LINKS):
        return any(needle in item.lower() for item in a.value)
    if a.type == PropertyType.NULL:
        return False
    return needle in a.raw_string().lower()


def compare_values(a: PropertyValue, b: PropertyValue) -> Optional[int]:
    """Three-way comparison for ordering operators; None when not comparable."""
    na, nb = a.as_number(), b.as_number()
    if na is not None and nb is not None:
        return (na > nb) - (na < nb)
    date_kinds = (PropertyType.DATE, PropertyType.DATETIME)
    if a.type in date_kinds and b.type in date_kinds:
        sa, sb = str(a.value), str(b.value)
        return (sa > sb) - (sa < sb)
    return None


class Filter(_Model):
    property: str
    operator: FilterOperator = FilterOperator.EQUALS
    value: PropertyValue = Field(default_factory=PropertyValue.null)

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, v: Any) -> PropertyValue:
        return PropertyValue.coerce(v)

    @classmethod
    def equals(cls, prop: str, value: Any) -> "Filter":
        return cls(property=prop, operator=FilterOperator.EQUALS, value=value)

    @classmethod
    def contains(cls, prop: str, value: Any) -> "Filter":
        return cls(property=prop, operator=FilterOperator.CONTAINS, value=value)

    @classmethod
    def has_tag(cls, tag: str) -> "Filter":
        return cls(
            property="tags",
            operator=FilterOperator.CONTAINS,
            value=PropertyValue.text(tag),
        )

    @classmethod
    def is_empty(cls, prop: str) -> "Filter":
        return cls(property=prop, operator=FilterOperator.IS_EMPTY)

    def evaluate(self, properties: Mapping[str, PropertyValue]) -> bool:
        """A missing property satisfies only ``is_empty``."""
        value = resolve_property(properties, self.property)
        if value is None:
            return self.operator is FilterOperator.IS_EMPTY
        return self.operator.evaluate(value, self.value)


class FilterLogic(str, Enum):
    AND = "and"
    OR = "or"


class FilterGroup(_Model):
    filters: List[Filter] = Field(default_factory=list)
    logic: FilterLogic = FilterLogic.AND

    def evaluate(self, properties: Mapping[str, PropertyValue]) -> bool:
        if not self.filters:
            return True
        if self.logic is FilterLogic.OR:
            return any(f.evaluate(properties) for f in self.filters)
        return all(f.evaluate(properties) for f in self.filters)


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class SortConfig(_Model):
    property: str
    direction: SortDirection = SortDirection.ASC

    @classmethod
    def asc(cls, prop: str) -> "SortConfig":
        return cls(property=prop, direction=SortDirection.ASC)

    @classmethod
    def desc(cls, prop: str) -> "SortConfig":
        return cls(property=prop, direction=SortDirection.DESC)


class ColumnConfig(_Model):
    property: str
    title: Optional[str] = None
    width: Optional[int] = None
    visible: bool = True

    def display_title(self) -> str:
        return self.title if self.title else capitalize(self.property)


class ViewType(str, Enum):
    TABLE = "table"
    LIST = "list"
    BOARD = "board"
    GALLERY = "gallery"


class SourceType(str, Enum):
    NOTES = "notes"
    GROUPED_RECORDS = "grouped_records"
    PROPERTY_RECORDS = "property_records"


def _default_note_columns() -> List[ColumnConfig]:
    return [
        ColumnConfig(property="title"),
        ColumnConfig(property="tags"),
        ColumnConfig(property="updated_at", title="Modified"),
    ]


class BaseView(_Model):
    name: str
    view_type: ViewType = ViewType.TABLE
    filter: FilterGroup = Field(default_factory=FilterGroup)
    columns: List[ColumnConfig] = Field(default_factory=_default_note_columns)
    sort: Optional[SortConfig] = Field(
        default_factory=lambda: SortConfig.desc("updated_at")
    )
    group_by: Optional[str] = None
    editable: bool = False
    special_rows: List[SpecialRow] = Field(default_factory=list)

    @classmethod
    def new(cls, name: str) -> "BaseView":
        return cls(name=name)

    @classmethod
    def table(cls, name: str) -> "BaseView":
        return cls(name=name, view_type=ViewType.TABLE)

    @classmethod
    def list(cls, name: str) -> "BaseView":
        return cls(name=name, view_type=ViewType.LIST)

    @classmethod
    def board(cls, name: str, group_by: str) -> "BaseView":
        return cls(name=name, view_type=ViewType.BOARD, group_by=group_by)

    @classmethod
    def grouped_records(cls, name: str) -> "BaseView":
        return cls(
            name=name,
            columns=[ColumnConfig(property=NOTE_COLUMN, title="Note")],
            sort=None,
        )

    @classmethod
    def property_records(cls, name: str, filter_property: str) -> "BaseView":
        return cls(
            name=name,
            columns=[
                ColumnConfig(property=filter_property, title=capitalize(filter_property)),
                ColumnConfig(property=NOTE_COLUMN, title="Note"),
            ],
            sort=None,
            editable=True,
        )

    def visible_columns(self) -> List[ColumnConfig]:
        return [c for c in self.columns if c.visible]

    def is_editable(self, source_type: "SourceType") -> bool:
        """Record sources are always editable; note views only when flagged."""
        if source_type is SourceType.NOTES:
            return self.editable
        return True


class Base(_Model):
    name: str
    description: Optional[str] = None
    source_type: SourceType = SourceType.NOTES
    source_folder: Optional[str] = None
    filter_property: Optional[str] = None
    views: List[BaseView] = Field(default_factory=lambda: [BaseView.new("Default")])
    active_view: int = 0
    created_at: int = Field(default_factory=lambda: int(time.time()))
    updated_at: int = Field(default_factory=lambda: int(time.time()))

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Base name cannot be empty")
        return v.strip()

    @model_validator(mode="after")
    def _validate_source(self) -> "Base":
        if self.source_type is SourceType.PROPERTY_RECORDS and not (
            self.filter_property and self.filter_property.strip()
        ):
            raise ValueError("property_records bases need a filter property")
        return self

    @classmethod
    def new(cls, name: str) -> "Base":
        return cls(name=name)

    @classmethod
    def grouped_records(cls, name: str) -> "Base":
        return cls(
            name=name,
            source_type=SourceType.GROUPED_RECORDS,
            views=[BaseView.grouped_records("Default")],
        )

    @classmethod
    def property_records(cls, name: str, filter_property: str) -> "Base":
        if not filter_property or not filter_property.strip():
            raise BaseConfigError(
                "property_records bases need a filter property",
                field="filter_property",
            )
        return cls(
            name=name,
            source_type=SourceType.PROPERTY_RECORDS,
            filter_property=filter_property,
            views=[BaseView.property_records("Default", filter_property)],
        )

    @classmethod
    def with_view(cls, name: str, view: BaseView) -> "Base":
        return cls(name=name, views=[view])

    def get_active_view(self) -> Optional[BaseView]:
        if 0 <= self.active_view < len(self.views):
            return self.views[self.active_view]
        return None

    def add_view(self, view: BaseView) -> None:
        self.views.append(view)
        self.touch()

    def set_active_view(self, index: int) -> bool:
        if 0 <= index < len(self.views):
            self.active_view = index
            return True
        return False

    def set_source_type(
        self, source_type: SourceType, filter_property: Optional[str] = None
    ) -> None:
        """Switch the data source, keeping views.

        Switching to ``property_records`` requires a filter property, taken
        from the argument or the one already configured.
        """
        source_type = SourceType(source_type)
        prop = filter_property or self.filter_property
        if source_type is SourceType.PROPERTY_RECORDS and not prop:
            raise BaseConfigError(
                "Switching to property_records needs a filter property",
                field="filter_property",
                code=ErrorCode.BASE_CONFIG_INVALID,
            )
        if filter_property:
            self.filter_property = filter_property
        self.source_type = source_type
        self.touch()

    def touch(self) -> None:
        self.updated_at = int(time.time())

    # --- YAML ---------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def to_yaml(self) -> str:
        return yaml.safe_dump(
            self.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False
        )

    @classmethod
    def from_yaml(cls, content: str) -> "Base":
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise BaseConfigError(f"Invalid base YAML: {e}") from e
        if not isinstance(data, dict):
            raise BaseConfigError("Base YAML must be a mapping")
        try:
            return cls.model_validate(data)
        except ValueError as e:
            raise BaseConfigError(f"Invalid base configuration: {e}") from e
