"""Typed property values and inline-property records.

A :class:`PropertyValue` is the tagged value that flows through the index,
the query engine and the Bases layer. Its JSON/YAML form is
``{"type": <kind>, "value": <payload>}``.
"""
import json
import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DATETIME_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:\d{2})?$"
)
LINK_RE = re.compile(r"^\[\[([^\[\]|]+)(?:\|[^\[\]]*)?\]\]$")

# Tolerance for numeric equality
NUMBER_EPSILON = 1e-9


class PropertyType(str, Enum):
    """Kinds of property values."""
    TEXT = "text"
    NUMBER = "number"
    CHECKBOX = "checkbox"
    DATE = "date"
    DATETIME = "datetime"
    LIST = "list"
    TAGS = "tags"
    LINKS = "links"
    LINK = "link"
    NULL = "null"


_LIST_KINDS = (PropertyType.LIST, PropertyType.TAGS, PropertyType.LINKS)
_STRING_KINDS = (
    PropertyType.TEXT,
    PropertyType.DATE,
    PropertyType.DATETIME,
    PropertyType.LINK,
)


def format_number(value: float) -> str:
    """Integral numbers without a decimal part, others in shortest form."""
    if math.isfinite(value) and float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class PropertyValue(BaseModel):
    """A tagged property value.

    Use the constructors (:meth:`text`, :meth:`number`, ...) or
    :meth:`infer` rather than building instances by hand.
    """

    model_config = ConfigDict(frozen=True)

    type: PropertyType = PropertyType.NULL
    value: Any = None

    # --- constructors -------------------------------------------------

    @classmethod
    def text(cls, value: str) -> "PropertyValue":
        return cls(type=PropertyType.TEXT, value=str(value))

    @classmethod
    def number(cls, value: float) -> "PropertyValue":
        return cls(type=PropertyType.NUMBER, value=float(value))

    @classmethod
    def checkbox(cls, value: bool) -> "PropertyValue":
        return cls(type=PropertyType.CHECKBOX, value=bool(value))

    @classmethod
    def date(cls, value: str) -> "PropertyValue":
        return cls(type=PropertyType.DATE, value=str(value))

    @classmethod
    def datetime(cls, value: str) -> "PropertyValue":
        return cls(type=PropertyType.DATETIME, value=str(value))

    @classmethod
    def list(cls, items: List[str]) -> "PropertyValue":
        return cls(type=PropertyType.LIST, value=[str(i) for i in items])

    @classmethod
    def tags(cls, items: List[str]) -> "PropertyValue":
        return cls(type=PropertyType.TAGS, value=[str(i) for i in items])

    @classmethod
    def links(cls, items: List[str]) -> "PropertyValue":
        return cls(type=PropertyType.LINKS, value=[str(i) for i in items])

    @classmethod
    def link(cls, target: str) -> "PropertyValue":
        return cls(type=PropertyType.LINK, value=str(target))

    @classmethod
    def null(cls) -> "PropertyValue":
        return cls(type=PropertyType.NULL, value=None)

    @classmethod
    def from_timestamp(cls, ts: int) -> "PropertyValue":
        """DateTime value from epoch seconds (UTC, ISO-8601)."""
        dt = datetime.fromtimestamp(int(ts), tz=timezone.utc)
        return cls.datetime(dt.isoformat())

    @classmethod
    def infer(cls, raw: Optional[str]) -> "PropertyValue":
        """Infer a typed value from raw inline text.

        Order: empty, boolean, number, date, datetime, single link,
        comma list (all links gives Links), text.
        """
        if raw is None:
            return cls.null()
        value = raw.strip()
        if not value:
            return cls.null()
        lowered = value.lower()
        if lowered in ("true", "false"):
            return cls.checkbox(lowered == "true")
        if NUMBER_RE.match(value):
            return cls.number(float(value))
        if DATE_RE.match(value):
            return cls.date(value)
        if DATETIME_RE.match(value):
            return cls.datetime(value)
        link = LINK_RE.match(value)
        if link:
            return cls.link(link.group(1).strip())
        if "," in value:
            parts = [p.strip() for p in split_top_level(value) if p.strip()]
            link_parts = [LINK_RE.match(p) for p in parts]
            if parts and all(link_parts):
                return cls.links([m.group(1).strip() for m in link_parts])
            return cls.list(parts)
        return cls.text(value)

    @classmethod
    def coerce(cls, raw: Any) -> "PropertyValue":
        """Build a value from plain Python/YAML data.

        Dicts in ``{"type", "value"}`` form are validated as-is; strings go
        through :meth:`infer`.
        """
        if isinstance(raw, PropertyValue):
            return raw
        if raw is None:
            return cls.null()
        if isinstance(raw, bool):
            return cls.checkbox(raw)
        if isinstance(raw, (int, float)):
            return cls.number(raw)
        if isinstance(raw, dict) and "type" in raw:
            return cls.model_validate(raw)
        if isinstance(raw, (list, tuple)):
            return cls.list([str(item) for item in raw])
        return cls.infer(str(raw))

    # --- inspection ---------------------------------------------------

    @property
    def kind(self) -> PropertyType:
        return self.type

    def type_name(self) -> str:
        return self.type.value

    def is_null(self) -> bool:
        return self.type == PropertyType.NULL

    def is_list(self) -> bool:
        return self.type in _LIST_KINDS

    def is_empty(self) -> bool:
        """Null, blank text and empty collections count as empty."""
        if self.type == PropertyType.NULL:
            return True
        if self.type in _STRING_KINDS:
            return not str(self.value).strip()
        if self.type in _LIST_KINDS:
            return not self.value
        return False

    def items(self) -> List[str]:
        """Elements of a collection value, or a one-element list for scalars."""
        if self.type in _LIST_KINDS:
            return list(self.value)
        if self.type == PropertyType.NULL:
            return []
        return [self.raw_string()]

    def as_number(self) -> Optional[float]:
        """Numeric view used by ordering comparisons; None when not numeric."""
        if self.type == PropertyType.NUMBER:
            return float(self.value)
        if self.type == PropertyType.TEXT and NUMBER_RE.match(str(self.value).strip()):
            return float(str(self.value).strip())
        return None

    # --- rendering ----------------------------------------------------

    def raw_string(self) -> str:
        """Text as it would be written back inside ``[key::...]``."""
        if self.type == PropertyType.NUMBER:
            return format_number(self.value)
        if self.type == PropertyType.CHECKBOX:
            return "true" if self.value else "false"
        if self.type == PropertyType.NULL:
            return ""
        if self.type == PropertyType.LINK:
            return f"[[{self.value}]]"
        if self.type == PropertyType.LINKS:
            return ", ".join(f"[[{item}]]" for item in self.value)
        if self.type in _LIST_KINDS:
            return ", ".join(self.value)
        return str(self.value)

    def to_display_string(self) -> str:
        if self.type == PropertyType.TEXT:
            return self.value
        if self.type == PropertyType.NUMBER:
            n = float(self.value)
            return str(int(n)) if n.is_integer() else f"{n:.2f}"
        if self.type == PropertyType.CHECKBOX:
            return "✓" if self.value else "✗"
        if self.type == PropertyType.DATE:
            try:
                return datetime.strptime(self.value, "%Y-%m-%d").strftime("%d %b %Y")
            except ValueError:
                return self.value
        if self.type == PropertyType.DATETIME:
            try:
                parsed = datetime.fromisoformat(str(self.value).replace("Z", "+00:00"))
                return parsed.strftime("%d %b %Y, %H:%M")
            except ValueError:
                return self.value
        if self.type == PropertyType.LIST:
            return ", ".join(self.value)
        if self.type == PropertyType.TAGS:
            return " ".join(f"#{t}" for t in self.value)
        if self.type == PropertyType.LINKS:
            return ", ".join(f"[[{l}]]" for l in self.value)
        if self.type == PropertyType.LINK:
            return f"@{self.value}"
        return "—"

    def sort_key(self) -> Optional[Tuple[int, Any]]:
        """Ordering key within one sort; None for nulls.

        Booleans sort before numbers, numbers before dates, dates before
        strings, strings before collections.
        """
        if self.type == PropertyType.NULL:
            return None
        if self.type == PropertyType.CHECKBOX:
            return (0, int(bool(self.value)))
        if self.type == PropertyType.NUMBER:
            return (1, float(self.value))
        if self.type in (PropertyType.DATE, PropertyType.DATETIME):
            return (2, str(self.value))
        if self.type in (PropertyType.TEXT, PropertyType.LINK):
            return (3, str(self.value).lower())
        return (4, self.raw_string().lower())

    # --- storage ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PropertyValue":
        return cls.model_validate(data)

    def to_columns(self) -> Tuple[Optional[str], Optional[float], Optional[int]]:
        """Split into the (value_text, value_number, value_bool) index columns."""
        if self.type == PropertyType.NUMBER:
            return None, float(self.value), None
        if self.type == PropertyType.CHECKBOX:
            return None, None, 1 if self.value else 0
        if self.type == PropertyType.NULL:
            return None, None, None
        if self.type in _LIST_KINDS:
            return json.dumps(list(self.value), ensure_ascii=False), None, None
        return str(self.value), None, None

    @classmethod
    def from_columns(
        cls,
        property_type: str,
        value_text: Optional[str],
        value_number: Optional[float],
        value_bool: Optional[int],
    ) -> "PropertyValue":
        kind = PropertyType(property_type)
        if kind == PropertyType.NUMBER:
            return cls.number(value_number if value_number is not None else 0.0)
        if kind == PropertyType.CHECKBOX:
            return cls.checkbox(bool(value_bool))
        if kind == PropertyType.NULL:
            return cls.null()
        if kind in _LIST_KINDS:
            try:
                items = json.loads(value_text) if value_text else []
            except ValueError:
                items = [value_text]
            return cls(type=kind, value=[str(i) for i in items])
        return cls(type=kind, value=value_text or "")

    def __str__(self) -> str:
        return self.to_display_string()


def split_top_level(value: str) -> List[str]:
    """Split on commas that are not inside ``[[...]]``."""
    parts: List[str] = []
    depth = 0
    current: List[str] = []
    i = 0
    while i < len(value):
        if value.startswith("[[", i):
            depth += 1
            current.append("[[")
            i += 2
            continue
        if value.startswith("]]", i) and depth:
            depth -= 1
            current.append("]]")
            i += 2
            continue
        ch = value[i]
        if ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1
    parts.append("".join(current))
    return parts


class InlineProperty(BaseModel):
    """One ``[key::value]`` occurrence inside a note body.

    ``char_start``/``char_end`` are str (code point) offsets into the full
    note content; ``content[char_start:char_end]`` is the whole bracket
    group the property belongs to. ``line_number`` is 0-based.
    """

    key: str
    value: PropertyValue
    line_number: int
    char_start: int
    char_end: int
    group_id: Optional[int] = None
    raw_value: str = ""
    linked_note_id: Optional[int] = None
    note_id: Optional[int] = None
    row_id: Optional[int] = None

    @property
    def is_grouped(self) -> bool:
        return self.group_id is not None
