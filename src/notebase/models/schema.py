"""Data models shared by the index store, the services and their callers."""

import datetime
import time
from datetime import timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from notebase.models.properties import PropertyValue


def now_ts() -> int:
    """Current time as integer epoch seconds."""
    return int(time.time())


def utc_now() -> datetime.datetime:
    """Get current UTC time as a timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def from_ts(ts: int) -> datetime.datetime:
    """Timezone-aware datetime from epoch seconds."""
    return datetime.datetime.fromtimestamp(int(ts), tz=timezone.utc)


class NoteMetadata(BaseModel):
    """Index row for a note; the file on disk remains the source of truth."""

    id: int
    name: str
    path: str
    folder: Optional[str] = None
    created_at: int
    updated_at: int
    order_index: int = 0
    icon: Optional[str] = None
    icon_color: Optional[str] = None

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Note name cannot be empty")
        return v

    @property
    def created(self) -> datetime.datetime:
        return from_ts(self.created_at)

    @property
    def updated(self) -> datetime.datetime:
        return from_ts(self.updated_at)


class NoteDocument(BaseModel):
    """A note read back from disk together with its index row."""

    metadata: NoteMetadata
    content: str
    tags: List[str] = Field(default_factory=list)

    @property
    def name(self) -> str:
        return self.metadata.name


class TagInfo(BaseModel):
    """A tag and how many notes use it."""

    id: int
    name: str
    color: Optional[str] = None
    usage_count: int = 0

    model_config = {"frozen": True}


class FolderInfo(BaseModel):
    """Display settings for a folder (icons, colours, order)."""

    id: Optional[int] = None
    path: str
    icon: Optional[str] = None
    icon_color: Optional[str] = None
    color: Optional[str] = None
    order_index: int = 0
    updated_at: Optional[int] = None
    note_count: int = 0


class SearchResult(BaseModel):
    """One hit from :meth:`IndexStore.search_notes`.

    ``relevance`` is the FTS5 rank (lower is better, usually negative) for
    text queries and 1.0 for tag queries. Fallback LIKE hits carry 0.0.
    """

    note_id: int
    note_name: str
    note_path: str
    snippet: str = ""
    relevance: float = 0.0
    matched_tags: List[str] = Field(default_factory=list)


class NoteWithProperties(BaseModel):
    """A note plus its merged property map (built-ins and inline properties)."""

    metadata: NoteMetadata
    properties: Dict[str, PropertyValue] = Field(default_factory=dict)

    def get(self, key: str) -> Optional[PropertyValue]:
        return self.properties.get(key)

    @property
    def name(self) -> str:
        return self.metadata.name


class GroupedRecord(BaseModel):
    """A spreadsheet-like record assembled from one note's property groups.

    ``group_id`` is positive for a real ``[a::1, b::2]`` group and negative
    (``-row_id``) for a record built from a single ungrouped property.
    ``properties`` is sorted by key.
    """

    note_id: int
    note_name: str
    note_path: str
    group_id: int
    properties: List[Tuple[str, str]] = Field(default_factory=list)

    def get(self, key: str) -> Optional[str]:
        for k, v in self.properties:
            if k == key:
                return v
        return None

    def as_dict(self) -> Dict[str, str]:
        return dict(self.properties)


class PropertyLocation(BaseModel):
    """Where a property group sits inside a note's content."""

    note_id: int
    group_id: int
    char_start: int
    char_end: int
    line_number: int


class EmbeddingChunk(BaseModel):
    """A stored note-chunk embedding."""

    note_path: str
    chunk_index: int
    chunk_text: str
    embedding: List[float]
    token_count: int = 0
    created_at: int = 0

    model_config = {"arbitrary_types_allowed": True}


class SyncReport(BaseModel):
    """Outcome of a filesystem sync pass."""

    scanned: int = 0
    indexed: int = 0
    skipped: int = 0
    removed: int = 0
    failures: Dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class HealthReport(BaseModel):
    """Result of :meth:`IndexStore.check_database_health`."""

    healthy: bool
    sqlite_ok: bool
    fts_ok: bool
    schema_version: int
    note_count: int
    fts_count: int
    issues: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)
