"""YAML frontmatter and ``#tag`` handling for note content.

A note may start with a header delimited by ``---`` lines. The header is
parsed with python-frontmatter's YAML handler; everything after the
closing delimiter line is the body, byte for byte.
"""
import datetime
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

import frontmatter
import yaml
from pydantic import BaseModel, Field, field_validator

from notebase.exceptions import InvalidFrontmatterError, NoFrontmatterError

logger = logging.getLogger(__name__)

DELIMITER = "---"

KNOWN_KEYS = ("title", "date", "author", "tags")

# Inline #tag: at line start or after whitespace, '(' or '['
INLINE_TAG_RE = re.compile(r"(?:^|(?<=[\s(\[]))#([\w-]+)")
HEADING_LINE_RE = re.compile(r"^\s*#\s")

_yaml_handler = frontmatter.YAMLHandler()


def _normalize_value(value: Any) -> Any:
    """Dates become ISO strings so headers compare and re-serialize stably."""
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _normalize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize_value(v) for v in value]
    return value


def clean_tag(tag: Any) -> str:
    return str(tag).strip().lstrip("#").strip()


def normalize_tags(tags: Iterable[str]) -> List[str]:
    """Strip ``#``, drop blanks, dedupe and sort."""
    return sorted({clean_tag(t) for t in tags if clean_tag(t)})


class Frontmatter(BaseModel):
    """Parsed note header. Unknown keys are kept in ``extra``."""

    tags: List[str] = Field(default_factory=list)
    title: Optional[str] = None
    date: Optional[str] = None
    author: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        if not isinstance(v, (list, tuple)):
            v = [v]
        return [clean_tag(t) for t in v if clean_tag(t)]

    @field_validator("title", "date", "author", mode="before")
    @classmethod
    def _coerce_scalar(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return str(_normalize_value(v))

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Frontmatter":
        extra = {
            str(k): _normalize_value(v) for k, v in data.items() if k not in KNOWN_KEYS
        }
        return cls(
            tags=data.get("tags"),
            title=data.get("title"),
            date=data.get("date"),
            author=data.get("author"),
            extra=extra,
        )

    def is_empty(self) -> bool:
        return not (self.tags or self.title or self.date or self.author or self.extra)

    def to_mapping(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.title is not None:
            data["title"] = self.title
        if self.date is not None:
            data["date"] = self.date
        if self.author is not None:
            data["author"] = self.author
        if self.tags:
            data["tags"] = list(self.tags)
        data.update(self.extra)
        return data

    def serialize(self) -> str:
        """Render as ``---\\n<yaml>\\n---\\n``."""
        mapping = self.to_mapping()
        if not mapping:
            return f"{DELIMITER}\n{DELIMITER}\n"
        body = _yaml_handler.export(mapping, sort_keys=False)
        return f"{DELIMITER}\n{body.strip()}\n{DELIMITER}\n"

    def to_markdown(self, body: str) -> str:
        return self.serialize() + body

    def add_tag(self, tag: str) -> None:
        tag = clean_tag(tag)
        if tag and tag not in self.tags:
            self.tags.append(tag)

    def remove_tag(self, tag: str) -> None:
        tag = clean_tag(tag).lower()
        self.tags = [t for t in self.tags if t.lower() != tag]


def split_frontmatter(content: str) -> Tuple[str, str]:
    """Split content into (yaml text, body).

    Raises:
        NoFrontmatterError: When the content does not open with a ``---``
            line followed later by a closing ``---`` line.
    """
    if not content.startswith(DELIMITER):
        raise NoFrontmatterError()
    first_end = content.find("\n")
    if first_end == -1 or content[:first_end].rstrip() != DELIMITER:
        raise NoFrontmatterError()

    pos = first_end + 1
    while pos <= len(content):
        newline = content.find("\n", pos)
        line_end = len(content) if newline == -1 else newline
        if content[pos:line_end].rstrip() == DELIMITER:
            yaml_text = content[first_end + 1:pos]
            body = "" if newline == -1 else content[newline + 1:]
            return yaml_text, body
        if newline == -1:
            break
        pos = newline + 1
    raise NoFrontmatterError("Frontmatter header is not closed")


def parse(content: str) -> Tuple[Frontmatter, str]:
    """Parse a header and return it with the remaining body.

    Raises:
        NoFrontmatterError: No delimited header.
        InvalidFrontmatterError: The header is not a YAML mapping.
    """
    yaml_text, body = split_frontmatter(content)
    try:
        data = _yaml_handler.load(yaml_text) if yaml_text.strip() else {}
    except yaml.YAMLError as e:
        raise InvalidFrontmatterError(f"Invalid YAML in frontmatter: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidFrontmatterError(
            "Frontmatter must be a mapping", value=type(data).__name__
        )
    return Frontmatter.from_mapping(data), body


def parse_or_empty(content: str) -> Tuple[Frontmatter, str]:
    """Like :func:`parse`, but any failure yields an empty header and the full content."""
    try:
        return parse(content)
    except (NoFrontmatterError, InvalidFrontmatterError) as e:
        if isinstance(e, InvalidFrontmatterError):
            logger.debug(f"Ignoring unreadable frontmatter: {e}")
        return Frontmatter(), content


def serialize(header: Frontmatter) -> str:
    return header.serialize()


def to_markdown(header: Frontmatter, body: str) -> str:
    return header.to_markdown(body)


def update_tags(content: str, tags: Iterable[str]) -> str:
    """Replace the header's tag list.

    Tags are normalized (sorted, deduplicated). When the resulting header
    would be empty it is dropped and only the body is returned.
    """
    header, body = parse_or_empty(content)
    header.tags = normalize_tags(tags)
    if header.is_empty():
        return body
    return header.to_markdown(body)


def extract_frontmatter_tags(content: str) -> List[str]:
    header, _ = parse_or_empty(content)
    return [t.lower() for t in header.tags]


def extract_inline_tags(content: str) -> List[str]:
    """Find ``#tag`` tokens in text, lowercased, sorted and deduplicated.

    Tag characters are letters, digits (any script), ``_`` and ``-``.
    Heading lines (``# Title``) are skipped.
    """
    tags = set()
    for line in content.splitlines():
        if HEADING_LINE_RE.match(line):
            continue
        for match in INLINE_TAG_RE.finditer(line):
            tags.add(match.group(1).lower())
    return sorted(tags)


def extract_all_tags(content: str) -> List[str]:
    """Union of header tags and inline tags of the body, lowercased and sorted."""
    header, body = parse_or_empty(content)
    tags = {t.lower() for t in header.tags}
    tags.update(extract_inline_tags(body))
    return sorted(t for t in tags if t)
