"""Extraction of inline ``[key::value]`` properties from note content.

A bracket group holds one or more ``key::value`` pairs separated by
commas: ``[juego::Novalands, horas::12]``. Rules:

- the frontmatter header, fenced code blocks and heading lines are skipped
- ``[[wiki links]]`` never start a group, but may appear inside a value
- a group cannot span lines; an unclosed group is ignored
- after a comma a new pair starts only when ``key::`` follows, otherwise
  the comma belongs to the value (which then infers as a list)

Offsets are str indices (code points) into the full content.
"""
import logging
import re
from typing import List, NamedTuple, Optional, Tuple

from notebase.exceptions import NoFrontmatterError
from notebase.models.properties import InlineProperty, PropertyValue
from notebase.storage.markdown_parser import split_frontmatter

logger = logging.getLogger(__name__)

KEY_RE = re.compile(r"\s*([A-Za-z_][A-Za-z0-9_-]*)::")
HEADING_RE = re.compile(r"^\s*#{1,6}\s")
FENCE_MARKERS = ("```", "~~~")


def _body_offset(content: str) -> int:
    """Index where the body starts (0 without a frontmatter header)."""
    try:
        _, body = split_frontmatter(content)
    except NoFrontmatterError:
        return 0
    return len(content) - len(body)


class PairSpan(NamedTuple):
    """A ``key::value`` pair inside a group with the span of its raw value."""

    key: str
    value: str
    value_start: int
    value_end: int


def _parse_group(line: str, start: int) -> Optional[Tuple[List[PairSpan], int]]:
    """Parse the group opening at ``line[start]``.

    Returns the pairs (with value spans relative to ``line``) and the index
    just past the closing bracket, or None when the text is not a
    well-formed group.
    """
    pos = start + 1
    pairs: List[PairSpan] = []
    while True:
        match = KEY_RE.match(line, pos)
        if not match:
            return None
        key = match.group(1)
        pos = value_start = match.end()
        while True:
            if pos >= len(line):
                return None
            if line.startswith("[[", pos):
                close = line.find("]]", pos + 2)
                if close == -1:
                    return None
                pos = close + 2
                continue
            ch = line[pos]
            if ch == "]":
                pairs.append(PairSpan(key, line[value_start:pos].strip(), value_start, pos))
                return pairs, pos + 1
            if ch == "," and KEY_RE.match(line, pos + 1):
                pairs.append(PairSpan(key, line[value_start:pos].strip(), value_start, pos))
                pos += 1
                break
            pos += 1


def parse_group_text(text: str) -> Optional[List[PairSpan]]:
    """Pairs of a single bracket group such as ``[a::1, b::2]``.

    Returns None unless ``text`` is exactly one well-formed group.
    """
    if not text.startswith("[") or text.startswith("[["):
        return None
    parsed = _parse_group(text, 0)
    if parsed is None or parsed[1] != len(text):
        return None
    return parsed[0]


def _is_group_start(line: str, i: int) -> bool:
    if line[i] != "[":
        return False
    if i > 0 and line[i - 1] == "[":
        return False
    if i + 1 < len(line) and line[i + 1] == "[":
        return False
    return True


def parse_inline_properties(content: str) -> List[InlineProperty]:
    """Extract every inline property of a note in document order.

    A bracket holding a single pair yields an ungrouped property
    (``group_id`` None); two or more pairs share a group id that is
    unique within this parse, starting at 1.
    """
    properties: List[InlineProperty] = []
    body_start = _body_offset(content)
    next_group_id = 1
    fence: Optional[str] = None

    offset = 0
    for line_number, line in enumerate(content.split("\n")):
        line_start = offset
        offset += len(line) + 1
        if line_start < body_start:
            continue

        stripped = line.lstrip()
        marker = next((m for m in FENCE_MARKERS if stripped.startswith(m)), None)
        if fence is not None:
            if marker == fence:
                fence = None
            continue
        if marker is not None:
            fence = marker
            continue
        if HEADING_RE.match(line):
            continue

        i = 0
        while i < len(line):
            if _is_group_start(line, i):
                parsed = _parse_group(line, i)
                if parsed is not None:
                    pairs, end = parsed
                    group_id = None
                    if len(pairs) > 1:
                        group_id = next_group_id
                        next_group_id += 1
                    for key, raw, _, _ in pairs:
                        properties.append(
                            InlineProperty(
                                key=key,
                                value=PropertyValue.infer(raw),
                                raw_value=raw,
                                line_number=line_number,
                                char_start=line_start + i,
                                char_end=line_start + end,
                                group_id=group_id,
                            )
                        )
                    i = end
                    continue
            i += 1

    return properties


def format_group(pairs: List[Tuple[str, str]]) -> str:
    """Render pairs back into bracket syntax: ``[a::1, b::2]``."""
    return "[" + ", ".join(f"{key}::{value}" for key, value in pairs) + "]"
