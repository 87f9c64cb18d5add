"""Utility functions for the notebase engine."""
import os
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Optional, Tuple

from notebase.exceptions import ErrorCode, NoteValidationError

MARKDOWN_SUFFIX = ".md"


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Prevents SQL LIKE pattern injection where user input containing
    '%' or '_' could match unintended patterns.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for use with ESCAPE '\\'

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\\\% complete'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def is_hidden_folder(folder: Optional[str], hidden: Iterable[str]) -> bool:
    """Return True when a folder (relative, posix) is or sits under a hidden folder."""
    if not folder:
        return False
    parts = PurePosixPath(folder).parts
    hidden_set = set(hidden)
    return any(part in hidden_set for part in parts)


def hidden_filter_sql(
    alias: str, hidden: Iterable[str], prefix: str = "hidden"
) -> Tuple[str, Dict[str, str]]:
    """Build a SQL predicate excluding notes stored under hidden folders.

    The predicate checks both the folder column (top level) and the path
    (nested occurrences such as ``projects/.trash/x.md``).

    Returns:
        The SQL fragment and its bind parameters.
    """
    clauses = []
    params: Dict[str, str] = {}
    for i, name in enumerate(hidden):
        exact = f"{prefix}_{i}_exact"
        below = f"{prefix}_{i}_below"
        nested = f"{prefix}_{i}_nested"
        escaped = escape_like_pattern(name)
        params[exact] = name
        params[below] = f"{escaped}/%"
        params[nested] = f"%/{escaped}/%"
        clauses.append(
            f"({alias}.folder IS NULL OR ({alias}.folder != :{exact} "
            f"AND {alias}.folder NOT LIKE :{below} ESCAPE '\\'))"
        )
        clauses.append(f"{alias}.path NOT LIKE :{nested} ESCAPE '\\'")
    if not clauses:
        return "1 = 1", params
    return " AND ".join(clauses), params


def strip_markdown_suffix(name: str) -> str:
    """Remove a trailing .md from a note name."""
    if name.lower().endswith(MARKDOWN_SUFFIX):
        return name[: -len(MARKDOWN_SUFFIX)]
    return name


def normalize_folder(folder: Optional[str]) -> Optional[str]:
    """Normalize a relative folder to posix form; root is None."""
    if folder is None:
        return None
    folder = folder.replace("\\", "/").strip().strip("/")
    if not folder or folder == ".":
        return None
    parts = PurePosixPath(folder).parts
    if any(part in ("..", ".") for part in parts):
        raise NoteValidationError(
            "Folder may not contain relative segments",
            field="folder",
            value=folder,
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    return "/".join(parts)


def split_note_name(
    name: str, folder: Optional[str] = None
) -> Tuple[str, Optional[str]]:
    """Split ``folder/name`` input into a bare name and a folder.

    A folder embedded in the name is joined below an explicit ``folder``.
    """
    if name is None or not name.strip():
        raise NoteValidationError(
            "Note name is required", field="name", code=ErrorCode.NOTE_NAME_REQUIRED
        )
    cleaned = strip_markdown_suffix(name.replace("\\", "/").strip())
    if "/" in cleaned:
        embedded, _, bare = cleaned.rpartition("/")
        folder = f"{folder}/{embedded}" if folder else embedded
    else:
        bare = cleaned
    bare = bare.strip()
    if not bare or bare in (".", ".."):
        raise NoteValidationError(
            "Invalid note name", field="name", value=name,
            code=ErrorCode.NOTE_NAME_REQUIRED,
        )
    return bare, normalize_folder(folder)


def relative_folder(path: Path, root: Path) -> Optional[str]:
    """Folder of ``path`` relative to ``root`` in posix form; None at root."""
    rel = Path(path).resolve().relative_to(Path(root).resolve())
    parent = rel.parent.as_posix()
    return None if parent in ("", ".") else parent


def note_file_path(root: Path, name: str, folder: Optional[str]) -> Path:
    """Absolute file path for a note, refusing paths that escape the root."""
    root = Path(root)
    target = (root / folder / f"{name}{MARKDOWN_SUFFIX}") if folder else (
        root / f"{name}{MARKDOWN_SUFFIX}"
    )
    resolved_root = root.resolve()
    resolved = target.resolve()
    if resolved != resolved_root and resolved_root not in resolved.parents:
        raise NoteValidationError(
            "Note path escapes the notes root",
            field="path",
            value=str(target),
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    return target


def write_text_atomic(path: Path, content: str) -> None:
    """Write ``content`` next to ``path`` and rename it into place.

    Readers see either the old file or the new one, never a partial write.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with open(staging, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        staging.replace(path)
    except OSError:
        staging.unlink(missing_ok=True)
        raise
