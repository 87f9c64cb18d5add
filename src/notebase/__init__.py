"""
Notebase - an indexing and structured-property engine for folders of Markdown notes.

Notes stay plain files on disk; this package maintains a SQLite index over them
(full-text search, tags, inline ``[key::value]`` properties) and evaluates
spreadsheet-like "Bases" views on top of that index.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notebase")
except PackageNotFoundError:
    __version__ = "0.3.0"
