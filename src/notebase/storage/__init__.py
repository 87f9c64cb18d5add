"""Storage layer: Markdown parsing and the SQLite note index."""

from notebase.storage.base_repository import BaseRepository
from notebase.storage.embedding_store import EmbeddingRepository
from notebase.storage.fts_index import FtsIndex
from notebase.storage.index_store import IndexStore
from notebase.storage.record_repository import RecordRepository
from notebase.storage.tag_repository import TagRepository

__all__ = [
    "IndexStore",
    "FtsIndex",
    "TagRepository",
    "EmbeddingRepository",
    "BaseRepository",
    "RecordRepository",
]
