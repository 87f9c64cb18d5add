"""Storage for note-chunk embeddings and cached query embeddings.

Vectors are float32 numpy arrays stored as raw little-endian BLOBs.
Embeddings are keyed by note path, so renames and folder moves rewrite
the key alongside the note row.
"""
import hashlib
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Union

import numpy as np
from sqlalchemy import text

from notebase.models.schema import EmbeddingChunk, now_ts

if TYPE_CHECKING:
    from notebase.storage.index_store import IndexStore

logger = logging.getLogger(__name__)

VectorLike = Union[np.ndarray, Sequence[float]]


def _to_blob(vector: VectorLike) -> bytes:
    return np.asarray(vector, dtype="<f4").tobytes()


def _from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="<f4").astype(np.float32)


def query_hash(query: str) -> str:
    """Stable cache key for a query string."""
    return hashlib.sha256(query.strip().encode("utf-8")).hexdigest()


class EmbeddingRepository:
    """Chunk embeddings keyed by ``(note_path, chunk_index)`` plus a query cache."""

    def __init__(self, store: "IndexStore"):
        self.store = store

    # ------------------------------------------------------------------
    # Note chunk embeddings
    # ------------------------------------------------------------------

    def insert_embedding(
        self,
        note_path: str,
        chunk_index: int,
        chunk_text: str,
        embedding: VectorLike,
        token_count: int = 0,
    ) -> None:
        """Insert or replace the embedding for one chunk."""
        now = now_ts()
        with self.store._write_session("insert_embedding") as session:
            session.execute(
                text(
                    "INSERT INTO note_embeddings "
                    "(note_path, chunk_index, chunk_text, embedding, token_count, "
                    "created_at, updated_at) "
                    "VALUES (:path, :idx, :chunk, :emb, :tokens, :now, :now) "
                    "ON CONFLICT(note_path, chunk_index) DO UPDATE SET "
                    "chunk_text = excluded.chunk_text, embedding = excluded.embedding, "
                    "token_count = excluded.token_count, updated_at = excluded.updated_at"
                ),
                {
                    "path": note_path,
                    "idx": chunk_index,
                    "chunk": chunk_text,
                    "emb": _to_blob(embedding),
                    "tokens": token_count,
                    "now": now,
                },
            )

    def _rows_to_chunks(self, rows) -> List[EmbeddingChunk]:
        return [
            EmbeddingChunk(
                note_path=row.note_path,
                chunk_index=row.chunk_index,
                chunk_text=row.chunk_text,
                embedding=_from_blob(row.embedding).tolist(),
                token_count=row.token_count,
                created_at=row.created_at,
            )
            for row in rows
        ]

    def get_embeddings_by_note(self, note_path: str) -> List[EmbeddingChunk]:
        with self.store._read_session("get_embeddings_by_note") as session:
            rows = session.execute(
                text(
                    "SELECT * FROM note_embeddings WHERE note_path = :path "
                    "ORDER BY chunk_index"
                ),
                {"path": note_path},
            ).all()
        return self._rows_to_chunks(rows)

    def get_all_embeddings(self) -> List[EmbeddingChunk]:
        with self.store._read_session("get_all_embeddings") as session:
            rows = session.execute(
                text("SELECT * FROM note_embeddings ORDER BY note_path, chunk_index")
            ).all()
        return self._rows_to_chunks(rows)

    def get_embedding_matrix(self, note_path: str) -> Optional[np.ndarray]:
        """All chunk vectors of a note stacked into one 2-D array."""
        with self.store._read_session("get_embedding_matrix") as session:
            blobs = [
                row[0]
                for row in session.execute(
                    text(
                        "SELECT embedding FROM note_embeddings WHERE note_path = :path "
                        "ORDER BY chunk_index"
                    ),
                    {"path": note_path},
                )
            ]
        if not blobs:
            return None
        return np.vstack([_from_blob(b) for b in blobs])

    def delete_embeddings_by_note(self, note_path: str) -> int:
        with self.store._write_session("delete_embeddings_by_note") as session:
            result = session.execute(
                text("DELETE FROM note_embeddings WHERE note_path = :path"),
                {"path": note_path},
            )
            return result.rowcount or 0

    def get_embedding_timestamp(self, note_path: str) -> Optional[int]:
        """Most recent update time of a note's embeddings."""
        with self.store._read_session("get_embedding_timestamp") as session:
            return session.execute(
                text(
                    "SELECT MAX(updated_at) FROM note_embeddings WHERE note_path = :path"
                ),
                {"path": note_path},
            ).scalar()

    def count_embeddings(self) -> int:
        with self.store._read_session("count_embeddings") as session:
            return session.execute(text("SELECT COUNT(*) FROM note_embeddings")).scalar_one()

    def get_embedding_stats(self) -> Dict[str, Any]:
        with self.store._read_session("get_embedding_stats") as session:
            row = session.execute(
                text(
                    "SELECT COUNT(*) AS chunks, COUNT(DISTINCT note_path) AS notes, "
                    "COALESCE(SUM(token_count), 0) AS tokens FROM note_embeddings"
                )
            ).one()
        return {
            "total_chunks": row.chunks,
            "indexed_notes": row.notes,
            "total_tokens": row.tokens,
        }

    # ------------------------------------------------------------------
    # Query cache
    # ------------------------------------------------------------------

    def get_cached_query_embedding(self, query: str) -> Optional[np.ndarray]:
        """Cached vector for a query; a hit bumps ``hits`` and ``last_used_at``."""
        key = query_hash(query)
        with self.store._write_session("get_cached_query_embedding") as session:
            blob = session.execute(
                text("SELECT embedding FROM query_cache WHERE query_hash = :h"),
                {"h": key},
            ).scalar()
            if blob is None:
                return None
            session.execute(
                text(
                    "UPDATE query_cache SET hits = hits + 1, last_used_at = :now "
                    "WHERE query_hash = :h"
                ),
                {"h": key, "now": now_ts()},
            )
        return _from_blob(blob)

    def cache_query_embedding(self, query: str, embedding: VectorLike) -> None:
        now = now_ts()
        with self.store._write_session("cache_query_embedding") as session:
            session.execute(
                text(
                    "INSERT INTO query_cache "
                    "(query_text, query_hash, embedding, hits, created_at, last_used_at) "
                    "VALUES (:q, :h, :emb, 1, :now, :now) "
                    "ON CONFLICT(query_hash) DO UPDATE SET "
                    "embedding = excluded.embedding, last_used_at = excluded.last_used_at"
                ),
                {"q": query, "h": query_hash(query), "emb": _to_blob(embedding), "now": now},
            )

    def clean_old_cache(self, days: int) -> int:
        """Drop cache entries unused for ``days`` days; returns rows removed."""
        cutoff = now_ts() - int(days) * 86400
        with self.store._write_session("clean_old_cache") as session:
            result = session.execute(
                text("DELETE FROM query_cache WHERE last_used_at < :cutoff"),
                {"cutoff": cutoff},
            )
            removed = result.rowcount or 0
        if removed:
            logger.info(f"Removed {removed} query cache entries older than {days} days")
        return removed

    def get_cache_stats(self) -> Dict[str, Any]:
        with self.store._read_session("get_cache_stats") as session:
            row = session.execute(
                text(
                    "SELECT COUNT(*) AS entries, COALESCE(SUM(hits), 0) AS hits, "
                    "MIN(created_at) AS oldest FROM query_cache"
                )
            ).one()
        return {"entries": row.entries, "total_hits": row.hits, "oldest": row.oldest}
