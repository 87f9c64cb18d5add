"""FTS5 full-text search front door for the note index.

Encapsulates query sanitizing, tag queries, the LIKE fallback and FTS
recovery. Results never include notes stored under hidden folders.
"""
import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError

from notebase.exceptions import ErrorCode, SearchError, StorageError
from notebase.models.schema import SearchResult
from notebase.utils import escape_like_pattern, hidden_filter_sql

if TYPE_CHECKING:
    from notebase.storage.index_store import IndexStore

logger = logging.getLogger(__name__)

# Characters stripped from every query token before it reaches MATCH
FTS_SPECIAL_CHARS = '"*(){}[]^:#+-!&|~.,;=<>/\\?@%$'
_STRIP_TABLE = str.maketrans("", "", FTS_SPECIAL_CHARS)

# Characters of context kept around a fallback match
FALLBACK_CONTEXT = 60


class FtsIndex:
    """FTS5 search over note names and content.

    Args:
        store: The owning :class:`IndexStore`.
    """

    def __init__(self, store: "IndexStore") -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Query building
    # ------------------------------------------------------------------

    @staticmethod
    def sanitize_token(token: str) -> str:
        return token.translate(_STRIP_TABLE)

    @classmethod
    def build_fts_query(cls, query: str) -> Optional[str]:
        """Turn user input into a safe MATCH expression.

        A fully double-quoted input is a literal phrase. Otherwise every
        whitespace token is sanitized and becomes a prefix term; several
        terms are ANDed. Returns None when nothing searchable remains.
        """
        q = query.strip()
        if len(q) > 2 and q.startswith('"') and q.endswith('"'):
            inner = q[1:-1].replace('"', '""').strip()
            return f'"{inner}"' if inner else None
        tokens = [cls.sanitize_token(t) for t in q.split()]
        tokens = [t for t in tokens if t]
        if not tokens:
            return None
        return " ".join(f'"{t}"*' for t in tokens)

    # ------------------------------------------------------------------
    # Public query API
    # ------------------------------------------------------------------

    def search_notes(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        """Search notes by ``#tag`` or by text.

        ``#tag`` matches the exact (lowercased) tag. Text queries use FTS5
        ranking and snippets; when they find nothing and the query has at
        least two characters a LIKE scan over names and content is used.
        """
        limit = limit or self.store.search_limit
        q = (query or "").strip()
        if not q:
            return []

        if q.startswith("#"):
            tag = q[1:].strip().lower()
            if not tag:
                return []
            return self._search_tag(tag, limit)

        results: List[SearchResult] = []
        fts_query = self.build_fts_query(q)
        if fts_query:
            results = self._search_fts(q, fts_query, limit)
        if not results and len(q) >= 2:
            results = self._search_like(q, limit)
        return results

    def _search_tag(self, tag: str, limit: int) -> List[SearchResult]:
        hidden_sql, params = hidden_filter_sql("n", self.store.hidden_folders)
        params.update({"tag": tag, "limit": limit})
        with self.store._read_session("search_tag") as session:
            rows = session.execute(
                text(
                    "SELECT n.id, n.name, n.path FROM notes n "
                    "JOIN note_tags nt ON nt.note_id = n.id "
                    "JOIN tags t ON t.id = nt.tag_id "
                    f"WHERE t.name = :tag AND {hidden_sql} "
                    "ORDER BY n.name LIMIT :limit"
                ),
                params,
            ).all()
        return [
            SearchResult(
                note_id=row.id,
                note_name=row.name,
                note_path=row.path,
                relevance=1.0,
                matched_tags=[tag],
            )
            for row in rows
        ]

    def _search_fts(
        self, query: str, fts_query: str, limit: int, retry: bool = True
    ) -> List[SearchResult]:
        hidden_sql, params = hidden_filter_sql("n", self.store.hidden_folders)
        params.update(
            {
                "query": fts_query,
                "limit": limit,
                "open": self.store.snippet_open,
                "close": self.store.snippet_close,
                "tokens": self.store.snippet_tokens,
            }
        )
        sql = text(
            "SELECT n.id, n.name, n.path, "
            "snippet(notes_fts, -1, :open, :close, '...', :tokens) AS snippet, "
            "notes_fts.rank AS rank "
            "FROM notes_fts JOIN notes n ON n.id = notes_fts.rowid "
            f"WHERE notes_fts MATCH :query AND {hidden_sql} "
            "ORDER BY rank LIMIT :limit"
        )
        try:
            with self.store._read_session("search_fts", translate=False) as session:
                rows = session.execute(sql, params).all()
        except (sqlite3.OperationalError, SQLAlchemyOperationalError) as e:
            logger.warning(f"FTS5 query failed for '{query}': {e}. Using fallback search.")
            return []
        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            error_msg = str(e).lower()
            if retry and ("malformed" in error_msg or "corrupt" in error_msg):
                logger.error(f"FTS5 corruption detected: {e}. Attempting rebuild...")
                if self._attempt_recovery():
                    return self._search_fts(query, fts_query, limit, retry=False)
                return []
            raise SearchError(
                f"Full-text search failed: {e}", query=query
            ) from e

        return [
            SearchResult(
                note_id=row.id,
                note_name=row.name,
                note_path=row.path,
                snippet=row.snippet or "",
                relevance=float(row.rank),
            )
            for row in rows
        ]

    def _search_like(self, query: str, limit: int) -> List[SearchResult]:
        """Substring scan over names and indexed content."""
        hidden_sql, params = hidden_filter_sql("n", self.store.hidden_folders)
        params.update({"term": f"%{escape_like_pattern(query)}%", "limit": limit})
        try:
            with self.store._read_session("search_like") as session:
                rows = session.execute(
                    text(
                        "SELECT n.id, n.name, n.path, f.content AS content "
                        "FROM notes n LEFT JOIN notes_fts f ON f.rowid = n.id "
                        "WHERE (n.name LIKE :term ESCAPE '\\' "
                        "OR f.content LIKE :term ESCAPE '\\') "
                        f"AND {hidden_sql} ORDER BY n.name LIMIT :limit"
                    ),
                    params,
                ).all()
        except StorageError as e:
            raise SearchError(
                f"Fallback text search failed: {e.message}",
                query=query,
                code=ErrorCode.SEARCH_FAILED,
            ) from e

        logger.debug(f"Fallback search returned {len(rows)} results for '{query}'")
        return [
            SearchResult(
                note_id=row.id,
                note_name=row.name,
                note_path=row.path,
                snippet=self._excerpt(row.content or "", query),
                relevance=0.0,
            )
            for row in rows
        ]

    def _excerpt(self, content: str, query: str) -> str:
        idx = content.lower().find(query.lower())
        if idx == -1:
            return ""
        start = max(0, idx - FALLBACK_CONTEXT)
        end = min(len(content), idx + len(query) + FALLBACK_CONTEXT)
        excerpt = (
            content[start:idx]
            + self.store.snippet_open
            + content[idx:idx + len(query)]
            + self.store.snippet_close
            + content[idx + len(query):end]
        )
        if start > 0:
            excerpt = "..." + excerpt
        if end < len(content):
            excerpt += "..."
        return excerpt

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def integrity_check(self) -> bool:
        try:
            with self.store._read_session("fts_integrity", translate=False) as session:
                session.execute(
                    text("INSERT INTO notes_fts(notes_fts) VALUES('integrity-check')")
                )
            return True
        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            logger.error(f"FTS5 integrity check failed: {e}")
            return False

    def rebuild(self) -> int:
        """Rebuild the FTS table from the note files on disk."""
        notes = self.store.list_notes(include_hidden=True)
        entries: List[Dict[str, Any]] = []
        for note in notes:
            try:
                content = Path(note.path).read_text(encoding="utf-8")
            except OSError as e:
                logger.warning(f"Cannot read {note.path} for FTS rebuild: {e}")
                content = ""
            entries.append({"id": note.id, "name": note.name, "content": content})

        with self.store._write_session("rebuild_fts") as session:
            session.execute(text("DELETE FROM notes_fts"))
            for entry in entries:
                session.execute(
                    text(
                        "INSERT INTO notes_fts (rowid, name, content) "
                        "VALUES (:id, :name, :content)"
                    ),
                    entry,
                )
        logger.info(f"FTS5 index rebuilt with {len(entries)} notes")
        return len(entries)

    def _attempt_recovery(self) -> bool:
        try:
            self.rebuild()
            return True
        except StorageError as e:
            logger.error(f"FTS5 rebuild failed: {e}")
            return False
