"""Repository for tag storage and retrieval."""
import logging
from typing import TYPE_CHECKING, Iterable, List, Optional, Set

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from notebase.models.db_models import DBTag
from notebase.models.schema import NoteMetadata, TagInfo
from notebase.utils import hidden_filter_sql

if TYPE_CHECKING:
    from notebase.storage.index_store import IndexStore

logger = logging.getLogger(__name__)


def normalize_tag(tag: str) -> str:
    return tag.strip().lstrip("#").strip().lower()


class TagRepository:
    """Tags and the note-tag relation.

    ``usage_count`` on each tag always equals the number of notes carrying
    it; every change to ``note_tags`` goes through :meth:`link` and
    :meth:`unlink`, which keep the counter in step. A tag row outlives its
    last note; its count simply drops to zero.
    """

    def __init__(self, store: "IndexStore"):
        self.store = store

    # ------------------------------------------------------------------
    # In-transaction helpers (caller owns the session)
    # ------------------------------------------------------------------

    def _tag_id(self, session: Session, name: str) -> int:
        session.execute(
            text("INSERT OR IGNORE INTO tags (name, usage_count) VALUES (:name, 0)"),
            {"name": name},
        )
        return session.execute(
            text("SELECT id FROM tags WHERE name = :name"), {"name": name}
        ).scalar_one()

    def link(self, session: Session, note_id: int, name: str) -> bool:
        tag_id = self._tag_id(session, name)
        result = session.execute(
            text("INSERT OR IGNORE INTO note_tags (note_id, tag_id) VALUES (:n, :t)"),
            {"n": note_id, "t": tag_id},
        )
        if result.rowcount:
            session.execute(
                text("UPDATE tags SET usage_count = usage_count + 1 WHERE id = :t"),
                {"t": tag_id},
            )
            return True
        return False

    def unlink(self, session: Session, note_id: int, tag_id: int) -> bool:
        result = session.execute(
            text("DELETE FROM note_tags WHERE note_id = :n AND tag_id = :t"),
            {"n": note_id, "t": tag_id},
        )
        if not result.rowcount:
            return False
        session.execute(
            text(
                "UPDATE tags SET usage_count = MAX(usage_count - 1, 0) WHERE id = :t"
            ),
            {"t": tag_id},
        )
        return True

    def reconcile(self, session: Session, note_id: int, tags: Iterable[str]) -> None:
        """Make the note's tag set equal ``tags`` with minimal row changes."""
        wanted: Set[str] = {normalize_tag(t) for t in tags if normalize_tag(t)}
        current = {
            row.name: row.id
            for row in session.execute(
                text(
                    "SELECT t.id, t.name FROM tags t "
                    "JOIN note_tags nt ON nt.tag_id = t.id WHERE nt.note_id = :n"
                ),
                {"n": note_id},
            )
        }
        for name in sorted(wanted - set(current)):
            self.link(session, note_id, name)
        for name in sorted(set(current) - wanted):
            self.unlink(session, note_id, current[name])

    def unlink_all(self, session: Session, note_id: int) -> None:
        tag_ids = [
            row[0]
            for row in session.execute(
                text("SELECT tag_id FROM note_tags WHERE note_id = :n"), {"n": note_id}
            )
        ]
        for tag_id in tag_ids:
            self.unlink(session, note_id, tag_id)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_tags(self) -> List[TagInfo]:
        """All tags, most used first, then by name."""
        with self.store._read_session("get_tags") as session:
            rows = session.scalars(
                select(DBTag).order_by(DBTag.usage_count.desc(), DBTag.name)
            ).all()
            return [
                TagInfo(id=t.id, name=t.name, color=t.color, usage_count=t.usage_count)
                for t in rows
            ]

    def get_tag(self, name: str) -> Optional[TagInfo]:
        with self.store._read_session("get_tag") as session:
            tag = session.scalar(select(DBTag).where(DBTag.name == normalize_tag(name)))
            if tag is None:
                return None
            return TagInfo(
                id=tag.id, name=tag.name, color=tag.color, usage_count=tag.usage_count
            )

    def get_note_tags(self, note_id: int) -> List[str]:
        with self.store._read_session("get_note_tags") as session:
            return [
                row[0]
                for row in session.execute(
                    text(
                        "SELECT t.name FROM tags t JOIN note_tags nt ON nt.tag_id = t.id "
                        "WHERE nt.note_id = :n ORDER BY t.name"
                    ),
                    {"n": note_id},
                )
            ]

    def add_tag(self, note_id: int, tag: str) -> bool:
        """Attach a tag to a note; False when it was already attached."""
        name = normalize_tag(tag)
        if not name:
            return False
        with self.store._write_session("add_tag") as session:
            return self.link(session, note_id, name)

    def remove_tag(self, note_id: int, tag: str) -> bool:
        name = normalize_tag(tag)
        with self.store._write_session("remove_tag") as session:
            tag_id = session.execute(
                text("SELECT id FROM tags WHERE name = :name"), {"name": name}
            ).scalar()
            if tag_id is None:
                return False
            return self.unlink(session, note_id, tag_id)

    def set_tag_color(self, tag: str, color: Optional[str]) -> bool:
        with self.store._write_session("set_tag_color") as session:
            result = session.execute(
                text("UPDATE tags SET color = :c WHERE name = :name"),
                {"c": color, "name": normalize_tag(tag)},
            )
            return bool(result.rowcount)

    def get_notes_with_tag(self, tag: str) -> List[NoteMetadata]:
        """Visible notes carrying the tag, ordered by name."""
        hidden_sql, params = hidden_filter_sql("n", self.store.hidden_folders)
        params["tag"] = normalize_tag(tag)
        with self.store._read_session("get_notes_with_tag") as session:
            rows = session.execute(
                text(
                    "SELECT n.* FROM notes n "
                    "JOIN note_tags nt ON nt.note_id = n.id "
                    "JOIN tags t ON t.id = nt.tag_id "
                    f"WHERE t.name = :tag AND {hidden_sql} ORDER BY n.name"
                ),
                params,
            ).mappings().all()
        return [self.store._row_to_metadata(row) for row in rows]
