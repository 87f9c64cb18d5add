"""SQLAlchemy database models and engine setup for the note index.

The tables themselves are created by the migration chain in
:mod:`notebase.models.migrations`; the ORM classes here mirror the final
schema for typed reads and simple writes.
"""
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import (Column, Float, ForeignKey, Integer, LargeBinary,
                        String, Table, Text, UniqueConstraint, create_engine,
                        event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool

from notebase.config import config

logger = logging.getLogger(__name__)

# Create base class for SQLAlchemy models
Base = declarative_base()

# Association table for tags and notes
note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class DBNote(Base):
    """Index row for a note file."""
    __tablename__ = "notes"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, unique=True, nullable=False)
    path = Column(Text, unique=True, nullable=False)
    folder = Column(Text, nullable=True, index=True)
    order_index = Column(Integer, nullable=False, default=0)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)
    icon = Column(Text, nullable=True)
    icon_color = Column(Text, nullable=True)

    tags = relationship("DBTag", secondary=note_tags, back_populates="notes")
    properties = relationship(
        "DBInlineProperty",
        foreign_keys="DBInlineProperty.note_id",
        back_populates="note",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Note(id={self.id}, name='{self.name}')>"


class DBTag(Base):
    """A lowercase tag and its usage counter."""
    __tablename__ = "tags"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, unique=True, nullable=False)
    color = Column(Text, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)

    notes = relationship("DBNote", secondary=note_tags, back_populates="tags")

    def __repr__(self) -> str:
        return f"<Tag(id={self.id}, name='{self.name}', usage={self.usage_count})>"


class DBInlineProperty(Base):
    """One ``[key::value]`` occurrence; see :class:`InlineProperty`."""
    __tablename__ = "inline_properties"
    id = Column(Integer, primary_key=True, autoincrement=True)
    note_id = Column(Integer, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False)
    property_key = Column(Text, nullable=False, index=True)
    property_type = Column(Text, nullable=False)
    value_text = Column(Text, nullable=True)
    value_number = Column(Float, nullable=True)
    value_bool = Column(Integer, nullable=True)
    line_number = Column(Integer, nullable=False)
    char_start = Column(Integer, nullable=False)
    char_end = Column(Integer, nullable=False)
    group_id = Column(Integer, nullable=True)
    linked_note_id = Column(
        Integer, ForeignKey("notes.id", ondelete="SET NULL"), nullable=True
    )
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False, default=0)

    note = relationship("DBNote", foreign_keys=[note_id], back_populates="properties")

    def __repr__(self) -> str:
        return (
            f"<InlineProperty(note_id={self.note_id}, key='{self.property_key}', "
            f"group={self.group_id})>"
        )


class DBFolder(Base):
    """Display settings for a folder."""
    __tablename__ = "folders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    path = Column(Text, nullable=False, unique=True)
    icon = Column(Text, nullable=True)
    icon_color = Column(Text, nullable=True)
    color = Column(Text, nullable=True)
    order_index = Column(Integer, nullable=False, default=0)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)


class DBBase(Base):
    """A stored Base configuration (YAML)."""
    __tablename__ = "bases"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    source_folder = Column(Text, nullable=True)
    config_yaml = Column(Text, nullable=False)
    active_view = Column(Integer, nullable=False, default=0)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)


class DBNoteEmbedding(Base):
    """Embedding vector for one chunk of a note, keyed by note path."""
    __tablename__ = "note_embeddings"
    id = Column(Integer, primary_key=True, autoincrement=True)
    note_path = Column(Text, nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    chunk_text = Column(Text, nullable=False)
    embedding = Column(LargeBinary, nullable=False)
    token_count = Column(Integer, nullable=False, default=0)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)

    __table_args__ = (UniqueConstraint("note_path", "chunk_index"),)


class DBQueryCache(Base):
    """Cached embedding for a search query."""
    __tablename__ = "query_cache"
    id = Column(Integer, primary_key=True, autoincrement=True)
    query_text = Column(Text, nullable=False)
    query_hash = Column(String(64), unique=True, nullable=False)
    embedding = Column(LargeBinary, nullable=False)
    hits = Column(Integer, nullable=False, default=1)
    created_at = Column(Integer, nullable=False)
    last_used_at = Column(Integer, nullable=False)


def init_db(
    db_path: Optional[Path] = None,
    pool_size: Optional[int] = None,
    busy_timeout: Optional[int] = None,
) -> Engine:
    """Create an engine for the index file and bring its schema up to date.

    Connection configuration:
    - QueuePool so each reader gets its own connection to the same file
    - WAL journal so readers never block the writer
    - foreign keys on for cascading deletes
    - driver-level autocommit with an explicit BEGIN, which keeps
      SAVEPOINT handling under SQLAlchemy's control
    """
    from notebase.models.migrations import run_migrations

    path = Path(db_path) if db_path else config.get_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{path}",
        poolclass=QueuePool,
        pool_size=pool_size or config.pool_size,
        max_overflow=10,
        pool_timeout=30,
        pool_pre_ping=True,
        connect_args={
            "check_same_thread": False,
            "timeout": busy_timeout or config.busy_timeout,
        },
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA cache_size=-16000")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    run_migrations(engine)
    logger.debug(f"Index database ready at {path}")
    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to an engine; sessions never expire on commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)
