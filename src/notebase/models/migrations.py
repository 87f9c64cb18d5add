"""Forward-only schema migrations for the index database.

The schema version lives in a single-row ``schema_version`` table. Each
step is idempotent, runs in its own transaction and raises the stored
version by exactly one, so an interrupted upgrade resumes where it
stopped. A database that already has a ``notes`` table but no version
row predates versioning and is treated as version 1.
"""
import logging
from typing import Callable, List

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from notebase.exceptions import MigrationError

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 8

FTS_TOKENIZER = "unicode61 remove_diacritics 2"


def _table_exists(conn: Connection, name: str) -> bool:
    row = conn.execute(
        text("SELECT 1 FROM sqlite_master WHERE name = :name"), {"name": name}
    ).first()
    return row is not None


def _columns(conn: Connection, table: str) -> List[str]:
    return [row[1] for row in conn.exec_driver_sql(f"PRAGMA table_info({table})")]


def _ensure_version_table(conn: Connection) -> None:
    if _table_exists(conn, "schema_version"):
        return
    legacy = _table_exists(conn, "notes")
    conn.exec_driver_sql(
        "CREATE TABLE schema_version ("
        "id INTEGER PRIMARY KEY CHECK (id = 1), "
        "version INTEGER NOT NULL)"
    )
    conn.execute(
        text("INSERT INTO schema_version (id, version) VALUES (1, :v)"),
        {"v": 1 if legacy else 0},
    )
    if legacy:
        logger.info("Found unversioned index database, treating it as version 1")


def get_schema_version(conn: Connection) -> int:
    """Stored schema version; 0 for a database without a version table."""
    if not _table_exists(conn, "schema_version"):
        return 0
    row = conn.execute(text("SELECT version FROM schema_version WHERE id = 1")).first()
    return int(row[0]) if row else 0


def _set_version(conn: Connection, version: int) -> None:
    conn.execute(
        text("UPDATE schema_version SET version = :v WHERE id = 1"), {"v": version}
    )


def _v1_core_tables(conn: Connection) -> None:
    conn.exec_driver_sql(
        """
        CREATE TABLE IF NOT EXISTS notes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            path TEXT NOT NULL UNIQUE,
            folder TEXT,
            order_index INTEGER NOT NULL DEFAULT 0,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """
    )
    conn.exec_driver_sql("CREATE INDEX IF NOT EXISTS idx_notes_folder ON notes(folder)")
    conn.exec_driver_sql(
        """
        CREATE TABLE IF NOT EXISTS tags (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            color TEXT,
            usage_count INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    conn.exec_driver_sql(
        """
        CREATE TABLE IF NOT EXISTS note_tags (
            note_id INTEGER NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
            tag_id INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
            PRIMARY KEY (note_id, tag_id)
        )
        """
    )
    conn.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_note_tags_tag ON note_tags(tag_id)"
    )
    conn.exec_driver_sql(
        "CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts "
        "USING fts5(name, content, tokenize='porter unicode61')"
    )


def _v2_embeddings(conn: Connection) -> None:
    conn.exec_driver_sql(
        """
        CREATE TABLE IF NOT EXISTS note_embeddings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            note_path TEXT NOT NULL,
            chunk_index INTEGER NOT NULL,
            chunk_text TEXT NOT NULL,
            embedding BLOB NOT NULL,
            token_count INTEGER NOT NULL DEFAULT 0,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL,
            UNIQUE (note_path, chunk_index)
        )
        """
    )
    conn.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_embeddings_path ON note_embeddings(note_path)"
    )


def _v3_query_cache(conn: Connection) -> None:
    conn.exec_driver_sql(
        """
        CREATE TABLE IF NOT EXISTS query_cache (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            query_text TEXT NOT NULL,
            query_hash TEXT NOT NULL UNIQUE,
            embedding BLOB NOT NULL,
            hits INTEGER NOT NULL DEFAULT 1,
            created_at INTEGER NOT NULL,
            last_used_at INTEGER NOT NULL
        )
        """
    )
    conn.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_query_cache_used ON query_cache(last_used_at)"
    )


def _v4_icons_and_folders(conn: Connection) -> None:
    existing = _columns(conn, "notes")
    if "icon" not in existing:
        conn.exec_driver_sql("ALTER TABLE notes ADD COLUMN icon TEXT")
    if "icon_color" not in existing:
        conn.exec_driver_sql("ALTER TABLE notes ADD COLUMN icon_color TEXT")
    conn.exec_driver_sql(
        """
        CREATE TABLE IF NOT EXISTS folders (
            path TEXT PRIMARY KEY,
            icon TEXT,
            color TEXT,
            order_index INTEGER NOT NULL DEFAULT 0,
            created_at INTEGER NOT NULL
        )
        """
    )


def _v5_inline_properties(conn: Connection) -> None:
    conn.exec_driver_sql(
        """
        CREATE TABLE IF NOT EXISTS inline_properties (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            note_id INTEGER NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
            property_key TEXT NOT NULL,
            property_type TEXT NOT NULL,
            value_text TEXT,
            value_number REAL,
            value_bool INTEGER,
            line_number INTEGER NOT NULL,
            char_start INTEGER NOT NULL,
            char_end INTEGER NOT NULL,
            group_id INTEGER,
            linked_note_id INTEGER REFERENCES notes(id) ON DELETE SET NULL,
            created_at INTEGER NOT NULL
        )
        """
    )
    conn.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_props_key ON inline_properties(property_key)"
    )
    conn.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_props_note ON inline_properties(note_id)"
    )
    conn.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_props_group "
        "ON inline_properties(note_id, group_id)"
    )
    conn.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_props_linked ON inline_properties(linked_note_id)"
    )


def _v6_bases(conn: Connection) -> None:
    conn.exec_driver_sql(
        """
        CREATE TABLE IF NOT EXISTS bases (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            description TEXT,
            source_folder TEXT,
            config_yaml TEXT NOT NULL,
            active_view INTEGER NOT NULL DEFAULT 0,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """
    )


def _v7_fts_without_stemming(conn: Connection) -> None:
    """Recreate the FTS table without the porter stemmer, keeping rowids."""
    conn.exec_driver_sql("DROP TABLE IF EXISTS notes_fts_backup")
    conn.exec_driver_sql(
        "CREATE TEMP TABLE notes_fts_backup AS "
        "SELECT rowid AS rid, name, content FROM notes_fts"
    )
    conn.exec_driver_sql("DROP TABLE notes_fts")
    conn.exec_driver_sql(
        "CREATE VIRTUAL TABLE notes_fts "
        f"USING fts5(name, content, tokenize='{FTS_TOKENIZER}')"
    )
    conn.exec_driver_sql(
        "INSERT INTO notes_fts (rowid, name, content) "
        "SELECT rid, name, content FROM notes_fts_backup"
    )
    conn.exec_driver_sql("DROP TABLE notes_fts_backup")


def _v8_row_timestamps(conn: Connection) -> None:
    """Rebuild folders with a surrogate id and add the missing timestamp columns."""
    if "id" not in _columns(conn, "folders"):
        conn.exec_driver_sql(
            """
            CREATE TABLE folders_new (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT NOT NULL UNIQUE,
                icon TEXT,
                icon_color TEXT,
                color TEXT,
                order_index INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )
        conn.exec_driver_sql(
            "INSERT INTO folders_new (path, icon, color, order_index, created_at, updated_at) "
            "SELECT path, icon, color, order_index, created_at, created_at FROM folders"
        )
        conn.exec_driver_sql("DROP TABLE folders")
        conn.exec_driver_sql("ALTER TABLE folders_new RENAME TO folders")
    if "updated_at" not in _columns(conn, "inline_properties"):
        conn.exec_driver_sql(
            "ALTER TABLE inline_properties "
            "ADD COLUMN updated_at INTEGER NOT NULL DEFAULT 0"
        )
        conn.exec_driver_sql("UPDATE inline_properties SET updated_at = created_at")


MIGRATIONS: List[Callable[[Connection], None]] = [
    _v1_core_tables,
    _v2_embeddings,
    _v3_query_cache,
    _v4_icons_and_folders,
    _v5_inline_properties,
    _v6_bases,
    _v7_fts_without_stemming,
    _v8_row_timestamps,
]


def run_migrations(engine: Engine) -> int:
    """Apply every pending migration step; returns the final version."""
    with engine.begin() as conn:
        _ensure_version_table(conn)
        version = get_schema_version(conn)

    if version > CURRENT_SCHEMA_VERSION:
        raise MigrationError(
            f"Index schema version {version} is newer than this release "
            f"supports ({CURRENT_SCHEMA_VERSION})",
            version=version,
        )

    while version < CURRENT_SCHEMA_VERSION:
        step = MIGRATIONS[version]
        target = version + 1
        try:
            with engine.begin() as conn:
                step(conn)
                _set_version(conn, target)
        except SQLAlchemyError as e:
            logger.error(f"Migration to schema version {target} failed: {e}")
            raise MigrationError(
                f"Migration to schema version {target} failed",
                version=target,
                original_error=e,
            ) from e
        logger.info(f"Migrated index schema to version {target} ({step.__name__})")
        version = target

    return version
