"""Configuration module for the notebase engine."""

import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notebase import __version__

# Project root .env, anchored to __file__ so it works regardless of the CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config
_USER_ENV = Path.home() / ".notebase" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Record keys that mark state rather than identity; shared values on these
# keys never cause two property groups to be merged.
DEFAULT_GENERIC_RECORD_KEYS = (
    "comprado",
    "completado",
    "status",
    "estado",
    "leido",
    "visto",
    "done",
    "bought",
    "read",
    "seen",
    "checked",
    "completed",
)


def _env_list(name: str, default: Tuple[str, ...]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class NotebaseConfig(BaseModel):
    """Configuration for the notebase engine."""

    # Base directory for resolving relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEBASE_BASE_DIR", "."))
    )
    # Notes root
    notes_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEBASE_NOTES_DIR", "notes"))
    )
    # Explicit database location; None means <notes_root>/<index_dir_name>/index.db
    database_path: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTEBASE_DATABASE_PATH"))
            if os.getenv("NOTEBASE_DATABASE_PATH")
            else None
        )
    )
    index_dir_name: str = Field(
        default_factory=lambda: os.getenv("NOTEBASE_INDEX_DIR", ".notebase")
    )
    # Folders whose notes stay indexed but never surface in listings or search
    hidden_folders: List[str] = Field(
        default_factory=lambda: _env_list(
            "NOTEBASE_HIDDEN_FOLDERS", (".trash", ".history")
        )
    )
    # Search configuration
    search_limit: int = Field(
        default_factory=lambda: int(os.getenv("NOTEBASE_SEARCH_LIMIT", "50"))
    )
    snippet_open: str = Field(
        default_factory=lambda: os.getenv("NOTEBASE_SNIPPET_OPEN", "<mark>")
    )
    snippet_close: str = Field(
        default_factory=lambda: os.getenv("NOTEBASE_SNIPPET_CLOSE", "</mark>")
    )
    snippet_tokens: int = Field(
        default_factory=lambda: int(os.getenv("NOTEBASE_SNIPPET_TOKENS", "32"))
    )
    # Query embedding cache retention (days)
    query_cache_days: int = Field(
        default_factory=lambda: int(os.getenv("NOTEBASE_QUERY_CACHE_DAYS", "30"))
    )
    generic_record_keys: List[str] = Field(
        default_factory=lambda: _env_list(
            "NOTEBASE_GENERIC_RECORD_KEYS", DEFAULT_GENERIC_RECORD_KEYS
        )
    )
    # Worker threads available to the async façade
    blocking_pool_size: int = Field(
        default_factory=lambda: int(os.getenv("NOTEBASE_BLOCKING_POOL_SIZE", "4"))
    )
    # Connection pool
    pool_size: int = Field(
        default_factory=lambda: int(os.getenv("NOTEBASE_POOL_SIZE", "5"))
    )
    busy_timeout: int = Field(
        default_factory=lambda: int(os.getenv("NOTEBASE_BUSY_TIMEOUT", "30"))
    )
    # Logging
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTEBASE_LOG_LEVEL", "INFO").upper()
    )
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTEBASE_LOG_DIR"))
            if os.getenv("NOTEBASE_LOG_DIR")
            else None
        )
    )
    version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_settings(self) -> "NotebaseConfig":
        """Validate limits, snippet delimiters and hidden folder names."""
        if self.search_limit < 1:
            raise ValueError("search_limit must be >= 1")
        if self.snippet_tokens < 1 or self.snippet_tokens > 64:
            raise ValueError("snippet_tokens must be between 1 and 64")
        if not self.snippet_open or not self.snippet_close:
            raise ValueError("snippet delimiters must be non-empty")
        if self.query_cache_days < 0:
            raise ValueError("query_cache_days must be >= 0")
        if self.blocking_pool_size < 1:
            raise ValueError("blocking_pool_size must be >= 1")
        for folder in self.hidden_folders:
            if "/" in folder or "\\" in folder:
                raise ValueError(f"hidden folder '{folder}' must be a single name")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            logger.warning(f"Unknown log level '{self.log_level}', using INFO")
            self.log_level = "INFO"
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_notes_root(self) -> Path:
        """Get the absolute notes root."""
        return self.get_absolute_path(self.notes_dir)

    def get_db_path(self, notes_root: Optional[Path] = None) -> Path:
        """Get the database file path for a notes root.

        The default location lives inside the notes root so that an index
        always travels with the notes it describes.
        """
        if self.database_path is not None:
            return self.get_absolute_path(self.database_path)
        root = Path(notes_root) if notes_root else self.get_notes_root()
        return root / self.index_dir_name / "index.db"

    def get_db_url(self, notes_root: Optional[Path] = None) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_db_path(notes_root)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = NotebaseConfig()
