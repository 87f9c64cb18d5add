"""Persistence for Base configurations."""
import logging
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import select

from notebase.exceptions import BaseConfigError, BaseNotFoundError, ErrorCode
from notebase.models.base import Base
from notebase.models.db_models import DBBase
from notebase.models.schema import now_ts

if TYPE_CHECKING:
    from notebase.storage.index_store import IndexStore

logger = logging.getLogger(__name__)


class BaseRepository:
    """Stores each Base as YAML in the ``bases`` table, keyed by name."""

    def __init__(self, store: "IndexStore"):
        self.store = store

    @staticmethod
    def _to_model(row: DBBase) -> Base:
        base = Base.from_yaml(row.config_yaml)
        base.active_view = row.active_view if row.active_view < len(base.views) else 0
        return base

    def list_bases(self) -> List[Base]:
        with self.store._read_session("list_bases") as session:
            rows = session.scalars(select(DBBase).order_by(DBBase.name)).all()
            return [self._to_model(row) for row in rows]

    def get_base(self, name: str) -> Optional[Base]:
        with self.store._read_session("get_base") as session:
            row = session.scalar(select(DBBase).where(DBBase.name == name))
            return self._to_model(row) if row else None

    def create_base(self, base: Base) -> Base:
        with self.store._write_session("create_base") as session:
            if session.scalar(select(DBBase.id).where(DBBase.name == base.name)):
                raise BaseConfigError(
                    f"Base '{base.name}' already exists",
                    field="name",
                    value=base.name,
                    code=ErrorCode.BASE_ALREADY_EXISTS,
                )
            now = now_ts()
            base.created_at = base.created_at or now
            base.updated_at = now
            session.add(
                DBBase(
                    name=base.name,
                    description=base.description,
                    source_folder=base.source_folder,
                    config_yaml=base.to_yaml(),
                    active_view=base.active_view,
                    created_at=base.created_at,
                    updated_at=base.updated_at,
                )
            )
        logger.info(f"Created base '{base.name}' ({base.source_type.value})")
        return base

    def update_base(self, base: Base, previous_name: Optional[str] = None) -> Base:
        """Overwrite a stored Base; ``previous_name`` allows renaming."""
        lookup = previous_name or base.name
        with self.store._write_session("update_base") as session:
            row = session.scalar(select(DBBase).where(DBBase.name == lookup))
            if row is None:
                raise BaseNotFoundError(lookup)
            if base.name != lookup and session.scalar(
                select(DBBase.id).where(DBBase.name == base.name)
            ):
                raise BaseConfigError(
                    f"Base '{base.name}' already exists",
                    field="name",
                    value=base.name,
                    code=ErrorCode.BASE_ALREADY_EXISTS,
                )
            base.updated_at = now_ts()
            row.name = base.name
            row.description = base.description
            row.source_folder = base.source_folder
            row.config_yaml = base.to_yaml()
            row.active_view = base.active_view
            row.updated_at = base.updated_at
        return base

    def delete_base(self, name: str) -> None:
        with self.store._write_session("delete_base") as session:
            row = session.scalar(select(DBBase).where(DBBase.name == name))
            if row is None:
                raise BaseNotFoundError(name)
            session.delete(row)
        logger.info(f"Deleted base '{name}'")
