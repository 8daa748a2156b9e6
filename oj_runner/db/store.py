import logging
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from oj_runner.core.errors import PersistenceError, StaleTransitionError
from oj_runner.db.base import Base

logger = logging.getLogger(__name__)


class RecordStore:
    """Keyed record access over the Problem and Submission tables.

    Two operations only: read a whole record, or set named attributes on one.
    Updates never touch attributes they do not name. Safe to share across
    threads; every call checks out its own connection.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def _table(self, table: str):
        import oj_runner.models  # noqa: F401  register tables on Base.metadata

        try:
            return Base.metadata.tables[table]
        except KeyError:
            raise PersistenceError(f"Unknown table: {table}")

    def get_record(self, table: str, key: str) -> Optional[dict[str, Any]]:
        tbl = self._table(table)
        try:
            with self.engine.connect() as conn:
                row = conn.execute(select(tbl).where(tbl.c.id == key)).mappings().first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read {table}/{key}: {e}") from e
        return dict(row) if row is not None else None

    def update_record(
        self,
        table: str,
        key: str,
        attributes: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> None:
        """Set ``attributes`` on the record ``key``.

        With ``expected``, the write only applies if the record currently holds
        those values; otherwise StaleTransitionError is raised.
        """
        tbl = self._table(table)
        stmt = update(tbl).where(tbl.c.id == key)
        for name, value in (expected or {}).items():
            stmt = stmt.where(tbl.c[name] == value)
        stmt = stmt.values(**attributes)

        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update {table}/{key}: {e}") from e

        if result.rowcount == 1:
            return
        if result.rowcount > 1:
            # id is the primary key; more than one row means a broken schema
            raise PersistenceError(f"Update of {table}/{key} matched {result.rowcount} records")

        current = self.get_record(table, key)
        if current is None:
            raise PersistenceError(f"Record not found: {table}/{key}")
        raise StaleTransitionError(
            f"Record {table}/{key} did not match {expected}; "
            f"current status is {current.get('status')!r}"
        )
