"""
Subscription store.

A small table-oriented persistence capability: equality filters, ordering,
single and multi-row reads, insert and partial update. The orchestration
service only talks to this interface; SqlStore backs it with SQLAlchemy.
"""
import asyncio
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from sqlalchemy import insert, select, update, Table
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from paydesk.core.database import metadata, create_session_factory, session_scope
from paydesk.core.errors import RecordNotFoundError, StoreError, TableNotFoundError

Row = Dict[str, Any]
OrderBy = Tuple[str, bool]  # (column, descending)

_MISSING_TABLE_MARKERS = ("no such table", "does not exist", "undefinedtable")


class SubscriptionStore(Protocol):
    async def select_one(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> Optional[Row]:
        """First matching row, or None."""
        ...

    async def select_many(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        ...

    async def insert(self, table: str, values: Mapping[str, Any]) -> Row:
        """Insert a row and return it as stored."""
        ...

    async def update(self, table: str, filters: Mapping[str, Any], values: Mapping[str, Any]) -> Row:
        """
        Apply a partial update and return the updated row.

        Raises:
            RecordNotFoundError: If no row matches ``filters``
        """
        ...


class SqlStore:
    """SQLAlchemy Core implementation of SubscriptionStore."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = create_session_factory(engine)

    def _table(self, name: str) -> Table:
        table = metadata.tables.get(name)
        if table is None:
            raise TableNotFoundError(name)
        return table

    @staticmethod
    def _where(stmt, table: Table, filters: Optional[Mapping[str, Any]]):
        for column, value in (filters or {}).items():
            stmt = stmt.where(table.c[column] == value)
        return stmt

    async def _run(self, table_name: str, fn):
        try:
            return await asyncio.to_thread(fn)
        except SQLAlchemyError as e:
            text = str(getattr(e, "orig", None) or e).lower()
            if any(marker in text for marker in _MISSING_TABLE_MARKERS):
                raise TableNotFoundError(table_name) from e
            raise StoreError(f"Store operation on {table_name} failed: {e}") from e

    async def select_many(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        tbl = self._table(table)
        stmt = self._where(select(tbl), tbl, filters)
        if order_by:
            column, descending = order_by
            stmt = stmt.order_by(tbl.c[column].desc() if descending else tbl.c[column].asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        def _select():
            with session_scope(self._session_factory) as session:
                return [dict(row._mapping) for row in session.execute(stmt).fetchall()]

        return await self._run(table, _select)

    async def select_one(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> Optional[Row]:
        rows = await self.select_many(table, filters, order_by=order_by, limit=1)
        return rows[0] if rows else None

    async def insert(self, table: str, values: Mapping[str, Any]) -> Row:
        tbl = self._table(table)
        pk = [column.name for column in tbl.primary_key.columns]

        def _insert():
            with session_scope(self._session_factory) as session:
                session.execute(insert(tbl).values(**values))
                stmt = self._where(select(tbl), tbl, {name: values[name] for name in pk})
                return dict(session.execute(stmt).one()._mapping)

        return await self._run(table, _insert)

    async def update(self, table: str, filters: Mapping[str, Any], values: Mapping[str, Any]) -> Row:
        tbl = self._table(table)

        def _update():
            with session_scope(self._session_factory) as session:
                result = session.execute(self._where(update(tbl), tbl, filters).values(**values))
                if result.rowcount == 0:
                    raise RecordNotFoundError(f"No {table} row matches {dict(filters)}")
                row = session.execute(self._where(select(tbl), tbl, filters)).first()
                return dict(row._mapping)

        return await self._run(table, _update)
