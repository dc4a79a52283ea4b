"""
SQLAlchemy implementation of the record gateway.

Translates camelCase records to the snake_case columns of the SQLModel
tables and back, retries transient database errors with exponential
backoff, and maps driver errors onto the societyhub exception hierarchy:

- IntegrityError      -> DuplicateRecordError (never retried)
- OperationalError    -> retried, then PersistenceError
- guarded update miss -> StaleRecordError
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Type, TypeVar

from sqlalchemy import select, update as sa_update, delete as sa_delete
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import SQLModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.config import Settings, settings as default_settings
from ..exceptions import DuplicateRecordError, PersistenceError, StaleRecordError
from ..models import TABLES
from .casing import camel_to_snake, to_external, to_internal
from .gateway import Record, RecordGateway, RecordPredicate

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLRecordGateway(RecordGateway):
    """
    Record gateway over an async SQLAlchemy session factory.

    Each call runs in its own short transaction; there is deliberately no
    way to span two calls, matching the guarantees of the remote store.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        tables: Optional[Mapping[str, Type[SQLModel]]] = None,
        config: Optional[Settings] = None,
    ):
        """
        Initialize the gateway.

        Args:
            session_maker: Async session factory
            tables: Collection name -> SQLModel table class (defaults to all tables)
            config: Settings for retry behaviour
        """
        self._session_maker = session_maker
        self._tables: Dict[str, Type[SQLModel]] = dict(tables or TABLES)
        config = config or default_settings
        self._retry_attempts = max(1, config.PERSISTENCE_RETRY_ATTEMPTS)
        self._retry_max_wait = config.PERSISTENCE_RETRY_MAX_WAIT

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _table(self, collection: str) -> Type[SQLModel]:
        try:
            return self._tables[collection]
        except KeyError:
            raise PersistenceError(f"Unknown collection: {collection}", collection=collection)

    @staticmethod
    def _columns(table: Type[SQLModel]) -> List[str]:
        return [column.name for column in table.__table__.columns]

    def _to_row_values(self, table: Type[SQLModel], record: Mapping[str, Any]) -> Dict[str, Any]:
        external = to_external(dict(record))
        columns = set(self._columns(table))
        unknown = set(external) - columns
        if unknown:
            raise PersistenceError(
                f"Unknown fields for {table.__tablename__}: {', '.join(sorted(unknown))}",
                collection=table.__tablename__,
            )
        return external

    def _to_record(self, table: Type[SQLModel], row: Any) -> Record:
        return to_internal({name: getattr(row, name) for name in self._columns(table)})

    async def _run(self, operation: str, collection: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` with retries on transient database errors."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._retry_attempts),
                wait=wait_exponential(multiplier=0.1, max=self._retry_max_wait),
                retry=retry_if_exception_type(OperationalError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            f"Retrying {operation} on {collection} "
                            f"(attempt {attempt.retry_state.attempt_number}/{self._retry_attempts})"
                        )
                    return await fn()
        except OperationalError as e:
            logger.error(f"{operation} on {collection} failed after retries: {e}")
            raise PersistenceError(f"{operation} on {collection} failed: {e}", collection=collection) from e
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # RecordGateway
    # ------------------------------------------------------------------

    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        table = self._table(collection)

        async def _get() -> Optional[Record]:
            async with self._session_maker() as session:
                try:
                    row = await session.get(table, record_id)
                except OperationalError:
                    raise
                except SQLAlchemyError as e:
                    raise PersistenceError(
                        f"get {collection}/{record_id} failed: {e}",
                        collection=collection,
                        record_id=record_id,
                    ) from e
                return self._to_record(table, row) if row is not None else None

        return await self._run("get", collection, _get)

    async def list(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        predicate: Optional[RecordPredicate] = None,
        order_by: Optional[Sequence[str]] = None,
    ) -> List[Record]:
        table = self._table(collection)
        columns = table.__table__.c
        external_filters = self._to_row_values(table, filters or {})

        stmt = select(table)
        for name, value in external_filters.items():
            column = columns[name]
            stmt = stmt.where(column.is_(None) if value is None else column == value)

        for field in order_by or ():
            descending = field.startswith("-")
            column = columns[camel_to_snake(field.lstrip("-"))]
            stmt = stmt.order_by(column.desc() if descending else column.asc())

        async def _list() -> List[Record]:
            async with self._session_maker() as session:
                try:
                    result = await session.execute(stmt)
                except OperationalError:
                    raise
                except SQLAlchemyError as e:
                    raise PersistenceError(f"list {collection} failed: {e}", collection=collection) from e
                return [self._to_record(table, row) for row in result.scalars().all()]

        records = await self._run("list", collection, _list)
        if predicate is not None:
            records = [record for record in records if predicate(record)]
        return records

    async def insert(self, collection: str, record: Record) -> Record:
        table = self._table(collection)
        values = self._to_row_values(table, record)
        now = _utcnow()
        if values.get("created_at") is None:
            values["created_at"] = now
        values["updated_at"] = now

        async def _insert() -> Record:
            async with self._session_maker() as session:
                row = table(**values)
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise DuplicateRecordError(
                        f"insert into {collection} violates a unique constraint: {e.orig}",
                        collection=collection,
                        record_id=values.get("id"),
                    ) from e
                except OperationalError:
                    await session.rollback()
                    raise
                except SQLAlchemyError as e:
                    await session.rollback()
                    raise PersistenceError(f"insert into {collection} failed: {e}", collection=collection) from e
                await session.refresh(row)
                return self._to_record(table, row)

        stored = await self._run("insert", collection, _insert)
        logger.debug(f"Inserted {collection}/{stored.get('id')}")
        return stored

    async def update(
        self,
        collection: str,
        record_id: str,
        patch: Record,
        *,
        match: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        table = self._table(collection)
        columns = table.__table__.c
        values = self._to_row_values(table, patch)
        values.pop("id", None)
        values.pop("created_at", None)
        values["updated_at"] = _utcnow()
        if "version" in columns:
            values["version"] = columns["version"] + 1

        guard = self._to_row_values(table, match or {})
        stmt = sa_update(table).where(columns["id"] == record_id)
        for name, value in guard.items():
            column = columns[name]
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        async def _update() -> Record:
            async with self._session_maker() as session:
                try:
                    result = await session.execute(stmt)
                    if result.rowcount == 0:
                        await session.rollback()
                        exists = await session.get(table, record_id)
                        if exists is None:
                            raise PersistenceError(
                                f"update {collection}/{record_id}: record not found",
                                collection=collection,
                                record_id=record_id,
                            )
                        raise StaleRecordError(
                            f"update {collection}/{record_id}: guard {dict(match or {})} no longer holds",
                            collection=collection,
                            record_id=record_id,
                        )
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise DuplicateRecordError(
                        f"update {collection}/{record_id} violates a unique constraint: {e.orig}",
                        collection=collection,
                        record_id=record_id,
                    ) from e
                except OperationalError:
                    await session.rollback()
                    raise
                except PersistenceError:
                    raise
                except SQLAlchemyError as e:
                    await session.rollback()
                    raise PersistenceError(
                        f"update {collection}/{record_id} failed: {e}",
                        collection=collection,
                        record_id=record_id,
                    ) from e

                row = await session.get(table, record_id, populate_existing=True)
                return self._to_record(table, row)

        return await self._run("update", collection, _update)

    async def delete(self, collection: str, record_id: str) -> None:
        table = self._table(collection)
        stmt = sa_delete(table).where(table.__table__.c["id"] == record_id)

        async def _delete() -> None:
            async with self._session_maker() as session:
                try:
                    await session.execute(stmt)
                    await session.commit()
                except OperationalError:
                    await session.rollback()
                    raise
                except SQLAlchemyError as e:
                    await session.rollback()
                    raise PersistenceError(
                        f"delete {collection}/{record_id} failed: {e}",
                        collection=collection,
                        record_id=record_id,
                    ) from e

        await self._run("delete", collection, _delete)
