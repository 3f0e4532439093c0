from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Any, Mapping, Protocol

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncTransaction

from sqlsteward.core.errors import StoreError
from sqlsteward.domain.state import StatementPurpose, StatementResult


# Serialization failures, deadlocks, lock timeouts, and unique violations across supported drivers.
_CONTENTION_SQLSTATES = {"40001", "40P01", "55P03", "23505", "23000"}
_CONTENTION_MARKERS = (
    "database is locked",
    "deadlock",
    "could not serialize",
    "lock request time out",
    "unique constraint",
    "duplicate key",
)


def is_contention_error(exc: BaseException) -> bool:
    # Classify driver errors that mean "another transaction got there first".
    if isinstance(exc, IntegrityError):
        return True
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if isinstance(sqlstate, str) and sqlstate in _CONTENTION_SQLSTATES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CONTENTION_MARKERS)


def _store_error(exc: SQLAlchemyError, action: str) -> StoreError:
    orig = getattr(exc, "orig", None)
    summary = str(orig or exc).splitlines()[0] if str(orig or exc) else type(exc).__name__
    return StoreError(f"Store {action} failed: {summary}", contention=is_contention_error(exc))


@dataclass
class StoreTransaction:
    # One logical connection per transaction; never shared between callers.
    connection: AsyncConnection
    transaction: AsyncTransaction
    isolation_level: str | None = None


class Store(Protocol):
    async def begin(self, isolation_level: str | None = None) -> Any: ...

    async def execute(self, handle: Any, sql: str, params: Mapping[str, Any] | None = None) -> StatementResult: ...

    async def commit(self, handle: Any) -> None: ...

    async def rollback(self, handle: Any) -> None: ...

    def monotonic(self) -> float: ...


class SqlAlchemyStore:
    """Store boundary over an async SQLAlchemy engine.

    Parameterized statements go through ``text()`` so the driver binds values; statements
    without parameters are sent verbatim to keep procedure bodies untouched by bind parsing.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self._engine.dialect.name

    def monotonic(self) -> float:
        return time.monotonic()

    async def begin(self, isolation_level: str | None = None) -> StoreTransaction:
        try:
            connection = await self._engine.connect()
        except SQLAlchemyError as exc:
            raise _store_error(exc, "connect") from exc
        try:
            if isolation_level:
                connection = await connection.execution_options(isolation_level=isolation_level)
            transaction = await connection.begin()
        except SQLAlchemyError as exc:
            await connection.close()
            raise _store_error(exc, "begin") from exc
        return StoreTransaction(connection=connection, transaction=transaction, isolation_level=isolation_level)

    async def execute(
        self,
        handle: StoreTransaction,
        sql: str,
        params: Mapping[str, Any] | None = None,
    ) -> StatementResult:
        try:
            if params:
                result = await handle.connection.execute(text(sql), dict(params))
            else:
                result = await handle.connection.exec_driver_sql(sql)
            if result.returns_rows:
                rows = [dict(row) for row in result.mappings().all()]
                return StatementResult(rows_affected=0, rows=rows)
            return StatementResult(rows_affected=max(result.rowcount or 0, 0))
        except SQLAlchemyError as exc:
            raise _store_error(exc, "execute") from exc

    async def commit(self, handle: StoreTransaction) -> None:
        try:
            await handle.transaction.commit()
        except SQLAlchemyError as exc:
            raise _store_error(exc, "commit") from exc
        finally:
            await handle.connection.close()

    async def rollback(self, handle: StoreTransaction) -> None:
        try:
            if handle.transaction.is_active:
                await handle.transaction.rollback()
        except SQLAlchemyError as exc:
            raise _store_error(exc, "rollback") from exc
        finally:
            await handle.connection.close()


class StatementRunner(Protocol):
    """Session-bound execution seam used by repositories and procedure dialects."""

    async def execute(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
        *,
        purpose: StatementPurpose = StatementPurpose.SYSTEM,
    ) -> Any: ...

    async def fetch(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
        *,
        purpose: StatementPurpose = StatementPurpose.SYSTEM,
    ) -> StatementResult: ...
