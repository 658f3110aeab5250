"""Run compiled statements on a pool or a single connection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

import asyncpg

from querykit.compiler import CompiledQuery
from querykit.driver import Connection, ConnectionPool
from querykit.errors import DatabaseError
from querykit.row import Row

logger = logging.getLogger(__name__)

# Driver failures surfaced as DatabaseError; cancellation is never caught
DRIVER_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    TimeoutError,
    OSError,
)


class Executor:
    """Sends SQL to the database and turns records into :class:`Row` objects.

    Bound either to a pool, where every statement acquires its own
    connection (so independent statements may run in parallel), or to one
    connection, where statements are serialized with a lock.
    """

    def __init__(
        self,
        *,
        pool: ConnectionPool | None = None,
        connection: Connection | None = None,
    ) -> None:
        if (pool is None) == (connection is None):
            raise ValueError("Executor needs exactly one of pool or connection")
        self._pool = pool
        self._connection = connection
        self._lock = asyncio.Lock()

    @classmethod
    def for_pool(cls, pool: ConnectionPool) -> Executor:
        return cls(pool=pool)

    @classmethod
    def for_connection(cls, connection: Connection) -> Executor:
        return cls(connection=connection)

    @property
    def connection(self) -> Connection | None:
        """The bound connection, or None for a pool executor."""
        return self._connection

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[Connection]:
        if self._connection is not None:
            async with self._lock:
                yield self._connection
        else:
            assert self._pool is not None
            async with self._pool.acquire() as conn:
                yield conn

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        """Run a row-returning statement."""
        logger.debug("fetch: %s (%d params)", sql, len(params))
        try:
            async with self._acquire() as conn:
                records = await conn.fetch(sql, *params)
        except DRIVER_ERRORS as exc:
            raise DatabaseError(str(exc) or type(exc).__name__, sql=sql) from exc
        return [Row.from_record(record) for record in records]

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> str:
        """Run a statement and return the driver's command status tag."""
        logger.debug("execute: %s (%d params)", sql, len(params))
        try:
            async with self._acquire() as conn:
                return await conn.execute(sql, *params)
        except DRIVER_ERRORS as exc:
            raise DatabaseError(str(exc) or type(exc).__name__, sql=sql) from exc

    async def fetch_compiled(self, compiled: CompiledQuery) -> list[Row]:
        return await self.fetch(compiled.sql, compiled.params)

    async def fetch_all(self, statements: Sequence[CompiledQuery]) -> list[Row]:
        """Run statements one after another and concatenate their rows."""
        rows: list[Row] = []
        for compiled in statements:
            rows.extend(await self.fetch(compiled.sql, compiled.params))
        return rows
