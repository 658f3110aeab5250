"""Driver and pool protocols, and the asyncpg-backed engine."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol, runtime_checkable

import asyncpg

from querykit.settings import get_settings

logger = logging.getLogger(__name__)


@runtime_checkable
class Connection(Protocol):
    """The subset of ``asyncpg.Connection`` querykit relies on."""

    async def fetch(self, query: str, *args: Any) -> Sequence[Any]: ...

    async def execute(self, query: str, *args: Any) -> str: ...


@runtime_checkable
class ConnectionPool(Protocol):
    """The subset of ``asyncpg.Pool`` querykit relies on."""

    def acquire(self) -> AbstractAsyncContextManager[Any]: ...

    async def close(self) -> None: ...


def affected_rows(status: str | None) -> int:
    """Row count from a command status tag such as ``"DELETE 3"``.

    Example:
        >>> affected_rows("INSERT 0 5")
        5
        >>> affected_rows("BEGIN")
        0
    """
    if not status:
        return 0
    last = status.rsplit(" ", 1)[-1]
    return int(last) if last.isdigit() else 0


async def create_engine(
    url: str | None = None,
    *,
    min_connections: int | None = None,
    max_connections: int | None = None,
    command_timeout: float | None = None,
    **kwargs: Any,
) -> asyncpg.Pool:
    """Create an asyncpg connection pool.

    Unset arguments fall back to :class:`~querykit.settings.EngineSettings`.

    Example:
        >>> pool = await create_engine("postgresql://localhost/mydb")
        >>> repo = Repo(pool)
    """
    settings = get_settings()
    dsn = url or settings.database_url
    min_size = settings.min_connections if min_connections is None else min_connections
    max_size = settings.max_connections if max_connections is None else max_connections
    timeout = settings.command_timeout if command_timeout is None else command_timeout

    logger.debug("Creating pool (min=%d, max=%d)", min_size, max_size)
    return await asyncpg.create_pool(
        dsn,
        min_size=min_size,
        max_size=max_size,
        command_timeout=timeout,
        **kwargs,
    )
