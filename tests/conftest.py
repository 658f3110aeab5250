"""Pytest configuration and fixtures."""

import asyncio
import os
import re
from contextlib import asynccontextmanager

import pytest
import pytest_asyncio

from querykit import Repo
from querykit.settings import reset_settings

_IN_LOOKUP = re.compile(r"^SELECT \* FROM (\w+) WHERE (\w+) IN \(")
_FULL_SCAN = re.compile(r"^SELECT \* FROM (\w+)$")


class FakeConnection:
    """Connection double that records statements and answers from its pool."""

    def __init__(self, pool):
        self.pool = pool

    async def fetch(self, sql, *args):
        return await self.pool._respond(sql, args)

    async def execute(self, sql, *args):
        await self.pool._respond(sql, args)
        for fragment, status in reversed(self.pool._statuses):
            if fragment in sql:
                return status
        return sql.split(" ", 1)[0]


class FakePool:
    """Pool double implementing the driver protocol.

    Responses come from, in order: registered failures, ``on()`` handlers
    (latest first), then ``IN`` lookups and full scans over ``tables``.
    """

    def __init__(self):
        self.statements = []
        self.tables = {}
        self.acquired = 0
        self.released = 0
        self.cancelled = []
        self.closed = False
        self.in_flight = 0
        self.max_in_flight = 0
        self._handlers = []
        self._failures = []
        self._statuses = []
        self._delays = []

    def on(self, fragment, rows):
        """Answer statements containing ``fragment`` with rows (or a callable)."""
        self._handlers.append((fragment, rows))

    def fail_on(self, fragment, exc):
        self._failures.append((fragment, exc))

    def status_on(self, fragment, status):
        self._statuses.append((fragment, status))

    def delay_on(self, fragment, seconds):
        self._delays.append((fragment, seconds))

    def table(self, name, rows):
        self.tables[name] = [dict(r) for r in rows]

    @property
    def sql(self):
        return [sql for sql, _ in self.statements]

    def queries_on(self, table):
        return [sql for sql in self.sql if f"FROM {table} " in f"{sql} "]

    async def _respond(self, sql, args):
        self.statements.append((sql, args))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            return await self._answer(sql, args)
        finally:
            self.in_flight -= 1

    async def _answer(self, sql, args):
        for fragment, seconds in self._delays:
            if fragment in sql:
                try:
                    await asyncio.sleep(seconds)
                except asyncio.CancelledError:
                    self.cancelled.append(sql)
                    raise
        await asyncio.sleep(0)

        for fragment, exc in self._failures:
            if fragment in sql:
                raise exc
        for fragment, rows in reversed(self._handlers):
            if fragment in sql:
                result = rows(sql, args) if callable(rows) else rows
                return [dict(r) for r in result]

        match = _IN_LOOKUP.match(sql)
        if match and match.group(1) in self.tables:
            column = match.group(2)
            wanted = set(args)
            return [dict(r) for r in self.tables[match.group(1)] if r.get(column) in wanted]
        match = _FULL_SCAN.match(sql)
        if match and match.group(1) in self.tables:
            return [dict(r) for r in self.tables[match.group(1)]]
        return []

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        try:
            yield FakeConnection(self)
        finally:
            self.released += 1

    async def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Settings are read from the environment once per test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def repo(pool):
    return Repo(pool)


@pytest_asyncio.fixture
async def postgres_pool():
    """Create a PostgreSQL connection pool.

    Set DATABASE_URL environment variable to use a real PostgreSQL database.
    Otherwise, this fixture is skipped.
    """
    from querykit import create_engine

    url = os.environ.get("DATABASE_URL")
    if not url:
        pytest.skip("DATABASE_URL not set")

    pool = await create_engine(url)
    yield pool
    await pool.close()
