"""Repository: query execution, writes, preloading and transactions."""

from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any

from querykit.base import Base
from querykit.changeset import Changeset
from querykit.compiler import (
    ConflictTarget,
    check_identifier,
    compile_aggregate,
    compile_count,
    compile_delete,
    compile_insert,
    compile_select,
    compile_update,
    compile_upsert,
)
from querykit.driver import Connection, ConnectionPool, affected_rows
from querykit.errors import (
    InvalidQueryError,
    InvalidSchemaError,
    NotFoundError,
    QueryKitError,
    UnexpectedResultCountError,
)
from querykit.executor import Executor
from querykit.preload import Preloader
from querykit.query import ConditionLike, F, JoinKind, Query
from querykit.row import Row
from querykit.settings import get_settings

logger = logging.getLogger(__name__)


class TransactionState(enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class IsolationLevel(enum.Enum):
    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"

    @classmethod
    def coerce(cls, level: IsolationLevel | str) -> IsolationLevel:
        if isinstance(level, IsolationLevel):
            return level
        try:
            return cls(" ".join(level.upper().replace("_", " ").split()))
        except ValueError:
            raise InvalidQueryError(f"Unknown isolation level: {level!r}") from None


type Writable = Base | Changeset


def _write_values(item: Writable) -> tuple[type[Base], dict[str, Any]]:
    """Model and encoded column values of an entity or a valid changeset."""
    if isinstance(item, Changeset):
        item.raise_if_invalid()
        return item.model, item.column_values()
    if isinstance(item, Base):
        return type(item), item.column_values()
    raise TypeError(f"Expected an entity or a Changeset, got {type(item).__name__}")


def _batch_values(items: Sequence[Writable]) -> tuple[type[Base], list[dict[str, Any]]]:
    model: type[Base] | None = None
    rows = []
    for item in items:
        item_model, values = _write_values(item)
        if model is not None and item_model is not model:
            raise InvalidSchemaError(
                f"Batch mixes {model.__name__} and {item_model.__name__}"
            )
        model = item_model
        rows.append(values)
    assert model is not None
    return model, rows


class _RepoOperations:
    """Operations shared by the pool repository and transaction repositories."""

    _batch_size: int

    @property
    def executor(self) -> Executor:
        raise NotImplementedError

    async def _in_transaction[R](self, work: Callable[[TransactionRepo], Awaitable[R]]) -> R:
        raise NotImplementedError

    # ========== Reads ==========

    async def all[T: Base](self, query: Query) -> list[T]:
        """Fetch every entity matching ``query``, with its preloads applied.

        Example:
            >>> users = await repo.all(select(User).where(F("age") >= 18))
        """
        rows = await self.executor.fetch_compiled(compile_select(query))
        model = query.model
        entities = [model._from_row(row) for row in rows]
        if query.preloads:
            entities = await self.preload(model, entities, *query.preloads)
        return entities  # type: ignore[return-value]

    async def rows(self, query: Query) -> list[Row]:
        """Like :meth:`all` but returns raw rows; preloads attach under their names."""
        rows = await self.executor.fetch_compiled(compile_select(query))
        if query.preloads:
            rows = await self.preload(query.model, rows, *query.preloads)
        return rows

    async def first[T: Base](self, query: Query) -> T | None:
        results: list[T] = await self.all(query.limit(1))
        return results[0] if results else None

    async def one[T: Base](self, query: Query) -> T:
        """Fetch exactly one entity.

        Raises:
            NotFoundError: nothing matched
            UnexpectedResultCountError: more than one row matched
        """
        results: list[T] = await self.all(query.limit(2))
        if not results:
            raise NotFoundError(query.table)
        if len(results) > 1:
            raise UnexpectedResultCountError(1, len(results))
        return results[0]

    async def get[T: Base](self, model: type[T], id: Any) -> T | None:
        """Get an entity by primary key.

        Example:
            >>> user = await repo.get(User, 1)
        """
        pk_column = model.primary_key_column()
        return await self.first(Query.from_(model).where(F(pk_column).eq(id)))

    async def get_or_fail[T: Base](self, model: type[T], id: Any) -> T:
        instance = await self.get(model, id)
        if instance is None:
            raise NotFoundError(model.__tablename__, id)
        return instance

    async def count(self, query: Query) -> int:
        rows = await self.executor.fetch_compiled(compile_count(query))
        return int(rows[0]["value"]) if rows else 0

    async def aggregate(self, query: Query, func: str, column: str = "*") -> Any:
        """Compute ``SUM``/``AVG``/``MIN``/``MAX``/``COUNT`` over the query's rows."""
        rows = await self.executor.fetch_compiled(compile_aggregate(query, func, column))
        return rows[0]["value"] if rows else None

    def query[T: Base](self, model: type[T]) -> BoundQuery[T]:
        """Start a fluent query bound to this repository.

        Example:
            >>> users = await repo.query(User).where(F("age") > 18).preload("posts").all()
        """
        return BoundQuery(self, Query.from_(model))

    # ========== Writes ==========

    async def insert[T: Base](self, item: T | Changeset) -> T:
        """Insert an entity or a changeset and return the stored entity.

        Example:
            >>> user = await repo.insert(User(name="Alice", email="a@x.com"))
            >>> user.id  # generated by the database
        """
        model, values = _write_values(item)
        statements = compile_insert(model, [values], batch_size=self._batch_size)
        rows = await self.executor.fetch_all(statements)
        if len(rows) != 1:
            raise UnexpectedResultCountError(1, len(rows))
        return model._from_row(rows[0])  # type: ignore[return-value]

    async def insert_all[T: Base](self, items: Sequence[T | Changeset]) -> list[T]:
        """Insert many entities with multi-row ``INSERT`` statements.

        Rows are sent in batches; when more than one batch is needed the
        batches run in a single transaction.
        """
        if not items:
            return []
        model, values = _batch_values(items)
        statements = compile_insert(model, values, batch_size=self._batch_size)

        if len(statements) > 1:
            rows = await self._in_transaction(lambda tx: tx.executor.fetch_all(statements))
        else:
            rows = await self.executor.fetch_all(statements)

        if len(rows) != len(items):
            raise UnexpectedResultCountError(len(items), len(rows))
        return [model._from_row(row) for row in rows]  # type: ignore[misc]

    async def update[T: Base](self, model: type[T], id: Any, changes: Changeset | dict[str, Any]) -> T:
        """Update one row by primary key and return the stored entity.

        Empty changes issue no write and return the current row.
        """
        if isinstance(changes, Changeset):
            changes.raise_if_invalid()
            values = changes.column_values()
        else:
            values = {}
            for name, value in changes.items():
                col_info = model.__columns__.get(name)
                if col_info is None:
                    raise InvalidSchemaError(f"{model.__name__} has no column {name!r}")
                values[col_info.column] = col_info.encode(value)

        if not values:
            return await self.get_or_fail(model, id)

        rows = await self.executor.fetch_compiled(compile_update(model, id, values))
        if not rows:
            raise NotFoundError(model.__tablename__, id)
        if len(rows) != 1:
            raise UnexpectedResultCountError(1, len(rows))
        return model._from_row(rows[0])

    async def delete(self, model: type[Base], id: Any) -> int:
        """Delete a row by primary key; returns the number of rows removed."""
        compiled = compile_delete(model, id)
        status = await self.executor.execute(compiled.sql, compiled.params)
        return affected_rows(status)

    async def upsert[T: Base](
        self,
        item: T | Changeset,
        conflict_target: ConflictTarget | str | Sequence[str],
        update_columns: Sequence[str] | None = None,
        *,
        do_nothing: bool = False,
    ) -> T | None:
        """Insert or update on conflict.

        Returns the stored entity, or None when ``do_nothing`` skipped a
        conflicting row.

        Example:
            >>> user = await repo.upsert(User(email="a@x.com", name="Al"), "email", ["name"])
        """
        model, values = _write_values(item)
        statements = compile_upsert(
            model, [values], conflict_target, update_columns,
            do_nothing=do_nothing, batch_size=self._batch_size,
        )
        rows = await self.executor.fetch_all(statements)
        if not rows:
            if do_nothing:
                return None
            raise UnexpectedResultCountError(1, 0)
        return model._from_row(rows[0])  # type: ignore[return-value]

    async def upsert_all[T: Base](
        self,
        items: Sequence[T | Changeset],
        conflict_target: ConflictTarget | str | Sequence[str],
        update_columns: Sequence[str] | None = None,
        *,
        do_nothing: bool = False,
    ) -> list[T]:
        """Upsert many rows; conflicting rows skipped by ``do_nothing`` are not returned."""
        if not items:
            return []
        model, values = _batch_values(items)
        statements = compile_upsert(
            model, values, conflict_target, update_columns,
            do_nothing=do_nothing, batch_size=self._batch_size,
        )
        if len(statements) > 1:
            rows = await self._in_transaction(lambda tx: tx.executor.fetch_all(statements))
        else:
            rows = await self.executor.fetch_all(statements)
        return [model._from_row(row) for row in rows]  # type: ignore[misc]

    # ========== Preloading & raw SQL ==========

    async def preload[I](self, model: type[Base], items: Sequence[I], *names: str) -> list[I]:
        """Attach related data to already-loaded entities or rows.

        Example:
            >>> users = await repo.preload(User, users, "posts", "posts.comments")
        """
        return await Preloader(self.executor, self._batch_size).preload(model, items, names)

    async def execute_raw(self, sql: str, *params: Any) -> int:
        """Run a statement and return the number of affected rows."""
        return affected_rows(await self.executor.execute(sql, params))

    async def fetch_raw(self, sql: str, *params: Any) -> list[Row]:
        return await self.executor.fetch(sql, params)


class Repo(_RepoOperations):
    """Repository over a connection pool.

    Every statement outside a transaction acquires its own connection, so
    independent statements (such as concurrent preloads) run in parallel.

    Example:
        >>> pool = await create_engine()
        >>> repo = Repo(pool)
        >>> user = await repo.insert(User(name="Alice", email="a@x.com"))
        >>> async with repo.begin() as tx:
        ...     await tx.insert(Post(title="Hello", user_id=user.id))
    """

    def __init__(self, pool: ConnectionPool, *, batch_size: int | None = None) -> None:
        self._pool = pool
        self._executor = Executor.for_pool(pool)
        self._batch_size = batch_size or get_settings().batch_size

    @property
    def executor(self) -> Executor:
        return self._executor

    @asynccontextmanager
    async def begin(
        self, isolation: IsolationLevel | str | None = None
    ) -> AsyncIterator[TransactionRepo]:
        """Run a block in a transaction that commits on success.

        Any exception rolls the transaction back and propagates.

        Example:
            >>> async with repo.begin(IsolationLevel.SERIALIZABLE) as tx:
            ...     await tx.insert(User(name="Alice", email="a@x.com"))
        """
        if isolation is None:
            isolation = get_settings().isolation_level
        level = IsolationLevel.coerce(isolation) if isolation is not None else None

        async with self._pool.acquire() as conn:
            tx = TransactionRepo(conn, batch_size=self._batch_size)
            await tx._begin(level)
            try:
                yield tx
            except BaseException:
                await tx._rollback()
                raise
            await tx._commit()

    async def transaction[R](
        self,
        work: Callable[[TransactionRepo], Awaitable[R]],
        isolation: IsolationLevel | str | None = None,
    ) -> R:
        """Run ``work`` with a transaction-scoped repository.

        Example:
            >>> async def move(tx):
            ...     await tx.update(Account, 1, {"balance": 0})
            ...     await tx.update(Account, 2, {"balance": 100})
            >>> await repo.transaction(move)
        """
        async with self.begin(isolation) as tx:
            return await work(tx)

    async def _in_transaction[R](self, work: Callable[[TransactionRepo], Awaitable[R]]) -> R:
        return await self.transaction(work)

    async def savepoint[R](self, name: str, work: Callable[[TransactionRepo], Awaitable[R]]) -> R:
        """Open a transaction and run ``work`` inside a savepoint within it."""
        return await self.transaction(lambda tx: tx.savepoint(name, work))


class TransactionRepo(_RepoOperations):
    """Repository bound to the single connection of an open transaction."""

    def __init__(self, connection: Connection, *, batch_size: int | None = None) -> None:
        self._connection = connection
        self._executor = Executor.for_connection(connection)
        self._batch_size = batch_size or get_settings().batch_size
        self.state = TransactionState.IDLE

    @property
    def executor(self) -> Executor:
        if self.state is not TransactionState.ACTIVE:
            raise QueryKitError(f"Transaction is {self.state.value}, not active")
        return self._executor

    async def _begin(self, isolation: IsolationLevel | None) -> None:
        sql = "BEGIN" if isolation is None else f"BEGIN ISOLATION LEVEL {isolation.value}"
        logger.debug("Transaction begin (%s)", isolation.value if isolation else "default")
        await self._executor.execute(sql)
        self.state = TransactionState.ACTIVE

    async def _commit(self) -> None:
        try:
            await self._executor.execute("COMMIT")
        except BaseException:
            self.state = TransactionState.ROLLED_BACK
            raise
        self.state = TransactionState.COMMITTED
        logger.debug("Transaction committed")

    async def _rollback(self) -> None:
        """Roll back; a failure here is logged and never replaces the original error."""
        self.state = TransactionState.ROLLED_BACK
        try:
            await self._executor.execute("ROLLBACK")
        except Exception:
            logger.warning("Rollback failed", exc_info=True)
            return
        logger.debug("Transaction rolled back")

    async def transaction[R](
        self,
        work: Callable[[TransactionRepo], Awaitable[R]],
        isolation: IsolationLevel | str | None = None,
    ) -> R:
        """Run ``work`` in the already open transaction.

        Nested calls start no new transaction and no savepoint: an error
        propagates to the outermost call, which rolls everything back. Use
        :meth:`savepoint` for partial rollback.
        """
        if isolation is not None:
            logger.debug("Ignoring isolation level %s for nested transaction", isolation)
        return await work(self)

    async def _in_transaction[R](self, work: Callable[[TransactionRepo], Awaitable[R]]) -> R:
        return await work(self)

    @asynccontextmanager
    async def begin(self, isolation: IsolationLevel | str | None = None) -> AsyncIterator[TransactionRepo]:
        yield self

    async def savepoint[R](self, name: str, work: Callable[[TransactionRepo], Awaitable[R]]) -> R:
        """Run ``work`` inside a savepoint that is rolled back alone on failure.

        Example:
            >>> async def risky(tx):
            ...     await tx.insert(AuditLog(message="attempt"))
            ...     raise RuntimeError
            >>> async def work(tx):
            ...     await tx.insert(User(name="Alice", email="a@x.com"))
            ...     with contextlib.suppress(RuntimeError):
            ...         await tx.savepoint("audit", risky)
            >>> await repo.transaction(work)  # Alice is committed
        """
        check_identifier(name)
        savepoint = f"sp_{name}_{uuid.uuid4().hex[:8]}"
        executor = self.executor

        await executor.execute(f"SAVEPOINT {savepoint}")
        try:
            result = await work(self)
        except BaseException:
            await self._release_failed(savepoint)
            raise
        await executor.execute(f"RELEASE SAVEPOINT {savepoint}")
        return result

    async def _release_failed(self, savepoint: str) -> None:
        for sql in (f"ROLLBACK TO SAVEPOINT {savepoint}", f"RELEASE SAVEPOINT {savepoint}"):
            try:
                await self._executor.execute(sql)
            except Exception:
                logger.warning("%s failed", sql, exc_info=True)
                return


class BoundQuery[T: "Base"]:
    """A :class:`Query` bound to a repository, executed with terminal methods."""

    def __init__(self, repo: _RepoOperations, query: Query) -> None:
        self._repo = repo
        self.query = query

    def _with(self, query: Query) -> BoundQuery[T]:
        return BoundQuery(self._repo, query)

    def where(self, *conditions: ConditionLike) -> BoundQuery[T]:
        return self._with(self.query.where(*conditions))

    def filter_by(self, **kwargs: Any) -> BoundQuery[T]:
        return self._with(self.query.filter_by(**kwargs))

    def where_group(self, *conditions: ConditionLike, connector: str = "AND") -> BoundQuery[T]:
        return self._with(self.query.where_group(*conditions, connector=connector))

    def where_related(self, relationship: str, *conditions: ConditionLike) -> BoundQuery[T]:
        return self._with(self.query.where_related(relationship, *conditions))

    def join(
        self,
        relationship: str,
        kind: JoinKind | str = JoinKind.INNER,
        on: tuple[str, str] | None = None,
    ) -> BoundQuery[T]:
        return self._with(self.query.join(relationship, kind, on))

    def order_by(self, column: str, direction: str = "ASC") -> BoundQuery[T]:
        return self._with(self.query.order_by(column, direction))

    def limit(self, n: int) -> BoundQuery[T]:
        return self._with(self.query.limit(n))

    def offset(self, n: int) -> BoundQuery[T]:
        return self._with(self.query.offset(n))

    def select(self, *columns: str) -> BoundQuery[T]:
        return self._with(self.query.select(*columns))

    def preload(self, *names: str) -> BoundQuery[T]:
        return self._with(self.query.preload(*names))

    async def all(self) -> list[T]:
        return await self._repo.all(self.query)

    async def first(self) -> T | None:
        return await self._repo.first(self.query)

    async def one(self) -> T:
        return await self._repo.one(self.query)

    async def rows(self) -> list[Row]:
        return await self._repo.rows(self.query)

    async def count(self) -> int:
        return await self._repo.count(self.query)

    async def exists(self) -> bool:
        return await self.count() > 0

    async def sum(self, column: str) -> Any:
        return await self._repo.aggregate(self.query, "SUM", column)

    async def avg(self, column: str) -> Any:
        return await self._repo.aggregate(self.query, "AVG", column)

    async def min(self, column: str) -> Any:
        return await self._repo.aggregate(self.query, "MIN", column)

    async def max(self, column: str) -> Any:
        return await self._repo.aggregate(self.query, "MAX", column)
