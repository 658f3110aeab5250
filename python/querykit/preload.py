"""Eager loading of relationships with a bounded number of queries.

Each distinct association path costs one ``SELECT … WHERE key IN (…)`` per
chunk of keys, however many owners are being loaded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Sequence
from typing import TYPE_CHECKING, Any

from querykit.compiler import DEFAULT_BATCH_SIZE, compile_in_lookup
from querykit.errors import NotImplementedFeatureError
from querykit.relationships import RelationshipInfo, RelationshipKind
from querykit.row import Row

if TYPE_CHECKING:
    from querykit.base import Base
    from querykit.executor import Executor

logger = logging.getLogger(__name__)


def _key_of(item: Any, column: str) -> Any:
    if isinstance(item, Row):
        return item.get(column)
    return item.value_of(column)


def _attach(item: Any, name: str, value: Any) -> Any:
    if isinstance(item, Row):
        return item.with_value(name, value)
    return item.with_relationship(name, value)


def _plan(names: Sequence[str]) -> dict[str, list[str]]:
    """Group association paths by first segment, keeping request order.

    ``["posts", "posts.comments", "author"]`` becomes
    ``{"posts": ["comments"], "author": []}``.
    """
    plan: dict[str, list[str]] = {}
    for name in names:
        head, _, rest = name.partition(".")
        subpaths = plan.setdefault(head, [])
        if rest and rest not in subpaths:
            subpaths.append(rest)
    return plan


def validate_paths(model: type[Base], names: Sequence[str]) -> None:
    """Resolve every segment of every path, raising before any query runs."""
    for name in names:
        current = model
        for segment in name.split("."):
            rel_info = current.relationship(segment)
            if rel_info.kind is RelationshipKind.MANY_TO_MANY:
                raise NotImplementedFeatureError(
                    f"Preloading many-to-many relationship '{segment}' is not supported"
                )
            current = rel_info.related_model


async def _first_error_gather(coros: Sequence[Coroutine[Any, Any, Any]]) -> list[Any]:
    """Run coroutines concurrently; on the first failure cancel the rest and raise it."""
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    if not tasks:
        return []
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    failed = [t for t in tasks if t.done() and not t.cancelled() and t.exception() is not None]
    if failed:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise failed[0].exception()  # type: ignore[misc]
    return [task.result() for task in tasks]


class Preloader:
    """Attaches related entities (or rows) to already-loaded owners.

    Example:
        >>> preloader = Preloader(executor)
        >>> users = await preloader.preload(User, users, ["posts", "posts.comments"])
        >>> users[0].posts[0].comments
    """

    def __init__(self, executor: Executor, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self._executor = executor
        self.batch_size = batch_size

    async def preload[T](self, model: type[Base], items: Sequence[T], names: Sequence[str]) -> list[T]:
        """Return new items with every named association attached.

        The inputs are not modified. If any load fails nothing is returned
        and the first error propagates.
        """
        validate_paths(model, names)
        return await self._preload(model, list(items), names)

    async def _preload(self, model: type[Base], items: list[Any], names: Sequence[str]) -> list[Any]:
        if not items or not names:
            return list(items)

        plan = _plan(names)
        simple = [name for name, subpaths in plan.items() if not subpaths]
        nested = [(name, subpaths) for name, subpaths in plan.items() if subpaths]
        logger.debug(
            "Preloading %s on %d %s rows (simple=%s, nested=%s)",
            list(plan), len(items), model.__tablename__, simple, [n for n, _ in nested],
        )

        # Independent associations load concurrently
        loaded: dict[str, list[Any]] = {}
        values = await _first_error_gather([self._load(model, items, name, []) for name in simple])
        loaded.update(zip(simple, values))

        # Each nested level depends on the one above it
        for name, subpaths in nested:
            loaded[name] = await self._load(model, items, name, subpaths)

        result = []
        for index, item in enumerate(items):
            for name in plan:
                item = _attach(item, name, loaded[name][index])
            result.append(item)
        return result

    async def _load(
        self,
        model: type[Base],
        items: list[Any],
        name: str,
        subpaths: list[str],
    ) -> list[Any]:
        """Load one association; returns the value for each owner, in order."""
        rel_info = model.relationship(name)
        related = await self._fetch_related(rel_info, items)
        if subpaths:
            related = await self._preload(rel_info.related_model, related, subpaths)
        return self._associate(rel_info, items, related)

    async def _fetch_related(self, rel_info: RelationshipInfo, items: list[Any]) -> list[Any]:
        assert rel_info.local_key is not None and rel_info.foreign_key is not None
        keys = [_key_of(item, rel_info.local_key) for item in items]
        statements = compile_in_lookup(
            rel_info.related_table, rel_info.foreign_key, keys, self.batch_size
        )
        rows = await self._executor.fetch_all(statements)
        if items and isinstance(items[0], Row):
            return rows
        target = rel_info.related_model
        return [target._from_row(row) for row in rows]

    @staticmethod
    def _associate(rel_info: RelationshipInfo, items: list[Any], related: list[Any]) -> list[Any]:
        """Hash-join related items onto owners by key."""
        assert rel_info.local_key is not None and rel_info.foreign_key is not None
        lookup: dict[Any, list[Any]] = {}
        for obj in related:
            lookup.setdefault(_key_of(obj, rel_info.foreign_key), []).append(obj)

        values: list[Any] = []
        for item in items:
            key = _key_of(item, rel_info.local_key)
            matches = lookup.get(key, []) if key is not None else []
            if rel_info.kind is RelationshipKind.HAS_MANY:
                values.append(list(matches))
            else:
                values.append(matches[0] if matches else None)
        return values
