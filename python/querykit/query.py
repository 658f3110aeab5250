"""Immutable query specification and condition builders."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Union

from querykit.errors import InvalidSchemaError
from querykit.relationships import get_model

if TYPE_CHECKING:
    from querykit.base import Base

# Operators accepted by the compiler; anything else is rejected.
OPERATORS = frozenset(
    {"=", "!=", ">", ">=", "<", "<=", "LIKE", "ILIKE", "IN", "BETWEEN", "IS NULL", "IS NOT NULL"}
)


@dataclass(frozen=True)
class Condition:
    """A single ``field operator value`` predicate.

    Conditions combine into groups with ``&`` and ``|`` and negate with ``~``.

    Example:
        >>> Condition("age", ">=", 18)
        >>> F("age").gte(18) | F("vip").eq(True)
    """

    field: str
    operator: str
    value: Any = None

    def __and__(self, other: ConditionLike) -> ConditionGroup:
        return ConditionGroup((self, other), "AND")

    def __or__(self, other: ConditionLike) -> ConditionGroup:
        return ConditionGroup((self, other), "OR")

    def __invert__(self) -> ConditionGroup:
        return ConditionGroup((self,), "AND", negated=True)


@dataclass(frozen=True)
class ConditionGroup:
    """Conditions (or nested groups) joined by one connector and parenthesized."""

    items: tuple[ConditionLike, ...]
    connector: str = "AND"
    negated: bool = False

    def __and__(self, other: ConditionLike) -> ConditionGroup:
        if self.connector == "AND" and not self.negated:
            return ConditionGroup((*self.items, other), "AND")
        return ConditionGroup((self, other), "AND")

    def __or__(self, other: ConditionLike) -> ConditionGroup:
        if self.connector == "OR" and not self.negated:
            return ConditionGroup((*self.items, other), "OR")
        return ConditionGroup((self, other), "OR")

    def __invert__(self) -> ConditionGroup:
        return replace(self, negated=not self.negated)


ConditionLike = Union[Condition, ConditionGroup]


class F:
    """Typed expression builder for a column.

    Example:
        >>> F("age").gte(18)
        Condition(field='age', operator='>=', value=18)
        >>> F("email").like("%@example.com")
        >>> F("age") >= 18
    """

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"F({self.name!r})"

    def eq(self, value: Any) -> Condition:
        if value is None:
            return Condition(self.name, "IS NULL")
        return Condition(self.name, "=", value)

    def ne(self, value: Any) -> Condition:
        if value is None:
            return Condition(self.name, "IS NOT NULL")
        return Condition(self.name, "!=", value)

    def gt(self, value: Any) -> Condition:
        return Condition(self.name, ">", value)

    def gte(self, value: Any) -> Condition:
        return Condition(self.name, ">=", value)

    def lt(self, value: Any) -> Condition:
        return Condition(self.name, "<", value)

    def lte(self, value: Any) -> Condition:
        return Condition(self.name, "<=", value)

    def like(self, pattern: str) -> Condition:
        return Condition(self.name, "LIKE", pattern)

    def ilike(self, pattern: str) -> Condition:
        return Condition(self.name, "ILIKE", pattern)

    def in_(self, values: Any) -> Condition:
        return Condition(self.name, "IN", tuple(values))

    def between(self, low: Any, high: Any) -> Condition:
        return Condition(self.name, "BETWEEN", (low, high))

    def is_null(self) -> Condition:
        return Condition(self.name, "IS NULL")

    def is_not_null(self) -> Condition:
        return Condition(self.name, "IS NOT NULL")

    # Comparison operators build conditions, so F is not hashable
    __eq__ = eq  # type: ignore[assignment]
    __ne__ = ne  # type: ignore[assignment]
    __gt__ = gt
    __ge__ = gte
    __lt__ = lt
    __le__ = lte
    __hash__ = None  # type: ignore[assignment]


class JoinKind(enum.Enum):
    INNER = "INNER"
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    FULL = "FULL"

    @property
    def sql(self) -> str:
        return "FULL OUTER JOIN" if self is JoinKind.FULL else f"{self.value} JOIN"


@dataclass(frozen=True)
class JoinSpec:
    """A JOIN through a named relationship.

    ``on`` optionally overrides the relationship keys with explicit
    ``(owner_column, related_column)``.
    """

    relationship: str
    kind: JoinKind = JoinKind.INNER
    on: tuple[str, str] | None = None


@dataclass(frozen=True)
class Query:
    """Immutable, chainable description of a SELECT.

    Every builder method returns a new Query; the receiver is never changed.

    Example:
        >>> q = Query.from_(User).where(F("age") >= 18).order_by("name").limit(10)
        >>> adults = await repo.all(q)
    """

    model: type[Base]
    selections: tuple[str, ...] = ("*",)
    conditions: tuple[ConditionLike, ...] = ()
    composite_conditions: tuple[ConditionGroup, ...] = ()
    relationship_conditions: tuple[tuple[str, tuple[ConditionLike, ...]], ...] = ()
    joins: tuple[JoinSpec, ...] = ()
    order: tuple[tuple[str, str], ...] = field(default=())
    limit_value: int | None = None
    offset_value: int | None = None
    preloads: tuple[str, ...] = ()

    @classmethod
    def from_(cls, target: type[Base] | str) -> Query:
        """Start a query on an entity class or a registered table name."""
        if isinstance(target, str):
            model = get_model(target)
            if model is None:
                raise InvalidSchemaError(f"No model registered for table {target!r}")
            return cls(model=model)
        return cls(model=target)

    @property
    def table(self) -> str:
        return self.model.__tablename__

    def where(self, *conditions: ConditionLike) -> Query:
        """Add conditions ANDed with the existing ones.

        Example:
            >>> query.where(F("age") >= 18, F("active") == True)
        """
        return replace(self, conditions=self.conditions + conditions)

    def filter_by(self, **kwargs: Any) -> Query:
        """Add equality conditions using keyword arguments.

        Keywords are model field names, as in ``update``; ``F`` and ``where``
        take database column names.

        Example:
            >>> Query.from_(User).filter_by(name="Alice", active=True)
        """
        columns = self.model.__columns__
        return self.where(*(
            F(columns[name].column if name in columns else name).eq(value)
            for name, value in kwargs.items()
        ))

    def where_group(self, *conditions: ConditionLike, connector: str = "AND") -> Query:
        """Add a parenthesized group compiled on its own and merged in.

        Example:
            >>> query.where_group(F("role") == "admin", F("vip") == True, connector="OR")
        """
        group = ConditionGroup(tuple(conditions), connector.upper())
        return replace(self, composite_conditions=self.composite_conditions + (group,))

    def where_related(self, relationship: str, *conditions: ConditionLike) -> Query:
        """Filter on columns of a related table.

        Field names are qualified with the related table; the relationship is
        joined automatically when no explicit join exists.

        Example:
            >>> Query.from_(User).where_related("posts", F("published") == True)
        """
        entry = (relationship, tuple(conditions))
        return replace(self, relationship_conditions=self.relationship_conditions + (entry,))

    def join(
        self,
        relationship: str,
        kind: JoinKind | str = JoinKind.INNER,
        on: tuple[str, str] | None = None,
    ) -> Query:
        """Join a related table through a declared relationship."""
        if isinstance(kind, str):
            kind = JoinKind(kind.upper())
        return replace(self, joins=self.joins + (JoinSpec(relationship, kind, on),))

    def order_by(self, column: str, direction: str = "ASC") -> Query:
        """Add an ORDER BY term; a leading ``-`` means descending."""
        if column.startswith("-"):
            column, direction = column[1:], "DESC"
        return replace(self, order=self.order + ((column, direction.upper()),))

    def limit(self, n: int) -> Query:
        return replace(self, limit_value=n)

    def offset(self, n: int) -> Query:
        return replace(self, offset_value=n)

    def select(self, *columns: str) -> Query:
        """Restrict the selected columns; the primary key is always included."""
        return replace(self, selections=tuple(columns) or ("*",))

    def preload(self, *names: str) -> Query:
        """Eager load relationships (dotted names nest, e.g. ``"posts.comments"``)."""
        return replace(self, preloads=self.preloads + names)


def select(model: type[Base]) -> Query:
    """Create a query for a model.

    Example:
        >>> stmt = select(User).where(F("name") == "Alice")
        >>> users = await repo.all(stmt)
    """
    return Query.from_(model)
