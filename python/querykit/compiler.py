"""Compile query specifications and writes into parameterized SQL.

Every fragment is built as a list of tokens: literal SQL strings and
:class:`Param` slots. Fragments are compiled independently and concatenated;
placeholders are numbered only once, when the complete statement is
flattened, so ``$1..$k`` is always gap-free no matter how clauses were
merged.
"""

from __future__ import annotations

import re
from collections.abc import Hashable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from querykit.errors import InvalidQueryError, InvalidSchemaError, NotImplementedFeatureError
from querykit.query import OPERATORS, Condition, ConditionGroup, ConditionLike, JoinKind, Query
from querykit.relationships import RelationshipInfo, RelationshipKind

if TYPE_CHECKING:
    from querykit.base import Base

DEFAULT_BATCH_SIZE = 1000

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_AGGREGATES = frozenset({"COUNT", "SUM", "AVG", "MIN", "MAX"})


class Param:
    """A parameter slot; numbered when the statement is flattened."""

    __slots__ = ("value",)

    def __init__(self, value: Any) -> None:
        self.value = value

    def __repr__(self) -> str:
        return f"Param({self.value!r})"


Token = str | Param


@dataclass(frozen=True)
class CompiledQuery:
    """SQL text with its positional parameters."""

    sql: str
    params: list[Any] = field(default_factory=list)

    def __iter__(self) -> Iterator[Any]:
        # Allows ``sql, params = compile_select(query)``
        yield self.sql
        yield self.params


@dataclass(frozen=True)
class ConflictTarget:
    """Target of an ``ON CONFLICT`` clause: unique columns or a named constraint.

    Example:
        >>> ConflictTarget.on_columns("email")
        >>> ConflictTarget.on_constraint("users_email_key")
    """

    columns: tuple[str, ...] = ()
    constraint: str | None = None

    @classmethod
    def on_columns(cls, *columns: str) -> ConflictTarget:
        return cls(columns=tuple(columns))

    @classmethod
    def on_constraint(cls, name: str) -> ConflictTarget:
        return cls(constraint=name)

    @classmethod
    def coerce(cls, target: ConflictTarget | str | Sequence[str]) -> ConflictTarget:
        if isinstance(target, ConflictTarget):
            return target
        if isinstance(target, str):
            return cls.on_columns(target)
        return cls.on_columns(*target)

    def to_sql(self) -> str:
        if self.constraint is not None:
            return f"ON CONFLICT ON CONSTRAINT {check_identifier(self.constraint)}"
        if not self.columns:
            raise InvalidSchemaError("Conflict target needs at least one column or a constraint")
        return f"ON CONFLICT ({', '.join(check_identifier(c) for c in self.columns)})"


# ========== Helpers ==========


def check_identifier(name: str) -> str:
    """Return ``name`` if it is a plain or table-qualified SQL identifier."""
    parts = name.split(".")
    if len(parts) > 2 or not all(_IDENTIFIER.fullmatch(p) for p in parts):
        raise InvalidQueryError(f"Invalid identifier: {name!r}")
    return name


def flatten(tokens: Iterable[Token]) -> CompiledQuery:
    """Join tokens into SQL, numbering parameter slots ``$1..$k`` in order."""
    parts: list[str] = []
    params: list[Any] = []
    for token in tokens:
        if isinstance(token, Param):
            params.append(token.value)
            parts.append(f"${len(params)}")
        else:
            parts.append(token)
    return CompiledQuery("".join(parts), params)


def _join_fragments(fragments: Sequence[list[Token]], separator: str) -> list[Token]:
    tokens: list[Token] = []
    for i, fragment in enumerate(fragments):
        if i:
            tokens.append(separator)
        tokens.extend(fragment)
    return tokens


def unique_keys(values: Iterable[Hashable]) -> list[Any]:
    """Deduplicate keys keeping first-seen order; None is dropped."""
    return list(dict.fromkeys(v for v in values if v is not None))


def chunked[V](values: Sequence[V], size: int) -> Iterator[list[V]]:
    """Split ``values`` into consecutive lists of at most ``size`` items."""
    if size < 1:
        raise InvalidQueryError(f"Batch size must be positive, got {size}")
    for start in range(0, len(values), size):
        yield list(values[start:start + size])


def _literal_int(value: Any, clause: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidQueryError(f"{clause} must be a non-negative integer, got {value!r}")
    return value


# ========== Conditions ==========


def compile_condition(cond: Condition, qualifier: str | None = None) -> list[Token]:
    """Compile one condition into tokens.

    ``qualifier`` prefixes unqualified field names with a table name.
    """
    column = check_identifier(cond.field)
    if qualifier and "." not in column:
        column = f"{qualifier}.{column}"

    op = cond.operator.strip().upper()
    if op not in OPERATORS:
        raise InvalidQueryError(f"Unsupported operator: {cond.operator!r}")

    if op in ("IS NULL", "IS NOT NULL"):
        return [f"{column} {op}"]

    if op == "IN":
        if isinstance(cond.value, (str, bytes)) or not isinstance(cond.value, Iterable):
            raise InvalidQueryError(f"IN expects a collection of values for {cond.field!r}")
        values = list(cond.value)
        if not values:
            return ["1 = 0"]  # Empty IN -> always false
        tokens: list[Token] = [f"{column} IN ("]
        for i, value in enumerate(values):
            if i:
                tokens.append(", ")
            tokens.append(Param(value))
        tokens.append(")")
        return tokens

    if op == "BETWEEN":
        bounds = cond.value
        if isinstance(bounds, (str, bytes)) or not isinstance(bounds, Sequence) or len(bounds) != 2:
            raise InvalidQueryError(f"BETWEEN expects (low, high) for {cond.field!r}")
        return [f"{column} BETWEEN ", Param(bounds[0]), " AND ", Param(bounds[1])]

    return [f"{column} {op} ", Param(cond.value)]


def compile_item(item: ConditionLike, qualifier: str | None = None) -> list[Token]:
    """Compile a condition or a (possibly nested) group."""
    if isinstance(item, Condition):
        return compile_condition(item, qualifier)
    if isinstance(item, ConditionGroup):
        return compile_group(item, qualifier)
    raise InvalidQueryError(f"Not a condition: {item!r}")


def compile_group(group: ConditionGroup, qualifier: str | None = None) -> list[Token]:
    """Compile a group on its own; the result is parenthesized."""
    connector = group.connector.upper()
    if connector not in ("AND", "OR"):
        raise InvalidQueryError(f"Unsupported connector: {group.connector!r}")
    parts = [part for part in (compile_item(item, qualifier) for item in group.items) if part]
    if not parts:
        return []
    tokens = ["("] + _join_fragments(parts, f" {connector} ") + [")"]
    if group.negated:
        tokens.insert(0, "NOT ")
    return tokens


def compile_conditions(items: Sequence[ConditionLike], qualifier: str | None = None) -> list[Token]:
    """Compile conditions ANDed together, without surrounding parentheses."""
    parts = [compile_item(item, qualifier) for item in items]
    return _join_fragments([part for part in parts if part], " AND ")


# ========== SELECT ==========


def _resolve_joins(query: Query) -> list[tuple[str, Any, RelationshipInfo]]:
    """Explicit joins plus implicit INNER joins for relationship conditions."""
    resolved: list[tuple[str, Any, RelationshipInfo]] = []
    seen: set[str] = set()
    for join in query.joins:
        rel_info = query.model.relationship(join.relationship)
        if rel_info.kind is RelationshipKind.MANY_TO_MANY and join.on is None:
            raise NotImplementedFeatureError(
                f"Joining many-to-many relationship '{join.relationship}' needs explicit keys"
            )
        local, foreign = join.on or (rel_info.local_key, rel_info.foreign_key)
        resolved.append((join.kind.sql, (local, foreign), rel_info))
        seen.add(join.relationship)
    for name, _conditions in query.relationship_conditions:
        if name in seen:
            continue
        rel_info = query.model.relationship(name)
        if rel_info.kind is RelationshipKind.MANY_TO_MANY:
            raise NotImplementedFeatureError(
                f"Filtering through many-to-many relationship '{name}' is not supported"
            )
        resolved.append((JoinKind.INNER.sql, (rel_info.local_key, rel_info.foreign_key), rel_info))
        seen.add(name)
    return resolved


def _selection_sql(query: Query, qualified: bool) -> str:
    model = query.model
    table = model.__tablename__
    if query.selections == ("*",):
        if not qualified:
            return "*"
        return ", ".join(f"{table}.{col}" for col in model.column_names())

    columns = [check_identifier(c) for c in query.selections]
    pk_column = model.primary_key_column()
    if qualified:
        columns = [c if "." in c else f"{table}.{c}" for c in columns]
        pk_column = f"{table}.{pk_column}"
    elif f"{table}.{pk_column}" in columns:
        pk_column = f"{table}.{pk_column}"
    if pk_column not in columns:
        columns.insert(0, pk_column)
    return ", ".join(columns)


def _where_tokens(query: Query, joins: list[tuple[str, Any, RelationshipInfo]]) -> list[Token]:
    qualifier = query.table if joins else None
    fragments: list[list[Token]] = []

    fragment = compile_conditions(query.conditions, qualifier)
    if fragment:
        fragments.append(fragment)

    for group in query.composite_conditions:
        fragment = compile_group(group, qualifier)
        if fragment:
            fragments.append(fragment)

    for name, conditions in query.relationship_conditions:
        if not conditions:
            continue
        related_table = query.model.relationship(name).related_table
        fragment = compile_conditions(conditions, related_table)
        if fragment:
            fragments.append(fragment)

    if not fragments:
        return []
    return [" WHERE "] + _join_fragments(fragments, " AND ")


def _from_tokens(query: Query, joins: list[tuple[str, Any, RelationshipInfo]]) -> list[Token]:
    table = query.table
    tokens: list[Token] = [f" FROM {table}"]
    for join_sql, (local, foreign), rel_info in joins:
        related = rel_info.related_table
        local = check_identifier(local)
        foreign = check_identifier(foreign)
        tokens.append(f" {join_sql} {related} ON {table}.{local} = {related}.{foreign}")
    return tokens


def compile_select(query: Query) -> CompiledQuery:
    """Compile a Query into ``SELECT`` SQL and parameters.

    Example:
        >>> compile_select(select(User).where(F("age") >= 18).limit(10))
        CompiledQuery(sql='SELECT * FROM users WHERE age >= $1 LIMIT 10', params=[18])
    """
    joins = _resolve_joins(query)
    qualified = bool(joins)

    tokens: list[Token] = [f"SELECT {_selection_sql(query, qualified)}"]
    tokens += _from_tokens(query, joins)
    tokens += _where_tokens(query, joins)

    if query.order:
        order_parts = []
        for column, direction in query.order:
            column = check_identifier(column)
            if direction not in ("ASC", "DESC"):
                raise InvalidQueryError(f"Invalid order direction: {direction!r}")
            if qualified and "." not in column:
                column = f"{query.table}.{column}"
            order_parts.append(f"{column} {direction}")
        tokens.append(" ORDER BY " + ", ".join(order_parts))

    if query.limit_value is not None:
        tokens.append(f" LIMIT {_literal_int(query.limit_value, 'LIMIT')}")
    if query.offset_value is not None:
        tokens.append(f" OFFSET {_literal_int(query.offset_value, 'OFFSET')}")

    return flatten(tokens)


def compile_aggregate(query: Query, func: str, column: str = "*") -> CompiledQuery:
    """Compile ``SELECT FUNC(column) AS value`` over the query's filters.

    Ordering, limit and offset do not apply to aggregates and are ignored.
    """
    func = func.upper()
    if func not in _AGGREGATES:
        raise InvalidQueryError(f"Unsupported aggregate: {func!r}")
    if column != "*":
        column = check_identifier(column)
    joins = _resolve_joins(query)
    if joins and column != "*" and "." not in column:
        column = f"{query.table}.{column}"
    tokens: list[Token] = [f"SELECT {func}({column}) AS value"]
    tokens += _from_tokens(query, joins)
    tokens += _where_tokens(query, joins)
    return flatten(tokens)


def compile_count(query: Query) -> CompiledQuery:
    return compile_aggregate(query, "COUNT")


def compile_in_lookup(
    table: str,
    column: str,
    values: Iterable[Hashable],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[CompiledQuery]:
    """Build ``SELECT * FROM table WHERE column IN (...)`` statements.

    Keys are deduplicated and split into chunks of at most ``batch_size``
    values; the union of the chunk results equals the unchunked lookup.
    """
    table = check_identifier(table)
    column = check_identifier(column)
    keys = unique_keys(values)
    statements = []
    for chunk in chunked(keys, batch_size):
        tokens: list[Token] = [f"SELECT * FROM {table} WHERE "]
        tokens += compile_condition(Condition(column, "IN", chunk))
        statements.append(flatten(tokens))
    return statements


# ========== INSERT / UPSERT / UPDATE / DELETE ==========


def _insert_columns(model: type[Base], rows: Sequence[dict[str, Any]]) -> list[str]:
    """Union of row keys, declared columns first in declaration order."""
    present: dict[str, None] = {}
    for row in rows:
        for key in row:
            present.setdefault(key, None)
    ordered = [c for c in model.column_names() if c in present]
    ordered += [c for c in present if c not in ordered]
    return [check_identifier(c) for c in ordered]


def _values_tokens(rows: Sequence[dict[str, Any]], columns: list[str]) -> list[Token]:
    groups: list[list[Token]] = []
    for row in rows:
        group: list[Token] = ["("]
        for i, col in enumerate(columns):
            if i:
                group.append(", ")
            group.append(Param(row[col]) if col in row else "DEFAULT")
        group.append(")")
        groups.append(group)
    return _join_fragments(groups, ", ")


def _insert_tokens(model: type[Base], rows: Sequence[dict[str, Any]]) -> list[Token]:
    table = model.__tablename__
    columns = _insert_columns(model, rows)
    if not columns:
        return [f"INSERT INTO {table} DEFAULT VALUES"]
    return [f"INSERT INTO {table} ({', '.join(columns)}) VALUES "] + _values_tokens(rows, columns)


def compile_insert(
    model: type[Base],
    rows: Sequence[dict[str, Any]],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[CompiledQuery]:
    """Compile ``INSERT … RETURNING *`` statements, one per batch of rows.

    Rows map column names to already-encoded values. Columns missing from a
    row are sent as ``DEFAULT``.
    """
    statements = []
    for batch in chunked(list(rows), batch_size):
        if not _insert_columns(model, batch):
            # DEFAULT VALUES only inserts a single row
            statements.extend(
                flatten(_insert_tokens(model, [row]) + [" RETURNING *"]) for row in batch
            )
            continue
        statements.append(flatten(_insert_tokens(model, batch) + [" RETURNING *"]))
    return statements


def compile_upsert(
    model: type[Base],
    rows: Sequence[dict[str, Any]],
    conflict_target: ConflictTarget | str | Sequence[str],
    update_columns: Sequence[str] | None = None,
    *,
    do_nothing: bool = False,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[CompiledQuery]:
    """Compile ``INSERT … ON CONFLICT … RETURNING *`` statements.

    Args:
        conflict_target: unique column(s) or a named constraint
        update_columns: columns overwritten from ``EXCLUDED`` on conflict.
            None updates every inserted column except the primary key and
            the conflict columns; an empty list is an InvalidSchemaError.
        do_nothing: emit ``DO NOTHING`` instead of an update

    Example:
        >>> compile_upsert(User, [{"email": "a@x.com", "name": "A"}], "email", ["name"])
    """
    target = ConflictTarget.coerce(conflict_target)
    if update_columns is not None and not do_nothing and len(update_columns) == 0:
        raise InvalidSchemaError("Upsert update column list is empty")

    statements = []
    for batch in chunked(list(rows), batch_size):
        columns = _insert_columns(model, batch)
        if not columns:
            raise InvalidSchemaError("Upsert needs at least one column value")

        if do_nothing:
            action = "DO NOTHING"
        else:
            if update_columns is None:
                excluded = set(target.columns)
                if model.__primary_key__ is not None:
                    excluded.add(model.primary_key_column())
                targets = [c for c in columns if c not in excluded]
            else:
                targets = [check_identifier(c) for c in update_columns]
            if targets:
                action = "DO UPDATE SET " + ", ".join(f"{c} = EXCLUDED.{c}" for c in targets)
            else:
                action = "DO NOTHING"

        tokens = _insert_tokens(model, batch)
        tokens.append(f" {target.to_sql()} {action} RETURNING *")
        statements.append(flatten(tokens))
    return statements


def compile_update(model: type[Base], pk_value: Any, changes: dict[str, Any]) -> CompiledQuery:
    """Compile ``UPDATE … SET … WHERE pk = $n RETURNING *``."""
    if not changes:
        raise InvalidQueryError("UPDATE needs at least one column")
    table = model.__tablename__
    pk_column = model.primary_key_column()
    assignments = [
        [f"{check_identifier(col)} = ", Param(value)] for col, value in changes.items()
    ]
    tokens: list[Token] = [f"UPDATE {table} SET "]
    tokens += _join_fragments(assignments, ", ")
    tokens += [f" WHERE {pk_column} = ", Param(pk_value), " RETURNING *"]
    return flatten(tokens)


def compile_delete(model: type[Base], pk_value: Any) -> CompiledQuery:
    """Compile ``DELETE FROM table WHERE pk = $1``."""
    table = model.__tablename__
    pk_column = model.primary_key_column()
    return flatten([f"DELETE FROM {table} WHERE {pk_column} = ", Param(pk_value)])
