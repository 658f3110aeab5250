"""Exception types raised by querykit."""

from __future__ import annotations

from typing import Any


class QueryKitError(Exception):
    """Base class for every error raised by querykit."""


class NotFoundError(QueryKitError, LookupError):
    """An expected row was not present."""

    def __init__(self, table: str, id: Any = None) -> None:
        self.table = table
        self.id = id
        if id is None:
            super().__init__(f"No row found in {table}")
        else:
            super().__init__(f"{table} with id={id!r} not found")


class InvalidRelationshipError(QueryKitError):
    """An association name does not resolve to a declared relationship."""

    def __init__(self, name: str, model: str) -> None:
        self.name = name
        self.model = model
        super().__init__(f"Relationship '{name}' not found on {model}")


class InvalidSchemaError(QueryKitError, ValueError):
    """Structural misconfiguration of an entity or statement."""


class InvalidQueryError(QueryKitError, ValueError):
    """A query references an unsupported operator or a malformed name."""


class UnexpectedResultCountError(QueryKitError):
    """A statement returned a different number of rows than required."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected {expected} row(s), got {actual}")


class InvalidChangesetError(QueryKitError, ValueError):
    """A pending write failed validation."""

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = dict(errors)
        details = ", ".join(f"{field}: {msg}" for field, msg in self.errors.items())
        super().__init__(f"Invalid changeset ({details})")


class NotImplementedFeatureError(QueryKitError, NotImplementedError):
    """The requested feature is deliberately not supported."""


class DatabaseError(QueryKitError):
    """Failure reported by the driver, with the SQL that triggered it."""

    def __init__(self, message: str, *, sql: str | None = None) -> None:
        self.sql = sql
        if sql:
            message = f"{message} [sql: {sql}]"
        super().__init__(message)
