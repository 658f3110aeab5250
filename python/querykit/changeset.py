"""Validated, immutable description of a pending write."""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from datetime import date, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from querykit.errors import InvalidChangesetError
from querykit.fields import ColumnInfo, FieldType

if TYPE_CHECKING:
    from querykit.base import Base

INVALID_TYPE = "invalid value type"
REQUIRED = "is required"

_MISSING = object()

_TRUE = {"true", "t", "1", "yes"}
_FALSE = {"false", "f", "0", "no"}


def cast_value(col_info: ColumnInfo, value: Any) -> Any:
    """Cast ``value`` to the field's semantic type or return ``_MISSING``."""
    if value is None:
        return None if col_info.nullable else _MISSING

    field_type = col_info.semantic_type
    try:
        if field_type is FieldType.STRING:
            return value if isinstance(value, str) else _MISSING
        if field_type is FieldType.INTEGER:
            if isinstance(value, bool):
                return _MISSING
            if isinstance(value, int):
                return value
            if isinstance(value, float):
                return int(value) if value.is_integer() else _MISSING
            if isinstance(value, str):
                return int(value.strip())
            return _MISSING
        if field_type is FieldType.FLOAT:
            if isinstance(value, bool):
                return _MISSING
            if isinstance(value, (int, float)):
                return float(value)
            if isinstance(value, str):
                return float(value.strip())
            return _MISSING
        if field_type is FieldType.BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in _TRUE:
                    return True
                if lowered in _FALSE:
                    return False
            return _MISSING
        if field_type is FieldType.UUID:
            if isinstance(value, uuid.UUID):
                return value
            return uuid.UUID(str(value)) if isinstance(value, str) else _MISSING
        if field_type is FieldType.DATETIME:
            if isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value) if isinstance(value, str) else _MISSING
        if field_type is FieldType.DATE:
            if isinstance(value, datetime):
                return value.date()
            if isinstance(value, date):
                return value
            return date.fromisoformat(value) if isinstance(value, str) else _MISSING
        if field_type is FieldType.BYTES:
            if isinstance(value, (bytes, bytearray, memoryview)):
                return bytes(value)
            return _MISSING
        if field_type is FieldType.JSON:
            if isinstance(value, (dict, list)):
                return value
            if isinstance(value, str):
                decoded = json.loads(value)
                return decoded if isinstance(decoded, (dict, list)) else _MISSING
            return _MISSING
    except ValueError:
        return _MISSING
    return value


class Changeset:
    """Pending changes for one entity type plus accumulated validation errors.

    Params are cast by each field's semantic type; values that cannot be
    cast are recorded as ``"invalid value type"`` errors and unknown keys
    are ignored. Every method returns a new changeset.

    Example:
        >>> cs = Changeset(User, {"name": "Alice", "age": "30"})
        >>> cs = cs.validate_required("name", "email")
        >>> cs.is_valid
        False
        >>> cs.errors
        {'email': 'is required'}
    """

    __slots__ = ("model", "changes", "errors")

    model: type[Base]
    changes: Mapping[str, Any]
    errors: Mapping[str, str]

    def __init__(self, model: type[Base], params: Mapping[str, Any] | None = None) -> None:
        changes: dict[str, Any] = {}
        errors: dict[str, str] = {}
        params = params or {}
        for name, col_info in model.__columns__.items():
            if name not in params:
                continue
            _apply(changes, errors, name, col_info, params[name])
        self._set(model, changes, errors)

    def _set(self, model: type[Base], changes: dict[str, Any], errors: dict[str, str]) -> None:
        object.__setattr__(self, "model", model)
        object.__setattr__(self, "changes", MappingProxyType(changes))
        object.__setattr__(self, "errors", MappingProxyType(errors))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Changeset is immutable")

    def __repr__(self) -> str:
        return (
            f"Changeset({self.model.__name__}, changes={dict(self.changes)!r}, "
            f"errors={dict(self.errors)!r})"
        )

    def _evolve(self, changes: dict[str, Any], errors: dict[str, str]) -> Changeset:
        clone = object.__new__(Changeset)
        clone._set(self.model, changes, errors)
        return clone

    @property
    def target_table(self) -> str:
        return self.model.__tablename__

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def put(self, field: str, value: Any) -> Changeset:
        """Set one change, casting it like the constructor does."""
        col_info = self.model.__columns__.get(field)
        if col_info is None:
            return self
        changes = dict(self.changes)
        errors = dict(self.errors)
        _apply(changes, errors, field, col_info, value)
        return self._evolve(changes, errors)

    def validate_required(self, *fields: str) -> Changeset:
        errors = dict(self.errors)
        for field in fields:
            if self.changes.get(field) is None:
                _add(errors, field, REQUIRED)
        return self._evolve(dict(self.changes), errors)

    def validate_length(self, field: str, *, min: int | None = None, max: int | None = None) -> Changeset:
        """Check the length of a string (or list) change, when present."""
        value = self.changes.get(field)
        if value is None:
            return self
        errors = dict(self.errors)
        if min is not None and len(value) < min:
            _add(errors, field, f"should be at least {min} character(s)")
        if max is not None and len(value) > max:
            _add(errors, field, f"should be at most {max} character(s)")
        return self._evolve(dict(self.changes), errors)

    def add_error(self, field: str, message: str) -> Changeset:
        errors = dict(self.errors)
        _add(errors, field, message)
        return self._evolve(dict(self.changes), errors)

    def raise_if_invalid(self) -> None:
        if not self.is_valid:
            raise InvalidChangesetError(dict(self.errors))

    def column_values(self) -> dict[str, Any]:
        """Changes keyed by database column, encoded for binding."""
        columns = self.model.__columns__
        return {columns[name].column: columns[name].encode(value) for name, value in self.changes.items()}


def _apply(
    changes: dict[str, Any], errors: dict[str, str], name: str, col_info: ColumnInfo, value: Any
) -> None:
    if value is None and not col_info.nullable:
        # NULL is never bound to a NOT NULL column; defaulted ones fall back to DEFAULT
        changes.pop(name, None)
        if col_info.required:
            _add(errors, name, REQUIRED)
        return
    cast = cast_value(col_info, value)
    if cast is _MISSING:
        _add(errors, name, INVALID_TYPE)
    else:
        changes[name] = cast


def _add(errors: dict[str, str], field: str, message: str) -> None:
    if field in errors:
        errors[field] = f"{errors[field]}; {message}"
    else:
        errors[field] = message
