"""Declarative base for entity models."""

from __future__ import annotations

import copy
import inspect
import sys
import types
import typing
from collections.abc import Mapping
from typing import Any, ClassVar

from querykit.errors import InvalidRelationshipError, InvalidSchemaError
from querykit.fields import ColumnInfo, FieldType, Mapped
from querykit.relationships import RelationshipInfo, register_model


class ModelMeta(type):
    """Metaclass that builds the field descriptor table of each model.

    The table is computed once, when the class is created; row mapping and
    statement compilation only ever loop over it.
    """

    def __new__(
        mcs,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        **kwargs: Any,
    ) -> ModelMeta:
        cls = super().__new__(mcs, name, bases, namespace, **kwargs)

        # Skip processing for the Base class itself
        if name == "Base" and not bases:
            return cls

        tablename = namespace.get("__tablename__")
        if tablename is None:
            tablename = name.lower() + "s"
        cls.__tablename__ = tablename  # type: ignore[attr-defined]

        columns: dict[str, ColumnInfo] = {}
        relationships: dict[str, RelationshipInfo] = {}

        # Inherited columns first, cloned so classes never share descriptors
        for base in reversed(bases):
            for col_name, col_info in getattr(base, "__columns__", {}).items():
                columns[col_name] = copy.copy(col_info)
            for rel_name, rel_info in getattr(base, "__relationships__", {}).items():
                relationships[rel_name] = copy.copy(rel_info)

        hints = _class_annotations(cls)

        for attr_name, hint in hints.items():
            if attr_name.startswith("_"):
                continue
            value = namespace.get(attr_name)
            if isinstance(value, RelationshipInfo):
                continue
            if isinstance(value, ColumnInfo):
                col = value
            elif attr_name in columns:
                continue
            elif _is_mapped(hint):
                col = ColumnInfo()
            else:
                continue
            python_type, optional = _unwrap_mapped(hint)
            col.name = attr_name
            col.python_type = python_type
            col.nullable = col.nullable or optional
            if col.field_type is None:
                col.field_type = FieldType.from_python_type(python_type)
            if col.field_type is FieldType.JSON:
                col.is_json = True
            columns[attr_name] = col

        for attr_name, attr_value in namespace.items():
            if attr_name.startswith("_"):
                continue
            if isinstance(attr_value, ColumnInfo) and attr_name not in columns:
                attr_value.name = attr_name
                columns[attr_name] = attr_value
            elif isinstance(attr_value, RelationshipInfo):
                attr_value.name = attr_name
                relationships[attr_name] = attr_value
                # Stored in __relationships__ so __getattr__ can handle access
                delattr(cls, attr_name)

        cls.__columns__ = columns  # type: ignore[attr-defined]
        cls.__column_fields__ = {c.column: n for n, c in columns.items()}  # type: ignore[attr-defined]
        cls.__relationships__ = relationships  # type: ignore[attr-defined]
        cls.__primary_key__ = next(  # type: ignore[attr-defined]
            (n for n, c in columns.items() if c.primary_key), None
        )

        register_model(cls)  # type: ignore[arg-type]
        return cls


def _class_annotations(cls: type) -> dict[str, Any]:
    """Collect resolved annotations across the MRO, one class at a time.

    Each class is resolved against its own module. A forward reference that
    cannot be resolved yet only loses its own entry instead of every hint of
    the class.
    """
    hints: dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        if klass is object:
            continue
        globalns = _module_namespace(klass)
        try:
            hints.update(inspect.get_annotations(klass, globals=globalns, eval_str=True))
        except _UNRESOLVED:
            hints.update(_resolve_each(klass, globalns))
    return hints


_UNRESOLVED = (NameError, AttributeError, SyntaxError, TypeError)


def _module_namespace(klass: type) -> dict[str, Any]:
    module = sys.modules.get(klass.__module__)
    globalns = dict(getattr(module, "__dict__", {})) if module else {}
    globalns.setdefault("Mapped", Mapped)
    globalns.setdefault("ClassVar", ClassVar)
    return globalns


def _resolve_each(klass: type, globalns: dict[str, Any]) -> dict[str, Any]:
    try:
        raw = inspect.get_annotations(klass)
    except NameError:
        return {}
    resolved: dict[str, Any] = {}
    for attr_name, annotation in raw.items():
        holder = type(klass.__name__, (), {"__annotations__": {attr_name: annotation}})
        try:
            resolved[attr_name] = inspect.get_annotations(holder, globals=globalns, eval_str=True)[attr_name]
        except _UNRESOLVED:
            resolved[attr_name] = None
    return resolved


def _is_mapped(hint: Any) -> bool:
    return typing.get_origin(hint) is Mapped


def _unwrap_mapped(hint: Any) -> tuple[Any, bool]:
    """Extract the inner type from Mapped[T] and whether it is optional."""
    inner = hint
    if typing.get_origin(hint) is Mapped:
        args = typing.get_args(hint)
        inner = args[0] if args else None

    origin = typing.get_origin(inner)
    if origin is typing.Union or origin is types.UnionType:
        args = typing.get_args(inner)
        non_none = [a for a in args if a is not type(None)]
        optional = len(non_none) != len(args)
        inner = non_none[0] if len(non_none) == 1 else None
        return _plain_type(inner), optional
    return _plain_type(inner), False


def _plain_type(tp: Any) -> Any:
    origin = typing.get_origin(tp)
    if origin in (list, dict):
        return origin
    return tp if isinstance(tp, type) else None


class Base(metaclass=ModelMeta):
    """Base class for all entity models.

    Example:
        >>> class User(Base):
        ...     __tablename__ = "users"
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str]
        ...     posts = has_many("Post", foreign_key="user_id")
    """

    __tablename__: ClassVar[str]
    __columns__: ClassVar[dict[str, ColumnInfo]]
    __column_fields__: ClassVar[dict[str, str]]
    __relationships__: ClassVar[dict[str, RelationshipInfo]]
    __primary_key__: ClassVar[str | None]

    _loaded_relationships: dict[str, Any]

    def __init__(self, **kwargs: Any) -> None:
        """Initialize a model instance with the given column values."""
        object.__setattr__(self, "_loaded_relationships", {})

        provided_keys = set(kwargs)
        for key, value in kwargs.items():
            if key in self.__columns__:
                setattr(self, key, value)
            elif key in self.__relationships__:
                self._loaded_relationships[key] = value
            else:
                raise TypeError(f"Unknown column or relationship: {key}")

        # Set defaults only for columns that were not provided.
        for col_name, col_info in self.__columns__.items():
            if col_name in provided_keys:
                continue
            if col_info.default is not None:
                default = col_info.default() if callable(col_info.default) else col_info.default
                setattr(self, col_name, default)
            elif col_info.nullable:
                setattr(self, col_name, None)
            # Database-generated columns (autoincrement PKs) stay unset

    def __repr__(self) -> str:
        pk = self.__primary_key__
        if pk and pk in self.__dict__:
            return f"<{self.__class__.__name__} {pk}={getattr(self, pk)!r}>"
        return f"<{self.__class__.__name__}>"

    def __getattr__(self, name: str) -> Any:
        """Handle access to relationship attributes."""
        if name.startswith("_"):
            if name == "_loaded_relationships":
                loaded: dict[str, Any] = {}
                object.__setattr__(self, "_loaded_relationships", loaded)
                return loaded
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

        if name in type(self).__relationships__:
            loaded = self._loaded_relationships
            if name in loaded:
                return loaded[name]
            raise AttributeError(
                f"Relationship '{name}' is not loaded. "
                "Preload it with Query.preload() or Repo.preload()."
            )

        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    # ========== Schema metadata ==========

    @classmethod
    def require_primary_key(cls) -> str:
        """Name of the primary key field, or InvalidSchemaError."""
        if cls.__primary_key__ is None:
            raise InvalidSchemaError(f"{cls.__name__} has no primary key")
        return cls.__primary_key__

    @classmethod
    def primary_key_column(cls) -> str:
        return cls.__columns__[cls.require_primary_key()].column

    @classmethod
    def column_names(cls) -> list[str]:
        """Declared database columns in declaration order."""
        return [col.column for col in cls.__columns__.values()]

    @classmethod
    def relationship(cls, name: str) -> RelationshipInfo:
        """Resolve a relationship by name or raise InvalidRelationshipError."""
        rel_info = cls.__relationships__.get(name)
        if rel_info is None:
            raise InvalidRelationshipError(name, cls.__name__)
        return rel_info.resolve(cls)

    # ========== Values ==========

    def value_of(self, column: str) -> Any:
        """Value of a database column on this instance (None when unset)."""
        field_name = self.__column_fields__.get(column, column)
        return self.__dict__.get(field_name)

    def column_values(self, *, include_generated: bool = False) -> dict[str, Any]:
        """Encoded column → value mapping for the fields set on this instance."""
        values: dict[str, Any] = {}
        for col_name, col_info in self.__columns__.items():
            if col_name not in self.__dict__:
                continue
            value = self.__dict__[col_name]
            if (
                not include_generated
                and col_info.primary_key
                and col_info.autoincrement
                and value is None
            ):
                continue
            values[col_info.column] = col_info.encode(value)
        return values

    def with_relationship(self, name: str, value: Any) -> Base:
        """Return a copy of this instance with ``name`` loaded as ``value``."""
        if name not in type(self).__relationships__:
            raise InvalidRelationshipError(name, type(self).__name__)
        clone = copy.copy(self)
        loaded = dict(self._loaded_relationships)
        loaded[name] = value
        object.__setattr__(clone, "_loaded_relationships", loaded)
        return clone

    def to_dict(self, include_relationships: bool = False) -> dict[str, Any]:
        """Convert model instance to a dictionary."""
        result = {}
        for col_name in self.__columns__:
            if col_name in self.__dict__:
                result[col_name] = self.__dict__[col_name]

        if include_relationships:
            for rel_name, rel_value in self._loaded_relationships.items():
                if isinstance(rel_value, list):
                    result[rel_name] = [item.to_dict(True) for item in rel_value]
                elif rel_value is not None:
                    result[rel_name] = rel_value.to_dict(True)
                else:
                    result[rel_name] = None

        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Base:
        """Create a model instance from a dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__columns__})

    @classmethod
    def _from_row(cls, row: Mapping[str, Any]) -> Base:
        """Build an instance from a database row, decoding each declared column.

        This is the only place raw column values become field values; it skips
        __init__ validation.
        """
        instance = object.__new__(cls)
        object.__setattr__(instance, "_loaded_relationships", {})
        for col_name, col_info in cls.__columns__.items():
            column = col_info.column
            if column in row:
                object.__setattr__(instance, col_name, col_info.decode(row[column]))
        return instance
