"""Column and field definitions for entity models."""

from __future__ import annotations

import enum
import json
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class JSON:
    """Marker class for JSON/JSONB columns.

    Values are sent as JSON text and decoded back into dict/list when read.

    Example:
        >>> class Product(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     attributes: Mapped[dict] = mapped_column(JSON)
    """

    pass


class Mapped(Generic[T]):
    """Type annotation wrapper indicating a database-mapped column.

    Example:
        >>> class User(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str]
        ...     age: Mapped[int | None] = mapped_column(nullable=True)
    """

    pass


class FieldType(enum.Enum):
    """Semantic type of a column, used for decoding and changeset casting."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    UUID = "uuid"
    DATETIME = "datetime"
    DATE = "date"
    BYTES = "bytes"
    JSON = "json"

    @classmethod
    def from_python_type(cls, python_type: Any) -> FieldType:
        """Map an annotation's inner type to a semantic type."""
        if python_type is dict or python_type is list:
            return cls.JSON
        # bool is checked before int because bool subclasses int
        mapping: list[tuple[type, FieldType]] = [
            (bool, cls.BOOLEAN),
            (int, cls.INTEGER),
            (float, cls.FLOAT),
            (str, cls.STRING),
            (uuid.UUID, cls.UUID),
            (datetime, cls.DATETIME),
            (date, cls.DATE),
            (bytes, cls.BYTES),
        ]
        for py_type, field_type in mapping:
            if python_type is py_type:
                return field_type
        return cls.STRING


@dataclass
class ForeignKey:
    """Defines a foreign key reference to another table.

    Args:
        target: The target column in format "table.column"

    Example:
        >>> class Post(Base):
        ...     user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    """

    target: str

    @property
    def table(self) -> str:
        """Get the target table name."""
        return self.target.split(".")[0]

    @property
    def column(self) -> str:
        """Get the target column name."""
        parts = self.target.split(".")
        return parts[1] if len(parts) > 1 else "id"


@dataclass
class ColumnInfo:
    """One entry of an entity's field descriptor table."""

    name: str | None = None
    column_name: str | None = None
    python_type: type | None = None
    field_type: FieldType | None = None
    primary_key: bool = False
    nullable: bool = False
    default: Any = None
    foreign_key: ForeignKey | None = None
    autoincrement: bool | None = None
    is_json: bool = False

    @property
    def column(self) -> str:
        """Database column name (defaults to the attribute name)."""
        return self.column_name or self.name or ""

    @property
    def required(self) -> bool:
        """Whether a value must be supplied on insert."""
        if self.nullable or self.default is not None:
            return False
        return not (self.primary_key and self.autoincrement)

    @property
    def semantic_type(self) -> FieldType:
        if self.is_json:
            return FieldType.JSON
        return self.field_type or FieldType.from_python_type(self.python_type)

    def decode(self, value: Any) -> Any:
        """Convert a raw driver value into the Python value for this field."""
        if value is None:
            return None
        field_type = self.semantic_type
        if field_type is FieldType.JSON and isinstance(value, (str, bytes)):
            try:
                return json.loads(value)
            except ValueError:
                return value
        if field_type is FieldType.UUID and isinstance(value, str):
            return uuid.UUID(value)
        if field_type is FieldType.BYTES and isinstance(value, memoryview):
            return value.tobytes()
        return value

    def encode(self, value: Any) -> Any:
        """Prepare a Python value to be bound as a statement parameter."""
        if value is None:
            return None
        if self.semantic_type is FieldType.JSON and isinstance(value, (dict, list)):
            return json.dumps(value)
        return value


def mapped_column(
    type_or_fk: type | ForeignKey | None = None,
    /,
    *,
    name: str | None = None,
    primary_key: bool = False,
    nullable: bool = False,
    default: Any = None,
    autoincrement: bool | None = None,
) -> Any:
    """Define a database column.

    Args:
        type_or_fk: Optional ForeignKey or JSON marker for this column
        name: Database column name when it differs from the attribute name
        primary_key: Whether this is a primary key column
        nullable: Whether NULL values are allowed
        default: Default value (can be callable)
        autoincrement: Whether the database generates the value (integer PKs)

    Example:
        >>> id: Mapped[int] = mapped_column(primary_key=True)
        >>> email: Mapped[str] = mapped_column(name="email_address")
        >>> user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
        >>> tags: Mapped[list] = mapped_column(JSON)
    """
    foreign_key = None
    is_json = False

    if isinstance(type_or_fk, ForeignKey):
        foreign_key = type_or_fk
    elif type_or_fk is JSON or (isinstance(type_or_fk, type) and issubclass(type_or_fk, JSON)):
        is_json = True

    # Primary keys are not nullable
    if primary_key:
        nullable = False
        if autoincrement is None:
            autoincrement = True

    return ColumnInfo(
        column_name=name,
        primary_key=primary_key,
        nullable=nullable,
        default=default,
        foreign_key=foreign_key,
        autoincrement=autoincrement,
        is_json=is_json,
    )
