"""Relationship definitions for entity models."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from querykit.errors import InvalidSchemaError

if TYPE_CHECKING:
    from querykit.base import Base


# Model registry - maps table names and class names to model classes.
# Populated once per class at declaration time.
_model_registry: dict[str, type[Base]] = {}


def register_model(model_cls: type[Base]) -> None:
    """Register a model class for relationship resolution."""
    _model_registry[model_cls.__tablename__] = model_cls
    _model_registry[model_cls.__name__] = model_cls


def get_model(name: str) -> type[Base] | None:
    """Get a model class by table name or class name."""
    return _model_registry.get(name)


class RelationshipKind(enum.Enum):
    HAS_MANY = "has_many"
    HAS_ONE = "has_one"
    BELONGS_TO = "belongs_to"
    MANY_TO_MANY = "many_to_many"


@dataclass
class RelationshipInfo:
    """One named edge of the entity graph.

    The owner's ``local_key`` values are matched against the related table's
    ``foreign_key`` column:

    * has_many / has_one: ``local_key`` is the owner's key (normally its
      primary key), ``foreign_key`` the referencing column on the related table.
    * belongs_to: ``local_key`` is the referencing column on the owner,
      ``foreign_key`` the referenced column (normally the related primary key).
    """

    kind: RelationshipKind
    target: str | type[Base]
    name: str | None = None
    local_key: str | None = None
    foreign_key: str | None = None
    through: str | None = None  # junction table, many_to_many only

    _owner: type[Base] | None = field(default=None, repr=False)
    _target_model: type[Base] | None = field(default=None, repr=False)

    @property
    def is_collection(self) -> bool:
        return self.kind in (RelationshipKind.HAS_MANY, RelationshipKind.MANY_TO_MANY)

    @property
    def related_model(self) -> type[Base]:
        if self._target_model is None:
            raise InvalidSchemaError(f"Relationship '{self.name}' is not resolved")
        return self._target_model

    @property
    def related_table(self) -> str:
        return self.related_model.__tablename__

    def resolve(self, owner: type[Base]) -> RelationshipInfo:
        """Resolve the target model and fill in default key columns."""
        if self._target_model is not None:
            return self

        target = self.target if isinstance(self.target, type) else get_model(self.target)
        if target is None:
            raise InvalidSchemaError(
                f"{owner.__name__}.{self.name} references unknown model {self.target!r}"
            )

        self._owner = owner
        self._target_model = target

        if self.kind is RelationshipKind.MANY_TO_MANY:
            # Only recorded; preloading many-to-many is not supported
            return self

        if self.kind is RelationshipKind.BELONGS_TO:
            if self.local_key is None:
                self.local_key = _find_fk_column(owner, target) or f"{self.name}_id"
            if self.foreign_key is None:
                self.foreign_key = target.primary_key_column()
        else:
            if self.local_key is None:
                self.local_key = owner.primary_key_column()
            if self.foreign_key is None:
                self.foreign_key = (
                    _find_fk_column(target, owner) or f"{_singular(owner.__tablename__)}_id"
                )

        return self


def _find_fk_column(model: type[Base], references: type[Base]) -> str | None:
    """Find the column on ``model`` declared as a foreign key to ``references``."""
    for col_info in model.__columns__.values():
        if col_info.foreign_key and col_info.foreign_key.table == references.__tablename__:
            return col_info.column
    return None


def _singular(table: str) -> str:
    return table[:-1] if table.endswith("s") else table


def has_many(target: str | type[Base], *, foreign_key: str | None = None, local_key: str | None = None) -> Any:
    """Declare a one-to-many relationship.

    Example:
        >>> class User(Base):
        ...     posts = has_many("Post", foreign_key="user_id")
    """
    return RelationshipInfo(RelationshipKind.HAS_MANY, target, local_key=local_key, foreign_key=foreign_key)


def has_one(target: str | type[Base], *, foreign_key: str | None = None, local_key: str | None = None) -> Any:
    """Declare a one-to-one relationship where the related row holds the key.

    Example:
        >>> class User(Base):
        ...     profile = has_one("Profile", foreign_key="user_id")
    """
    return RelationshipInfo(RelationshipKind.HAS_ONE, target, local_key=local_key, foreign_key=foreign_key)


def belongs_to(target: str | type[Base], *, local_key: str | None = None, foreign_key: str | None = None) -> Any:
    """Declare a many-to-one relationship where this row holds the key.

    Example:
        >>> class Post(Base):
        ...     user = belongs_to("User", local_key="user_id")
    """
    return RelationshipInfo(RelationshipKind.BELONGS_TO, target, local_key=local_key, foreign_key=foreign_key)


def many_to_many(target: str | type[Base], *, through: str) -> Any:
    """Declare a many-to-many relationship through a junction table.

    The declaration is accepted so schemas can describe the edge, but
    preloading it raises NotImplementedFeatureError.
    """
    return RelationshipInfo(RelationshipKind.MANY_TO_MANY, target, through=through)
