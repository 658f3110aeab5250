"""QueryKit - declarative queries, eager loading and transactions for PostgreSQL."""

from __future__ import annotations

from querykit.base import Base
from querykit.changeset import Changeset
from querykit.compiler import CompiledQuery, ConflictTarget, compile_select
from querykit.driver import create_engine
from querykit.errors import (
    DatabaseError,
    InvalidChangesetError,
    InvalidQueryError,
    InvalidRelationshipError,
    InvalidSchemaError,
    NotFoundError,
    NotImplementedFeatureError,
    QueryKitError,
    UnexpectedResultCountError,
)
from querykit.executor import Executor
from querykit.fields import JSON, FieldType, ForeignKey, Mapped, mapped_column
from querykit.preload import Preloader
from querykit.query import Condition, ConditionGroup, F, JoinKind, Query, select
from querykit.relationships import belongs_to, has_many, has_one, many_to_many
from querykit.repo import BoundQuery, IsolationLevel, Repo, TransactionRepo, TransactionState
from querykit.row import Row
from querykit.settings import EngineSettings, get_settings

__version__ = "0.1.0"

__all__ = [
    # Core
    "create_engine",
    "Repo",
    "TransactionRepo",
    "TransactionState",
    "IsolationLevel",
    "BoundQuery",
    "Executor",
    "Preloader",
    "Row",
    # Model definition
    "Base",
    "Mapped",
    "mapped_column",
    "ForeignKey",
    "JSON",
    "FieldType",
    "has_many",
    "has_one",
    "belongs_to",
    "many_to_many",
    "Changeset",
    # Query building
    "Query",
    "select",
    "F",
    "Condition",
    "ConditionGroup",
    "JoinKind",
    "ConflictTarget",
    "CompiledQuery",
    "compile_select",
    # Configuration
    "EngineSettings",
    "get_settings",
    # Errors
    "QueryKitError",
    "NotFoundError",
    "InvalidRelationshipError",
    "InvalidSchemaError",
    "InvalidQueryError",
    "UnexpectedResultCountError",
    "InvalidChangesetError",
    "NotImplementedFeatureError",
    "DatabaseError",
]
