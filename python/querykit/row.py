"""Immutable column-name to value mapping for a single fetched row."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any


class Row(Mapping[str, Any]):
    """One database row.

    Keys keep the column order of the result set. A Row is never modified
    after construction; ``with_value`` returns an enriched copy.

    Example:
        >>> row = Row({"id": 1, "name": "Alice"})
        >>> row["name"]
        'Alice'
        >>> row.with_value("posts", []) is row
        False
    """

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        object.__setattr__(self, "_data", dict(data or {}))

    @classmethod
    def from_record(cls, record: Any) -> Row:
        """Build a Row from a driver record (anything exposing ``items()``)."""
        return cls(dict(record.items()))

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Row is immutable")

    def __repr__(self) -> str:
        return f"Row({self._data!r})"

    def with_value(self, key: str, value: Any) -> Row:
        """Return a new Row with ``key`` set to ``value``."""
        data = dict(self._data)
        data[key] = value
        return Row(data)

    def to_dict(self) -> dict[str, Any]:
        """Return a plain mutable copy."""
        return dict(self._data)
