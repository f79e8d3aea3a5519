"""
Schema models (DTOs) for the store.

This module is intentionally lightweight:
- No DB connection knowledge
- No SQL
- Pure dataclasses + small validation helpers
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Collection, index and field names end up inside quoted SQL identifiers and
# JSON paths, so keep them to a conservative alphabet.
_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

Record = dict[str, Any]


def validate_name(kind: str, value: str) -> str:
    """Return `value` unchanged, or raise ValueError if it is not a safe name."""
    if not _NAME_RE.match(value):
        raise ValueError(f"Invalid {kind} name: {value!r}")
    return value


class KeyPolicy(Enum):
    """How a collection's primary key is obtained."""

    # The key is read from a field every record carries.
    EXPLICIT = "explicit"
    # The engine assigns a monotonically increasing integer.
    AUTO_INCREMENT = "auto_increment"


class UpdateResult(Enum):
    """Outcome of a field-merge update."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    READ_FAILED = "read_failed"


@dataclass(frozen=True, slots=True)
class IndexSchema:
    """Non-unique equality index over one record field."""

    name: str
    field: str

    def __post_init__(self) -> None:
        validate_name("index", self.name)
        validate_name("field", self.field)


@dataclass(frozen=True, slots=True)
class CollectionSchema:
    """
    Static definition of a collection.

    Notes:
    - `key_field` names the record field holding the primary key. For
      AUTO_INCREMENT collections the engine fills it in on read.
    - `temporal_fields` are coerced from ISO strings to `datetime` when a
      snapshot is imported.
    """

    name: str
    key_field: str
    key_policy: KeyPolicy = KeyPolicy.EXPLICIT
    indexes: tuple[IndexSchema, ...] = ()
    temporal_fields: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        validate_name("collection", self.name)
        validate_name("field", self.key_field)
        seen: set[str] = set()
        for index in self.indexes:
            if index.name in seen:
                raise ValueError(f"Duplicate index {index.name!r} on {self.name!r}")
            if index.field == self.key_field:
                raise ValueError(
                    f"Index {index.name!r} on {self.name!r} duplicates the primary key"
                )
            seen.add(index.name)

    @property
    def auto_increment(self) -> bool:
        return self.key_policy is KeyPolicy.AUTO_INCREMENT

    def get_index(self, name: str) -> IndexSchema | None:
        for index in self.indexes:
            if index.name == name:
                return index
        return None

    def index_sql_name(self, index: IndexSchema) -> str:
        """SQLite index names are global, so prefix them with the collection."""
        return f"idx_{self.name}__{index.name}"


@dataclass(frozen=True, slots=True)
class DatabaseSchema:
    """The full set of declared collections, in declaration order."""

    collections: tuple[CollectionSchema, ...]
    _by_name: dict[str, CollectionSchema] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        for collection in self.collections:
            if collection.name in self._by_name:
                raise ValueError(f"Duplicate collection {collection.name!r}")
            self._by_name[collection.name] = collection

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.collections)

    def get(self, name: str) -> CollectionSchema | None:
        return self._by_name.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self.collections)
