"""
datastore/facade.py -- The narrow data-access contract the provider consumes.

The provider never talks SQL. It asks a Schema for a ResultSet by entity
name, narrows it with search(), and reads/writes Records. Anything that
implements these protocols can back a realm: datastore/store.py is the
SQLAlchemy Core implementation shipped with the project.

Filter syntax accepted by ResultSet.search():
    {"username": "dave"}                  equality
    {"deleted": None}                     IS NULL
    {"active": {"!=": 0}}                 operator: = != < <= > >= like in "not in"
    {"user.username": "dave"}             column on a related entity; the
                                          "user" relationship is joined
    {"-or": [{...}, {...}]}               any of the groups

Layer rule: no imports from auth/ or realm/.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

MULTI = "many"
SINGLE = "single"

JOIN_LEFT = "left"
JOIN_INNER = "inner"


def camelize(name: str) -> str:
    """Turn a snake_case source name into its CamelCase entity name.

    "user_role" -> "UserRole", "users" -> "Users". Already camelized names
    pass through unchanged, which keeps the transform idempotent.
    """
    return "".join(part[:1].upper() + part[1:] for part in name.split("_") if part)


@dataclass(frozen=True)
class Relationship:
    """Structural description of one named relationship between two entities.

    condition maps a column on the target entity to a column on the source
    entity, e.g. a User.user_roles has_many is {"user_id": "id"} and the
    matching UserRole.user belongs_to is {"id": "user_id"}.
    """

    name: str
    source: str
    target: str
    multiplicity: str  # MULTI | SINGLE
    join_type: str  # JOIN_LEFT | JOIN_INNER
    condition: Mapping[str, str] = field(default_factory=dict)


class Record(Protocol):
    """One stored row. Behaves as a read-only mapping of column -> value."""

    def __getitem__(self, column: str) -> Any: ...

    def get(self, column: str, default: Any = None) -> Any: ...

    def as_dict(self) -> dict[str, Any]: ...

    def related(self, relationship: str) -> Any:
        """Return a list of Records for a MULTI relationship, a Record or None for SINGLE."""
        ...

    def update(self, fields: Mapping[str, Any]) -> None: ...


class ResultSet(Protocol):
    """A lazy, restartable view over one entity's rows.

    No query runs until the set is iterated. Every iteration runs a fresh
    query, so a ResultSet can be reused after the underlying data changed.
    """

    def search(self, filters: Mapping[str, Any] | None = None, options: Mapping[str, Any] | None = None) -> ResultSet: ...

    def __iter__(self) -> Iterator[Record]: ...

    def first(self) -> Record | None: ...

    def all(self) -> list[Record]: ...

    def count(self) -> int: ...

    def create(self, fields: Mapping[str, Any]) -> Record: ...

    def update(self, fields: Mapping[str, Any]) -> int: ...

    def delete(self) -> int: ...


class Schema(Protocol):
    """Entry point of the facade: entity lookup, relationship metadata, transactions."""

    def resultset(self, name: str) -> ResultSet: ...

    def has_resultset(self, name: str) -> bool: ...

    def list_relationships(self, name: str) -> list[Relationship]: ...

    def transaction(self) -> AbstractContextManager[Any]: ...

    def parse_datetime(self, value: Any) -> datetime | None: ...

    def now(self) -> datetime: ...
