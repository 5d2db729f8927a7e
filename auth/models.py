"""
auth/models.py -- Result types returned by the provider's lookup paths.

Pattern: Data class (pure data container, zero logic).

A lookup has exactly three outcomes and each has its own shape:
  Found(value)        the record exists
  NotFound(kind, key) no such record -- a normal, falsy result, never raised
  exception           something is wrong (ValidationError, ConfigError,
                      StoreError from core/errors.py)

So "no such user" can never be confused with "the database is down", and
"user has zero roles" ([]) is distinct from "no such user" (NotFound).

Users themselves are plain dicts of column -> value (UserDetails): the column
set belongs to whatever schema the realm is mapped onto.

Layer rule: no imports from realm/ or datastore/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")

UserDetails = dict[str, Any]


@dataclass(frozen=True)
class Found(Generic[T]):
    value: T

    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class NotFound:
    """Soft absent result. kind names what was looked up ("user", "reset_code")."""

    kind: str
    key: Any = None

    def __bool__(self) -> bool:
        return False


LookupResult = Union[Found[T], NotFound]
