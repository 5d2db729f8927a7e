"""
auth/session.py -- Session store collaborator.

The provider touches the host application's session in exactly one place: on
a successful authenticate() with lastlogin requested, it writes the user's
previous last-login time under the caller's key. Anything with a
write(key, value) method can serve; MemorySessionStore is the in-process
implementation used by the CLI and the tests.
"""

from __future__ import annotations

from typing import Any, Protocol


class SessionStore(Protocol):
    def write(self, key: str, value: Any) -> None: ...


class MemorySessionStore:
    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    def write(self, key: str, value: Any) -> None:
        self._data[key] = value

    def read(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def clear(self) -> None:
        self._data.clear()
