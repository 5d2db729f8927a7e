"""
core/errors.py -- Exception taxonomy shared by every realmauth layer.

Three kinds of failure are surfaced as exceptions:

  ValidationError: the caller supplied insufficient input (e.g. no username
      on create/update). Fatal to the call.

  ConfigError: the realm is misconfigured (ambiguous relationship discovery,
      expiry configured without a changed-time column). Raised at realm
      construction wherever possible, otherwise at call time.

  StoreError: the underlying data access failed. Raised by datastore/ with
      the original SQLAlchemy exception chained as __cause__. Never retried.

"Not found" (unknown username, unknown reset code) is NOT an error. Lookups
return None or a NotFound result instead -- see auth/models.py.

Layer rule: core/ is the kernel. This module may not import from auth/,
realm/, or datastore/.
"""

from __future__ import annotations


class RealmAuthError(Exception):
    """Base class for all realmauth errors. `kind` is a stable machine-readable tag."""

    kind = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RealmAuthError):
    kind = "validation"


class ConfigError(RealmAuthError):
    kind = "config"


class StoreError(RealmAuthError):
    kind = "store"
