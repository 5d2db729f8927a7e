"""
realm/config.py -- Resolve sparse realm settings into an immutable RealmConfig.

A realm is configured with a flat mapping of options, typically read from a
JSON file or handed over by the host application. Every option is optional:

    {
        "users_source": "user",              # or legacy "users_table"
        "roles_source": "role",              # or legacy "roles_table"
        "user_roles_source": "user_role",    # or legacy "user_roles_table"
        "users_resultset": "User",           # default: camelize(users_source)
        "users_username_column": "username",
        "users_password_column": "password",
        "roles_role_column": "role",
        "users_lastlogin_column": "lastlogin",
        "users_pwresetcode_column": "pw_reset_code",
        "users_pwchanged_column": null,
        "user_valid_conditions": {"deleted": 0},
        "roles_key": "roles",
        "password_expiry_days": 90,
        "encryption_algorithm": "bcrypt",
        "schema_name": "default"
    }

resolve_realm_config() validates the mapping (pydantic), applies defaults,
checks the entities exist in the schema and settles the four relationship
names (realm/relationships.py). The result is a frozen dataclass: nothing
mutates it after construction, and user_valid_conditions is read-only at
every depth (valid_conditions() hands out mutable copies). Resolution is idempotent -- resolving
config.to_settings() again yields an equal config.

Layer rule: realm/ imports from core/ and datastore/ only.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from core.errors import ConfigError
from datastore.facade import Schema, camelize
from realm import relationships

DEFAULT_SCHEMA_NAME = "default"
DEFAULT_ENCRYPTION_ALGORITHM = "bcrypt"


def _freeze(value: Any) -> Any:
    """Read-only copy: mappings become MappingProxyType, lists become tuples, at every depth."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    """Plain, mutable deep copy of a value built by _freeze()."""
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_thaw(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Raw settings
# ---------------------------------------------------------------------------


class RealmSettings(BaseModel):
    """Validated, still-sparse realm settings. None means "use the default".

    Unknown keys are ignored so the same mapping can carry options meant for
    the host application (e.g. "provider").
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    schema_name: Optional[str] = None

    users_source: Optional[str] = None
    roles_source: Optional[str] = None
    user_roles_source: Optional[str] = None
    # Legacy spellings, consulted only when the *_source key is unset.
    users_table: Optional[str] = None
    roles_table: Optional[str] = None
    user_roles_table: Optional[str] = None

    users_resultset: Optional[str] = None
    roles_resultset: Optional[str] = None
    user_roles_resultset: Optional[str] = None

    users_username_column: Optional[str] = None
    users_password_column: Optional[str] = None
    roles_role_column: Optional[str] = None
    users_lastlogin_column: Optional[str] = None
    users_pwresetcode_column: Optional[str] = None
    users_pwchanged_column: Optional[str] = None

    user_user_roles_relationship: Optional[str] = None
    role_user_roles_relationship: Optional[str] = None
    user_relationship: Optional[str] = None
    role_relationship: Optional[str] = None

    user_valid_conditions: dict[str, Any] = Field(default_factory=dict)
    roles_key: Optional[str] = None
    password_expiry_days: Optional[int] = Field(default=None, ge=0)
    encryption_algorithm: Optional[str] = None


# ---------------------------------------------------------------------------
# Resolved config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RealmConfig:
    """Fully resolved mapping of the provider's concepts onto one concrete schema."""

    schema_name: str

    users_source: str
    roles_source: str
    user_roles_source: str
    users_resultset: str
    roles_resultset: str
    user_roles_resultset: str

    users_username_column: str
    users_password_column: str
    roles_role_column: str
    users_lastlogin_column: str
    users_pwresetcode_column: str

    user_user_roles_relationship: str
    role_user_roles_relationship: str
    user_relationship: str
    role_relationship: str

    encryption_algorithm: str
    users_pwchanged_column: Optional[str] = None
    roles_key: Optional[str] = None
    password_expiry_days: Optional[int] = None
    user_valid_conditions: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def to_settings(self) -> dict[str, Any]:
        """Return the config as a plain, complete settings mapping."""
        settings = {name: getattr(self, name) for name in self.__dataclass_fields__}
        settings["user_valid_conditions"] = self.valid_conditions()
        return settings

    def valid_conditions(self) -> dict[str, Any]:
        """A fresh, mutable copy of user_valid_conditions."""
        return _thaw(self.user_valid_conditions)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _validate(raw_settings: Mapping[str, Any] | RealmConfig | None) -> RealmSettings:
    if isinstance(raw_settings, RealmConfig):
        raw_settings = raw_settings.to_settings()
    try:
        return RealmSettings.model_validate(dict(raw_settings or {}))
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid realm settings: {exc}") from exc


def resolve_realm_config(raw_settings: Mapping[str, Any] | RealmConfig | None, schema: Schema) -> RealmConfig:
    """Resolve raw realm settings against `schema`. Raises ConfigError on any misconfiguration."""
    settings = _validate(raw_settings)

    users_source = settings.users_source or settings.users_table or "user"
    roles_source = settings.roles_source or settings.roles_table or "role"
    user_roles_source = settings.user_roles_source or settings.user_roles_table or "user_role"

    users_resultset = settings.users_resultset or camelize(users_source)
    roles_resultset = settings.roles_resultset or camelize(roles_source)
    user_roles_resultset = settings.user_roles_resultset or camelize(user_roles_source)

    for resultset in (users_resultset, roles_resultset, user_roles_resultset):
        if not schema.has_resultset(resultset):
            raise ConfigError(f"Resultset {resultset!r} does not exist in schema")

    if settings.password_expiry_days and not settings.users_pwchanged_column:
        raise ConfigError("password_expiry_days is set but users_pwchanged_column is not configured")

    return RealmConfig(
        schema_name=settings.schema_name or DEFAULT_SCHEMA_NAME,
        users_source=users_source,
        roles_source=roles_source,
        user_roles_source=user_roles_source,
        users_resultset=users_resultset,
        roles_resultset=roles_resultset,
        user_roles_resultset=user_roles_resultset,
        users_username_column=settings.users_username_column or "username",
        users_password_column=settings.users_password_column or "password",
        roles_role_column=settings.roles_role_column or "role",
        users_lastlogin_column=settings.users_lastlogin_column or "lastlogin",
        users_pwresetcode_column=settings.users_pwresetcode_column or "pw_reset_code",
        users_pwchanged_column=settings.users_pwchanged_column or None,
        user_user_roles_relationship=relationships.many_to_join(
            schema, users_resultset, user_roles_resultset, settings.user_user_roles_relationship
        ),
        role_user_roles_relationship=relationships.many_to_join(
            schema, roles_resultset, user_roles_resultset, settings.role_user_roles_relationship
        ),
        user_relationship=relationships.join_to_single(
            schema, user_roles_resultset, users_resultset, settings.user_relationship
        ),
        role_relationship=relationships.join_to_single(
            schema, user_roles_resultset, roles_resultset, settings.role_relationship
        ),
        encryption_algorithm=settings.encryption_algorithm or DEFAULT_ENCRYPTION_ALGORITHM,
        roles_key=settings.roles_key or None,
        password_expiry_days=settings.password_expiry_days or None,
        user_valid_conditions=_freeze(settings.user_valid_conditions),
    )


def load_realm_settings(path: str | Path, realm_name: str) -> dict[str, Any]:
    """Read one realm's raw settings from a JSON file.

    The file holds {"realms": {"<name>": {...}}}. A missing realm is a
    ConfigError; a missing or unreadable file too.
    """
    file_path = Path(path).resolve()
    if not file_path.is_file():
        raise ConfigError(f"Realm settings file {str(path)!r} is not a readable file")
    try:
        document = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Could not read realm settings from {str(path)!r}: {exc}") from exc
    realms = document.get("realms") if isinstance(document, dict) else None
    if not isinstance(realms, dict) or realm_name not in realms:
        raise ConfigError(f"Realm {realm_name!r} is not defined in {str(path)!r}")
    return dict(realms[realm_name] or {})
