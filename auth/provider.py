"""
auth/provider.py -- SchemaAuthProvider, the single entry point for a realm.

Wires the realm config, the schema facade and the three engines together and
exposes them as one API to the host application's auth framework.

Usage:
    schema = SqlSchema("sqlite:///auth.db", reflect=True)
    provider = SchemaAuthProvider({"roles_key": "roles"}, schema)
    if provider.authenticate_user("dave", "beer", lastlogin="last_login"):
        roles = provider.get_user_roles("dave")          # ["BeerDrinker", ...]
    provider.set_user_details("dave", {"roles": {"BeerDrinker": 1}})

The realm config is resolved once, in __init__, so a misconfigured realm
fails at startup (ConfigError) rather than on the first login. The config is
immutable afterwards; the provider keeps no other state between calls.

`schemas` is either one Schema or a mapping of schema name -> Schema for
multi-schema deployments; the realm's schema_name picks the entry.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from auth.credentials import CredentialEngine
from auth.lookup import UserLookup
from auth.models import Found, LookupResult, NotFound, UserDetails
from auth.passwords import PasswordHasher
from auth.roles import RoleResolver
from auth.session import MemorySessionStore, SessionStore
from core.errors import ConfigError
from datastore.facade import Schema
from realm.config import DEFAULT_SCHEMA_NAME, RealmConfig, resolve_realm_config

logger = logging.getLogger("realmauth.auth.provider")


def _select_schema(schemas: Schema | Mapping[str, Schema], schema_name: str | None) -> Schema:
    if not isinstance(schemas, Mapping):
        return schemas
    name = schema_name or DEFAULT_SCHEMA_NAME
    if name in schemas:
        return schemas[name]
    if schema_name is None and len(schemas) == 1:
        return next(iter(schemas.values()))
    raise ConfigError(f"No schema named {name!r} is available")


class SchemaAuthProvider:
    def __init__(
        self,
        realm_settings: Mapping[str, Any] | RealmConfig | None,
        schemas: Schema | Mapping[str, Schema],
        hasher: PasswordHasher | None = None,
        session: SessionStore | None = None,
    ) -> None:
        if isinstance(realm_settings, RealmConfig):
            schema_name = realm_settings.schema_name
        else:
            schema_name = (realm_settings or {}).get("schema_name")
        self.schema = _select_schema(schemas, schema_name)
        self.config = resolve_realm_config(realm_settings, self.schema)
        self.hasher = hasher or PasswordHasher()
        # An unsupported algorithm fails here, not on the first password change.
        self.hasher.check_algorithm(self.config.encryption_algorithm)
        self.session = session if session is not None else MemorySessionStore()

        self.lookup = UserLookup(self.config, self.schema)
        self.roles = RoleResolver(self.config, self.schema, self.lookup)
        self.credentials = CredentialEngine(
            self.config, self.schema, self.lookup, self.roles, self.hasher, self.session
        )
        logger.debug(
            "Realm resolved: users=%s roles=%s user_roles=%s",
            self.config.users_resultset,
            self.config.roles_resultset,
            self.config.user_roles_resultset,
        )

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate_user(self, username: str, password: str, lastlogin: str | None = None) -> bool | NotFound:
        return self.credentials.authenticate(username, password, lastlogin=lastlogin)

    def match_password(self, password: str | None, stored: str | None) -> bool:
        return self.hasher.match(password, stored)

    def encrypt_password(self, password: str, algorithm: str | None = None) -> str:
        return self.hasher.hash(password, algorithm or self.config.encryption_algorithm)

    def password_expired(self, user: Mapping[str, Any]) -> bool:
        return self.credentials.password_expired(user)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_user(self, username: str | None) -> LookupResult[UserDetails]:
        """Details of `username` as Found(details) or NotFound("user", username)."""
        details = self.credentials.get_user_details(username)
        return Found(details) if details is not None else NotFound("user", username)

    def get_user_details(self, username: str | None) -> UserDetails | None:
        return self.credentials.get_user_details(username)

    def get_user_roles(self, username: str | None) -> list[str] | NotFound:
        return self.roles.get_user_roles(username)

    def get_user_by_code(self, code: str | None) -> str | None:
        return self.credentials.get_user_by_code(code)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def create_user(self, fields: Mapping[str, Any] | None = None, **extra: Any) -> UserDetails | None:
        return self.credentials.create_user({**(fields or {}), **extra})

    def set_user_details(
        self, username: str | None, fields: Mapping[str, Any] | None = None, **extra: Any
    ) -> UserDetails | None:
        return self.credentials.set_user_details(username, {**(fields or {}), **extra})

    def set_user_password(self, username: str, password: str) -> UserDetails | None:
        return self.credentials.set_user_password(username, password)
