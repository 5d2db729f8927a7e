"""
auth/lookup.py -- User Lookup Engine: filtered user queries for one realm.

Every user query goes through find_users() so the realm's
user_valid_conditions are applied uniformly: a user excluded by those
conditions cannot authenticate, has no roles and cannot be updated.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from auth.models import Found, LookupResult, NotFound
from datastore.facade import Record, ResultSet, Schema
from realm.config import RealmConfig

# Generic filter names mapped onto configured columns. Any other name is
# used as a literal column name (e.g. "id").
USERNAME = "username"
PW_RESET_CODE = "pw_reset_code"


class UserLookup:
    def __init__(self, config: RealmConfig, schema: Schema) -> None:
        self.config = config
        self.schema = schema

    def column_for(self, filter_field: str) -> str:
        if filter_field == USERNAME:
            return self.config.users_username_column
        if filter_field == PW_RESET_CODE:
            return self.config.users_pwresetcode_column
        return filter_field

    def find_users(self, filter_field: str, value: Any, options: Mapping[str, Any] | None = None) -> ResultSet:
        """Return a lazy ResultSet of valid users whose `filter_field` equals `value`.

        The valid-user conditions are merged first, so the lookup column wins
        if both name the same column. `options` (prefetch, join) pass through
        to the schema untouched.
        """
        filters = self.config.valid_conditions()
        filters[self.column_for(filter_field)] = value
        return self.schema.resultset(self.config.users_resultset).search(filters, options)

    def find_user(self, username: str | None, options: Mapping[str, Any] | None = None) -> LookupResult[Record]:
        """First valid user with this username, as Found(record) or NotFound."""
        if username is None or username == "":
            return NotFound("user", username)
        record = self.find_users(USERNAME, username, options).first()
        if record is None:
            return NotFound("user", username)
        return Found(record)
