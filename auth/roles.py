"""
auth/roles.py -- Role Resolution Engine.

Roles are read by walking User -> UserRole -> Role through the realm's
relationship names. Order is whatever order the store returns the join rows
in (primary key order for datastore.store.SqlSchema); no sort is applied.
"""

from __future__ import annotations

import logging
from typing import Any

from auth.lookup import UserLookup
from auth.models import NotFound
from core.errors import ConfigError
from datastore.facade import Record, Relationship, Schema
from realm.config import RealmConfig

logger = logging.getLogger("realmauth.auth.roles")


class RoleResolver:
    def __init__(self, config: RealmConfig, schema: Schema, lookup: UserLookup) -> None:
        self.config = config
        self.schema = schema
        self.lookup = lookup

    def prefetch_options(self) -> dict[str, Any]:
        return {"prefetch": {self.config.user_user_roles_relationship: self.config.role_relationship}}

    def get_user_roles(self, username: str | None) -> list[str] | NotFound:
        """Role names of `username`, or NotFound if there is no such (valid) user."""
        result = self.lookup.find_user(username, self.prefetch_options())
        if not result:
            logger.debug("No such user %s when looking for roles", username)
            return result
        return self.roles_for(result.value)

    def roles_for(self, user: Record) -> list[str]:
        roles = []
        for user_role in user.related(self.config.user_user_roles_relationship):
            role = user_role.related(self.config.role_relationship)
            if role is not None:
                roles.append(role[self.config.roles_role_column])
        return roles

    def all_roles(self) -> list[Record]:
        return self.schema.resultset(self.config.roles_resultset).all()

    def join_relationship(self, name: str) -> Relationship:
        for rel in self.schema.list_relationships(self.config.user_roles_resultset):
            if rel.name == name:
                return rel
        raise ConfigError(f"Relationship {name!r} is not declared on {self.config.user_roles_resultset}")

    def link_fields(self, user: Record, role: Record) -> dict[str, Any]:
        """Column values of a join row linking `user` and `role`.

        Taken from the join entity's belongs-to conditions, e.g. {"id": "user_id"}
        on the user relationship gives {"user_id": user["id"]}.
        """
        fields: dict[str, Any] = {}
        for rel_name, record in (
            (self.config.user_relationship, user),
            (self.config.role_relationship, role),
        ):
            for target_col, join_col in self.join_relationship(rel_name).condition.items():
                fields[join_col] = record[target_col]
        return fields
