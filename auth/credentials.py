"""
auth/credentials.py -- Credential & Mutation Engine.

Authentication, password changes, user create/update with role
reconciliation, reset-code lookup and password expiry.

Failure semantics:
  - missing username on create/update  -> ValidationError
  - unknown user / unknown reset code   -> soft absent result, logged at DEBUG
  - wrong password                      -> False, never an exception
  - data store failure                  -> StoreError, propagated unchanged

Role reconciliation: set_user_details() with the realm's roles_key computes
the desired role set from the truthy keys of the supplied mapping and
applies only the difference -- join rows are created for added roles and
deleted for removed roles; roles in neither set are not touched. The whole
update runs in one store transaction, so a failure part-way through leaves
the previous role set intact.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from auth.lookup import PW_RESET_CODE, USERNAME, UserLookup
from auth.models import NotFound, UserDetails
from auth.passwords import _DUMMY_HASH, PasswordHasher
from auth.roles import RoleResolver
from auth.session import SessionStore
from core.errors import ConfigError, ValidationError
from datastore.facade import Record, Schema
from realm.config import RealmConfig

logger = logging.getLogger("realmauth.auth.credentials")


def _desired_roles(roles: Mapping[str, Any] | Iterable[str] | None) -> set[str]:
    if not roles:
        return set()
    if isinstance(roles, Mapping):
        return {name for name, wanted in roles.items() if wanted}
    return set(roles)


class CredentialEngine:
    def __init__(
        self,
        config: RealmConfig,
        schema: Schema,
        lookup: UserLookup,
        roles: RoleResolver,
        hasher: PasswordHasher,
        session: SessionStore,
    ) -> None:
        self.config = config
        self.schema = schema
        self.lookup = lookup
        self.roles = roles
        self.hasher = hasher
        self.session = session

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, username: str, password: str, lastlogin: str | None = None) -> bool | NotFound:
        """Check a username/password pair. True on a match, a falsy value otherwise.

        Unknown users get NotFound, wrong passwords get False. The hasher runs
        in both cases so timing does not reveal whether the username exists.

        lastlogin: session key. When given and the password matches, the
        user's previous last-login time (if any) is written to the session
        under this key, then the last-login column is stamped with now.
        """
        result = self.lookup.find_user(username)
        if not result:
            self.hasher.match(password or "", _DUMMY_HASH)
            logger.debug("No such user %s", username)
            return result
        user = result.value
        if not self.hasher.match(password, user.get(self.config.users_password_column)):
            logger.debug("Password mismatch for user %s", username)
            return False
        if lastlogin:
            previous = self.schema.parse_datetime(user.get(self.config.users_lastlogin_column))
            if previous is not None:
                self.session.write(lastlogin, previous)
            user.update({self.config.users_lastlogin_column: self.schema.now()})
        return True

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def details_for(self, user: Record) -> UserDetails:
        details = user.as_dict()
        pwchanged = self.config.users_pwchanged_column
        if pwchanged and pwchanged in details:
            details[pwchanged] = self.schema.parse_datetime(details[pwchanged])
        if self.config.roles_key:
            details[self.config.roles_key] = {name: True for name in self.roles.roles_for(user)}
        return details

    def get_user_details(self, username: str | None) -> UserDetails | None:
        """All columns of the user's row (plus roles under roles_key), or None."""
        options = self.roles.prefetch_options() if self.config.roles_key else None
        result = self.lookup.find_user(username, options)
        if not result:
            logger.debug("No such user %s", username)
            return None
        return self.details_for(result.value)

    def get_user_by_code(self, code: str | None) -> str | None:
        """Username holding password-reset `code`, or None."""
        if not code:
            return None
        user = self.lookup.find_users(PW_RESET_CODE, code).first()
        if user is None:
            logger.debug("No user with the supplied password reset code")
            return None
        return user[self.config.users_username_column]

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def set_user_password(self, username: str, password: str) -> UserDetails | None:
        fields: dict[str, Any] = {
            self.config.users_password_column: self.hasher.hash(password, self.config.encryption_algorithm)
        }
        if self.config.users_pwchanged_column:
            fields[self.config.users_pwchanged_column] = self.schema.now()
        return self.set_user_details(username, fields)

    def create_user(self, fields: Mapping[str, Any]) -> UserDetails | None:
        """Create a user row with only the username, then apply the rest via set_user_details()."""
        fields = dict(fields)
        username = fields.pop(USERNAME, None) or fields.pop(self.config.users_username_column, None)
        if not username:
            raise ValidationError("Username not supplied in args")
        with self.schema.transaction():
            self.schema.resultset(self.config.users_resultset).create({self.config.users_username_column: username})
            logger.info("Created user %s", username)
            return self.set_user_details(username, fields)

    def set_user_details(self, username: str | None, fields: Mapping[str, Any]) -> UserDetails | None:
        """Update the user's row and, with roles_key present, reconcile role memberships.

        Returns the re-read details (under the new username if it changed),
        or None when the user does not exist.
        """
        if not username:
            raise ValidationError("Username to update needs to be specified")
        update = dict(fields)
        with self.schema.transaction():
            result = self.lookup.find_user(username)
            if not result:
                logger.debug("No such user %s to update", username)
                return None
            user = result.value

            roles_key = self.config.roles_key
            if roles_key and roles_key in update:
                self._reconcile_roles(user, _desired_roles(update.pop(roles_key)))

            for generic, column in (
                (PW_RESET_CODE, self.config.users_pwresetcode_column),
                (USERNAME, self.config.users_username_column),
            ):
                if generic != column and generic in update:
                    update[column] = update.pop(generic)

            if update:
                user.update(update)
            return self.get_user_details(update.get(self.config.users_username_column) or username)

    def _reconcile_roles(self, user: Record, desired: set[str]) -> None:
        current = set(self.roles.roles_for(user))
        user_roles = self.schema.resultset(self.config.user_roles_resultset)
        username = user[self.config.users_username_column]
        for role in self.roles.all_roles():
            name = role[self.config.roles_role_column]
            if name in desired and name not in current:
                user_roles.create(self.roles.link_fields(user, role))
                logger.info("Added role %s to user %s", name, username)
            elif name not in desired and name in current:
                user_roles.search(self.roles.link_fields(user, role)).delete()
                logger.info("Removed role %s from user %s", name, username)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def password_expired(self, user: Mapping[str, Any]) -> bool:
        """True once more whole days than password_expiry_days have passed since the last change.

        A user with no recorded change time is treated as expired.
        """
        expiry_days = self.config.password_expiry_days
        if not expiry_days:
            return False
        column = self.config.users_pwchanged_column
        if not column:
            raise ConfigError("users_pwchanged_column not configured")
        changed = self.schema.parse_datetime(user.get(column))
        if changed is None:
            return True
        return (self.schema.now() - changed).days > expiry_days
