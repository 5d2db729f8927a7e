"""
tests/conftest.py -- Shared fixtures for realmauth tests.

This module provides:
  - make_metadata(): the reference user / role / user_role tables
  - audited_schema: the same with a second user FK on user_role
  - populate(): seeds dave, bob and mark plus three roles
  - schema: in-memory SqlSchema with the seeded data
  - provider: SchemaAuthProvider over that schema with a roles_key

Seed data (passwords are stored as plaintext, as legacy tables often do):
  dave / beer        -> BeerDrinker, Motorcyclist
  bob  / cider       -> CiderDrinker
  mark / wantscider  -> (no roles)
  eve  / apple       -> deleted=1, excluded by the valid-user conditions

Design: plain sqlite:///:memory: is enough here. SQLAlchemy serves in-memory
SQLite through a per-thread singleton connection, and the provider is fully
synchronous, so every query in a test sees the same database.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import Column, DateTime, ForeignKey, Integer, MetaData, String, Table, Text

from auth.provider import SchemaAuthProvider
from datastore.store import SqlSchema

# ---------------------------------------------------------------------------
# Schema helpers
# ---------------------------------------------------------------------------


def make_metadata(audited: bool = False) -> MetaData:
    """The reference tables. audited=True adds user_role.granted_by, a second FK to user."""
    metadata = MetaData()
    Table(
        "user",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("username", String(32), nullable=False, unique=True),
        Column("password", String(128)),
        Column("name", String(128)),
        Column("email", String(128)),
        Column("lastlogin", DateTime),
        Column("pw_reset_code", String(255)),
        Column("pw_changed", Text),  # ISO 8601 text, parsed by the provider
        Column("deleted", Integer, nullable=False, server_default="0"),
    )
    Table(
        "role",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("role", String(32), nullable=False),
    )
    Table(
        "user_role",
        metadata,
        Column("user_id", Integer, ForeignKey("user.id"), primary_key=True),
        Column("role_id", Integer, ForeignKey("role.id"), primary_key=True),
        *([Column("granted_by", Integer, ForeignKey("user.id"))] if audited else []),
    )
    return metadata


def populate(schema: SqlSchema) -> None:
    users = schema.resultset("User")
    for username, password, name in [
        ("dave", "beer", "David Precious"),
        ("bob", "cider", "Bob Smith"),
        ("mark", "wantscider", "Update here"),
    ]:
        users.create({"username": username, "password": password, "name": name})
    users.create({"username": "eve", "password": "apple", "name": "Eve Gone", "deleted": 1})

    roles = schema.resultset("Role")
    for role in ("BeerDrinker", "Motorcyclist", "CiderDrinker"):
        roles.create({"role": role})

    user_roles = schema.resultset("UserRole")
    for user_id, role_id in [(1, 1), (1, 2), (2, 3), (4, 1)]:
        user_roles.create({"user_id": user_id, "role_id": role_id})


def make_schema(db_url: str = "sqlite:///:memory:") -> SqlSchema:
    schema = SqlSchema(db_url, make_metadata())
    schema.create_all()
    populate(schema)
    return schema


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def schema() -> Generator[SqlSchema, None, None]:
    s = make_schema()
    yield s
    s.close()


@pytest.fixture
def realm_settings() -> dict:
    return {
        "provider": "SchemaAuth",
        "roles_key": "roles",
        "user_valid_conditions": {"deleted": 0},
    }


@pytest.fixture
def provider(schema: SqlSchema, realm_settings: dict) -> SchemaAuthProvider:
    return SchemaAuthProvider(realm_settings, schema)


@pytest.fixture
def unlinked_schema() -> Generator[SqlSchema, None, None]:
    """The same tables with no relationships declared."""
    s = SqlSchema("sqlite:///:memory:", make_metadata(), derive_relationships=False)
    s.create_all()
    yield s
    s.close()


@pytest.fixture
def db_url(tmp_path) -> str:
    """URL of a seeded SQLite file, for code that opens its own connection."""
    url = f"sqlite:///{tmp_path / 'realm.db'}"
    make_schema(url).close()
    return url


@pytest.fixture
def audited_schema() -> Generator[SqlSchema, None, None]:
    """Seeded schema whose user_role rows also record who granted them."""
    s = SqlSchema("sqlite:///:memory:", make_metadata(audited=True))
    s.create_all()
    populate(s)
    yield s
    s.close()
