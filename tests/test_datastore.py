"""Unit tests for datastore/store.py -- the SQLAlchemy Core schema facade.

Covers:
- entity naming and foreign-key derived relationships
- search(): equality, IS NULL, operators, IN lists, -or groups, dotted join keys
- lazy / restartable result sets
- create(), update(), delete() (plain and joined)
- related() and prefetch
- transaction() rollback
- StoreError wrapping and timestamp parsing
"""

from datetime import date, datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from core.errors import StoreError
from datastore.facade import JOIN_INNER, JOIN_LEFT, MULTI, SINGLE, camelize
from datastore.store import SqlSchema

# ---------------------------------------------------------------------------
# TestNaming
# ---------------------------------------------------------------------------


class TestNaming:
    def test_camelize_snake_case(self):
        assert camelize("user_role") == "UserRole"
        assert camelize("users") == "Users"

    def test_camelize_is_idempotent(self):
        assert camelize(camelize("user_roles_link")) == "UserRolesLink"

    def test_tables_registered_by_camelized_name(self, schema: SqlSchema):
        assert schema.has_resultset("User")
        assert schema.has_resultset("UserRole")
        assert not schema.has_resultset("user_role")

    def test_unknown_resultset_raises_store_error(self, schema: SqlSchema):
        with pytest.raises(StoreError):
            schema.resultset("Nope")


# ---------------------------------------------------------------------------
# TestRelationships
# ---------------------------------------------------------------------------


class TestRelationships:
    def test_has_many_derived_from_foreign_key(self, schema: SqlSchema):
        rels = {rel.name: rel for rel in schema.list_relationships("User")}
        rel = rels["user_roles"]
        assert rel.target == "UserRole"
        assert rel.multiplicity == MULTI
        assert rel.join_type == JOIN_LEFT
        assert dict(rel.condition) == {"user_id": "id"}

    def test_belongs_to_derived_from_foreign_key(self, schema: SqlSchema):
        rels = {rel.name: rel for rel in schema.list_relationships("UserRole")}
        assert set(rels) == {"user", "role"}
        assert rels["role"].target == "Role"
        assert rels["role"].multiplicity == SINGLE
        assert rels["role"].join_type == JOIN_INNER
        assert dict(rels["role"].condition) == {"id": "role_id"}

    def test_related_walks_many_then_single(self, schema: SqlSchema):
        dave = schema.resultset("User").search({"username": "dave"}).first()
        roles = [ur.related("role")["role"] for ur in dave.related("user_roles")]
        assert roles == ["BeerDrinker", "Motorcyclist"]

    def test_prefetch_gives_same_answer(self, schema: SqlSchema):
        users = schema.resultset("User").search({"username": "dave"}, {"prefetch": {"user_roles": "role"}})
        dave = users.first()
        roles = [ur.related("role")["role"] for ur in dave.related("user_roles")]
        assert roles == ["BeerDrinker", "Motorcyclist"]

    def test_unknown_relationship_raises(self, schema: SqlSchema):
        dave = schema.resultset("User").search({"username": "dave"}).first()
        with pytest.raises(StoreError):
            dave.related("nonexistent")

    def test_each_foreign_key_gets_its_own_pair(self, audited_schema: SqlSchema):
        join_rels = {rel.name: dict(rel.condition) for rel in audited_schema.list_relationships("UserRole")}
        assert join_rels == {
            "granted_by": {"id": "granted_by"},
            "role": {"id": "role_id"},
            "user": {"id": "user_id"},
        }
        user_rels = {rel.name: dict(rel.condition) for rel in audited_schema.list_relationships("User")}
        assert user_rels == {
            "user_roles": {"user_id": "id"},
            "user_roles_granted_by": {"granted_by": "id"},
        }

    def test_derived_names_follow_column_order(self, audited_schema: SqlSchema):
        audited_schema.derive_relationships()
        names = [rel.name for rel in audited_schema.list_relationships("UserRole")]
        assert names == ["granted_by", "role", "user"]


# ---------------------------------------------------------------------------
# TestSearch
# ---------------------------------------------------------------------------


class TestSearch:
    def test_equality(self, schema: SqlSchema):
        names = [u["username"] for u in schema.resultset("User").search({"username": "bob"})]
        assert names == ["bob"]

    def test_search_is_chainable(self, schema: SqlSchema):
        rs = schema.resultset("User").search({"deleted": 0}).search({"username": "eve"})
        assert rs.all() == []

    def test_none_means_is_null(self, schema: SqlSchema):
        rs = schema.resultset("User").search({"pw_reset_code": None})
        assert rs.count() == 4

    def test_operator_mapping(self, schema: SqlSchema):
        rs = schema.resultset("User").search({"id": {">=": 2, "<": 4}})
        assert [u["username"] for u in rs] == ["bob", "mark"]

    def test_not_equal_none_is_not_null(self, schema: SqlSchema):
        rs = schema.resultset("User").search({"name": {"!=": None}})
        assert rs.count() == 4

    def test_list_value_means_in(self, schema: SqlSchema):
        rs = schema.resultset("Role").search({"role": ["BeerDrinker", "CiderDrinker"]})
        assert sorted(r["role"] for r in rs) == ["BeerDrinker", "CiderDrinker"]

    def test_prefixed_operator_spelling(self, schema: SqlSchema):
        rs = schema.resultset("User").search({"username": {"-not_in": ["dave", "bob"]}})
        assert sorted(u["username"] for u in rs) == ["eve", "mark"]

    def test_or_group(self, schema: SqlSchema):
        rs = schema.resultset("User").search({"-or": [{"username": "dave"}, {"name": "Bob Smith"}]})
        assert [u["username"] for u in rs] == ["dave", "bob"]

    def test_like(self, schema: SqlSchema):
        rs = schema.resultset("User").search({"name": {"like": "%Smith"}})
        assert [u["username"] for u in rs] == ["bob"]

    def test_unsupported_operator_raises(self, schema: SqlSchema):
        with pytest.raises(StoreError):
            schema.resultset("User").search({"id": {"~~": 1}}).all()

    def test_dotted_key_joins_relationship(self, schema: SqlSchema):
        rs = schema.resultset("UserRole").search({"user.username": "dave", "role.role": "Motorcyclist"})
        rows = rs.all()
        assert len(rows) == 1
        assert (rows[0]["user_id"], rows[0]["role_id"]) == (1, 2)

    def test_unknown_column_raises(self, schema: SqlSchema):
        with pytest.raises(StoreError):
            schema.resultset("User").search({"shoe_size": 9}).all()

    def test_nested_dotted_key_raises_store_error(self, schema: SqlSchema):
        with pytest.raises(StoreError, match="user.role.role"):
            schema.resultset("UserRole").search({"user.role.role": "BeerDrinker"}).all()

    def test_result_set_is_restartable(self, schema: SqlSchema):
        rs = schema.resultset("User").search({"username": "newbie"})
        assert rs.first() is None
        schema.resultset("User").create({"username": "newbie"})
        assert rs.first()["username"] == "newbie"


# ---------------------------------------------------------------------------
# TestWrites
# ---------------------------------------------------------------------------


class TestWrites:
    def test_create_returns_row_with_server_defaults(self, schema: SqlSchema):
        record = schema.resultset("User").create({"username": "zoe"})
        assert record["id"] == 5
        assert record["deleted"] == 0
        assert record["password"] is None

    def test_record_update_persists(self, schema: SqlSchema):
        bob = schema.resultset("User").search({"username": "bob"}).first()
        bob.update({"name": "Robert"})
        assert bob["name"] == "Robert"
        again = schema.resultset("User").search({"username": "bob"}).first()
        assert again["name"] == "Robert"

    def test_datetime_stored_as_iso_text_in_text_column(self, schema: SqlSchema):
        stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        bob = schema.resultset("User").search({"username": "bob"}).first()
        bob.update({"pw_changed": stamp})
        again = schema.resultset("User").search({"username": "bob"}).first()
        assert again["pw_changed"] == "2024-01-02T03:04:05+00:00"

    def test_plain_delete(self, schema: SqlSchema):
        removed = schema.resultset("UserRole").search({"user_id": 1}).delete()
        assert removed == 2
        assert schema.resultset("UserRole").search({"user_id": 1}).count() == 0

    def test_joined_delete_only_touches_matches(self, schema: SqlSchema):
        removed = schema.resultset("UserRole").search({"user.username": "dave", "role.role": "BeerDrinker"}).delete()
        assert removed == 1
        remaining = [(ur["user_id"], ur["role_id"]) for ur in schema.resultset("UserRole")]
        assert remaining == [(1, 2), (2, 3), (4, 1)]

    def test_integrity_error_wrapped_as_store_error(self, schema: SqlSchema):
        with pytest.raises(StoreError) as exc_info:
            schema.resultset("User").create({"username": "dave"})
        assert isinstance(exc_info.value.__cause__, IntegrityError)
        assert exc_info.value.kind == "store"

    def test_unknown_column_on_create_raises(self, schema: SqlSchema):
        with pytest.raises(StoreError):
            schema.resultset("User").create({"username": "x", "shoe_size": 9})


# ---------------------------------------------------------------------------
# TestTransactions
# ---------------------------------------------------------------------------


class TestTransactions:
    def test_exception_rolls_back_every_write(self, schema: SqlSchema):
        with pytest.raises(RuntimeError):
            with schema.transaction():
                schema.resultset("User").create({"username": "ghost"})
                schema.resultset("UserRole").search({"user_id": 2}).delete()
                raise RuntimeError("boom")
        assert schema.resultset("User").search({"username": "ghost"}).first() is None
        assert schema.resultset("UserRole").search({"user_id": 2}).count() == 1

    def test_writes_visible_inside_transaction(self, schema: SqlSchema):
        with schema.transaction():
            schema.resultset("User").create({"username": "ghost"})
            assert schema.resultset("User").search({"username": "ghost"}).count() == 1
        assert schema.resultset("User").search({"username": "ghost"}).count() == 1


# ---------------------------------------------------------------------------
# TestParseDatetime
# ---------------------------------------------------------------------------


class TestParseDatetime:
    def test_empty_values_give_none(self, schema: SqlSchema):
        assert schema.parse_datetime(None) is None
        assert schema.parse_datetime("") is None

    def test_naive_values_are_utc(self, schema: SqlSchema):
        parsed = schema.parse_datetime("2024-05-01 10:30:00")
        assert parsed == datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc)

    def test_zulu_suffix(self, schema: SqlSchema):
        parsed = schema.parse_datetime("2024-05-01T10:30:00Z")
        assert parsed == datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc)

    def test_date_object(self, schema: SqlSchema):
        assert schema.parse_datetime(date(2024, 5, 1)) == datetime(2024, 5, 1, tzinfo=timezone.utc)

    def test_garbage_raises_store_error(self, schema: SqlSchema):
        with pytest.raises(StoreError):
            schema.parse_datetime("last tuesday")
