"""
datastore/store.py -- SQLAlchemy Core implementation of the Schema facade.

Uses SQLAlchemy Core (not ORM): the provider works on plain column mappings,
so there is no model class per table. Any MetaData can be served -- declared
in code or reflected from a live database -- and every table becomes an
entity addressed by its camelized name (user_role -> UserRole).

Relationships are declared with has_many() / belongs_to(), or derived from
single-column foreign keys by derive_relationships():

    user_role.user_id    -> user.id   gives   User.user_roles             (many, LEFT join)
                                              UserRole.user               (single, INNER join)
    user_role.granted_by -> user.id   gives   User.user_roles_granted_by  (many, LEFT join)
                                              UserRole.granted_by         (single, INNER join)

Transactions: every public operation runs inside engine.begin(). The active
connection is kept in a thread-local, so nested operations (and everything
inside a transaction() block) share one connection and commit or roll back
together. Threads never share a connection.

Errors: any SQLAlchemyError leaving the outermost connection block is raised
as core.errors.StoreError with the original chained as __cause__.

Usage:
    schema = SqlSchema("sqlite:///auth.db", reflect=True)
    users = schema.resultset("User").search({"username": "dave"})
    for user in users:
        print(user["username"], [ur["role_id"] for ur in user.related("user_roles")])
    schema.close()
"""

from __future__ import annotations

import logging
import operator
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    Date,
    DateTime,
    MetaData,
    Table,
    and_,
    create_engine,
    delete,
    event,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from core.config import get_settings
from core.errors import StoreError
from datastore.facade import JOIN_INNER, JOIN_LEFT, MULTI, SINGLE, Relationship, camelize

logger = logging.getLogger("realmauth.datastore")

# ---------------------------------------------------------------------------
# Filter compilation
# ---------------------------------------------------------------------------

_OPERATORS = {
    "=": operator.eq,
    "==": operator.eq,
    "!=": operator.ne,
    "<>": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "like": lambda col, value: col.like(value),
    "in": lambda col, value: col.in_(list(value)),
    "not in": lambda col, value: col.not_in(list(value)),
}


def _normalize_operator(op: str) -> str:
    # Prefixed spellings ("-in", "-not_in") are accepted too.
    return op.strip().lower().lstrip("-").replace("_", " ")


def _condition(column, value):
    if value is None:
        return column.is_(None)
    if isinstance(value, Mapping):
        parts = []
        for raw_op, operand in value.items():
            op = _normalize_operator(raw_op)
            if op not in _OPERATORS:
                raise StoreError(f"Unsupported filter operator {raw_op!r} on {column}")
            if operand is None and op in ("=", "=="):
                parts.append(column.is_(None))
            elif operand is None and op in ("!=", "<>"):
                parts.append(column.is_not(None))
            else:
                parts.append(_OPERATORS[op](column, operand))
        return and_(*parts)
    if isinstance(value, (list, tuple, set, frozenset)):
        return column.in_(list(value))
    return column == value


def _normalize_prefetch(spec: Any) -> dict[str, dict]:
    """Flatten the accepted prefetch spellings into {relationship: nested-spec}.

    Accepts "rel", ["a", "b"], {"a": "b"}, {"a": ["b", {"c": "d"}]}.
    """
    if not spec:
        return {}
    if isinstance(spec, str):
        return {spec: {}}
    if isinstance(spec, Mapping):
        return {name: _normalize_prefetch(nested) for name, nested in spec.items()}
    result: dict[str, dict] = {}
    for item in spec:
        for name, nested in _normalize_prefetch(item).items():
            result.setdefault(name, {}).update(nested)
    return result


def _as_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked by a writer."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _is_file_sqlite(db_url: str) -> bool:
    return db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------


class SqlRecord(Mapping):
    """One row of an entity, readable as a mapping of column -> value."""

    def __init__(self, schema: SqlSchema, entity: str, data: Mapping[str, Any]) -> None:
        self._schema = schema
        self._entity = entity
        self._data = dict(data)
        # Filled by prefetch; never by related() itself.
        self._prefetched: dict[str, Any] = {}

    def __getitem__(self, column: str) -> Any:
        return self._data[column]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"<{self._entity} {self._data!r}>"

    @property
    def entity(self) -> str:
        return self._entity

    def as_dict(self) -> dict[str, Any]:
        return dict(self._data)

    def related(self, relationship: str) -> Any:
        """Follow a relationship: a list of records for many, a record or None for single."""
        if relationship in self._prefetched:
            return self._prefetched[relationship]
        rel = self._schema.relationship(self._entity, relationship)
        filters = {target_col: self._data.get(source_col) for target_col, source_col in rel.condition.items()}
        related = self._schema.resultset(rel.target).search(filters)
        return related.all() if rel.multiplicity == MULTI else related.first()

    def update(self, fields: Mapping[str, Any]) -> None:
        """Write fields to this row and refresh the in-memory copy."""
        if not fields:
            return
        table = self._schema.table(self._entity)
        values = self._schema.coerce_values(table, fields)
        key = [col == self._data[col.name] for col in _key_columns(table)]
        with self._schema.connect() as conn:
            conn.execute(update(table).where(*key).values(**values))
        self._data.update(values)
        self._prefetched.clear()


def _key_columns(table: Table) -> list:
    return list(table.primary_key.columns) or list(table.c)


# ---------------------------------------------------------------------------
# ResultSet
# ---------------------------------------------------------------------------


class SqlResultSet:
    """A lazy filtered view over one entity. search() returns a new, narrower set."""

    def __init__(
        self,
        schema: SqlSchema,
        entity: str,
        filters: tuple[Mapping[str, Any], ...] = (),
        joins: tuple[str, ...] = (),
        prefetch: Mapping[str, dict] | None = None,
    ) -> None:
        self._schema = schema
        self._entity = entity
        self._filters = filters
        self._joins = joins
        self._prefetch = dict(prefetch or {})

    def __repr__(self) -> str:
        return f"<ResultSet {self._entity} filters={list(self._filters)!r} joins={list(self._joins)!r}>"

    @property
    def entity(self) -> str:
        return self._entity

    def search(
        self, filters: Mapping[str, Any] | None = None, options: Mapping[str, Any] | None = None
    ) -> SqlResultSet:
        filters = dict(filters or {})
        options = options or {}
        joins = list(self._joins)
        # Dotted keys ("user.username") imply a join on that relationship.
        wanted = _as_list(options.get("join")) + [key.split(".", 1)[0] for key in filters if "." in key]
        for name in wanted:
            if name not in joins:
                self._schema.relationship(self._entity, name)
                joins.append(name)
        prefetch = {**self._prefetch, **_normalize_prefetch(options.get("prefetch"))}
        new_filters = self._filters + ((filters,) if filters else ())
        return SqlResultSet(self._schema, self._entity, new_filters, tuple(joins), prefetch)

    # ------------------------------------------------------------------
    # Query building
    # ------------------------------------------------------------------

    def _from_clause(self):
        table = self._schema.table(self._entity)
        aliases = {}
        from_clause = table
        for name in self._joins:
            rel = self._schema.relationship(self._entity, name)
            target = self._schema.table(rel.target).alias(name)
            onclause = and_(*(target.c[tc] == table.c[sc] for tc, sc in rel.condition.items()))
            from_clause = from_clause.join(target, onclause, isouter=rel.join_type == JOIN_LEFT)
            aliases[name] = target
        return table, from_clause, aliases

    def _where(self, table, aliases) -> list:
        def resolve(key: str):
            source, _, column = key.rpartition(".")
            if source and source not in aliases:
                raise StoreError(f"Unknown column {key!r} on {self._entity}")
            selectable = aliases[source] if source else table
            if column not in selectable.c:
                raise StoreError(f"Unknown column {key!r} on {self._entity}")
            return selectable.c[column]

        def compile_filters(filters: Mapping[str, Any]) -> list:
            clauses = []
            for key, value in filters.items():
                if key in ("-or", "-and"):
                    groups = [and_(*compile_filters(group)) for group in value]
                    clauses.append(or_(*groups) if key == "-or" else and_(*groups))
                else:
                    clauses.append(_condition(resolve(key), value))
            return clauses

        clauses = []
        for filters in self._filters:
            clauses.extend(compile_filters(filters))
        return clauses

    def _select(self, columns=None):
        table, from_clause, aliases = self._from_clause()
        stmt = select(*(columns if columns is not None else table.c)).select_from(from_clause)
        where = self._where(table, aliases)
        if where:
            stmt = stmt.where(*where)
        if self._joins:
            stmt = stmt.distinct()
        return table, stmt

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def __iter__(self) -> Iterator[SqlRecord]:
        return iter(self.all())

    def all(self) -> list[SqlRecord]:
        table, stmt = self._select()
        stmt = stmt.order_by(*_key_columns(table))
        with self._schema.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
            records = [SqlRecord(self._schema, self._entity, row) for row in rows]
            if self._prefetch and records:
                self._schema.prefetch(self._entity, records, self._prefetch)
        return records

    def first(self) -> SqlRecord | None:
        records = self.all()
        return records[0] if records else None

    def count(self) -> int:
        _, stmt = self._select()
        with self._schema.connect() as conn:
            return conn.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def create(self, fields: Mapping[str, Any]) -> SqlRecord:
        """Insert one row and return it as stored (server defaults included)."""
        table = self._schema.table(self._entity)
        values = self._schema.coerce_values(table, fields)
        with self._schema.connect() as conn:
            result = conn.execute(insert(table).values(**values))
            key_values = result.inserted_primary_key
            key_cols = list(table.primary_key.columns)
            if key_cols and key_values is not None and all(v is not None for v in key_values):
                where = [col == value for col, value in zip(key_cols, key_values)]
            else:
                where = [table.c[name] == value for name, value in values.items()]
            row = conn.execute(select(*table.c).where(*where)).mappings().first()
        logger.debug("Created %s row %s", self._entity, dict(row) if row else values)
        return SqlRecord(self._schema, self._entity, row if row is not None else values)

    def update(self, fields: Mapping[str, Any]) -> int:
        """Update every row in this set. Returns the number of rows changed."""
        table = self._schema.table(self._entity)
        values = self._schema.coerce_values(table, fields)
        key_cols = _key_columns(table)
        with self._schema.connect() as conn:
            keys = conn.execute(self._select(key_cols)[1]).all()
            for key in keys:
                conn.execute(update(table).where(*(c == v for c, v in zip(key_cols, key))).values(**values))
        return len(keys)

    def delete(self) -> int:
        """Delete every row in this set. Returns the number of rows removed.

        Joined sets are deleted by primary key, which keeps the statement
        portable across backends that do not support DELETE ... JOIN.
        """
        table = self._schema.table(self._entity)
        with self._schema.connect() as conn:
            if not self._joins:
                stmt = delete(table)
                where = self._where(table, {})
                if where:
                    stmt = stmt.where(*where)
                return conn.execute(stmt).rowcount
            key_cols = _key_columns(table)
            keys = conn.execute(self._select(key_cols)[1]).all()
            for key in keys:
                conn.execute(delete(table).where(*(c == v for c, v in zip(key_cols, key))))
        return len(keys)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class SqlSchema:
    """Schema facade over a SQLAlchemy MetaData.

    Usage:
        schema = SqlSchema("sqlite:///:memory:", metadata)
        schema.create_all()
        schema.has_many("User", "user_roles", "UserRole", foreign_key="user_id")
        schema.belongs_to("UserRole", "user", "User", foreign_key="user_id")
    """

    def __init__(
        self,
        db_url: str | None = None,
        metadata: MetaData | None = None,
        *,
        engine: Engine | None = None,
        reflect: bool = False,
        derive_relationships: bool = True,
    ) -> None:
        if engine is None:
            db_url = db_url or get_settings().database_url
            connect_args: dict = {}
            if db_url.startswith("sqlite"):
                connect_args["check_same_thread"] = False
            engine = create_engine(db_url, connect_args=connect_args)
            if _is_file_sqlite(db_url):
                event.listen(engine, "connect", _set_wal_mode)
        self.engine: Engine = engine
        self.metadata = metadata if metadata is not None else MetaData()
        if reflect:
            try:
                self.metadata.reflect(bind=self.engine)
            except SQLAlchemyError as exc:
                raise StoreError(f"Could not reflect database schema: {exc}") from exc
        self._tables: dict[str, Table] = {}
        self._relationships: dict[str, dict[str, Relationship]] = {}
        self._local = threading.local()
        for table in self.metadata.sorted_tables:
            self.register_table(table)
        if derive_relationships:
            self.derive_relationships()

    # ------------------------------------------------------------------
    # Entities and relationships
    # ------------------------------------------------------------------

    def register_table(self, table: Table, name: str | None = None) -> str:
        name = name or camelize(table.name)
        self._tables[name] = table
        self._relationships.setdefault(name, {})
        return name

    def table(self, name: str) -> Table:
        try:
            return self._tables[name]
        except KeyError:
            raise StoreError(f"No such resultset {name!r}") from None

    def entity_for(self, table: Table) -> str:
        for name, candidate in self._tables.items():
            if candidate is table:
                return name
        return camelize(table.name)

    def add_relationship(self, relationship: Relationship) -> Relationship:
        self.table(relationship.source)
        self.table(relationship.target)
        self._relationships[relationship.source][relationship.name] = relationship
        return relationship

    def has_many(
        self, source: str, name: str, target: str, foreign_key: str, self_column: str = "id"
    ) -> Relationship:
        return self.add_relationship(
            Relationship(name, source, target, MULTI, JOIN_LEFT, {foreign_key: self_column})
        )

    def belongs_to(
        self,
        source: str,
        name: str,
        target: str,
        foreign_key: str,
        target_column: str = "id",
        join_type: str = JOIN_INNER,
    ) -> Relationship:
        return self.add_relationship(
            Relationship(name, source, target, SINGLE, join_type, {target_column: foreign_key})
        )

    def derive_relationships(self) -> None:
        """Declare belongs_to / has_many pairs for every single-column foreign key.

        The belongs_to side is named after the foreign key column with any
        "_id" suffix stripped (user_id -> user, granted_by -> granted_by).
        The has_many side is the referencing table's name plus "s", with the
        belongs_to name appended when it differs from the referenced table
        (user_roles, user_roles_granted_by). Every foreign key gets its own
        pair, so two keys to the same table stay visible as two candidates.
        Relationships declared earlier under the same name are kept.
        """
        for name, table in list(self._tables.items()):
            keys = [c.elements[0] for c in table.foreign_key_constraints if len(c.elements) == 1]
            for fk in sorted(keys, key=lambda fk: fk.parent.name):
                target_table = fk.column.table
                target = self.entity_for(target_table)
                if target not in self._tables:
                    continue
                column = fk.parent.name
                single = column[: -len("_id")] if column.endswith("_id") and column != "_id" else column
                plural = f"{table.name}s" if single == target_table.name else f"{table.name}s_{single}"
                if single not in self._relationships[name]:
                    self.belongs_to(name, single, target, column, fk.column.name)
                if plural not in self._relationships[target]:
                    self.has_many(target, plural, name, column, fk.column.name)

    def has_resultset(self, name: str) -> bool:
        return name in self._tables

    def resultset(self, name: str) -> SqlResultSet:
        self.table(name)
        return SqlResultSet(self, name)

    def relationship(self, entity: str, name: str) -> Relationship:
        try:
            return self._relationships[entity][name]
        except KeyError:
            raise StoreError(f"No relationship {name!r} on {entity}") from None

    def list_relationships(self, name: str) -> list[Relationship]:
        self.table(name)
        return list(self._relationships[name].values())

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        """Yield the thread's active connection, opening a transaction if there is none."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return
        try:
            with self.engine.begin() as conn:
                self._local.conn = conn
                try:
                    yield conn
                finally:
                    self._local.conn = None
        except SQLAlchemyError as exc:
            raise StoreError(f"Data store error: {exc}") from exc

    def transaction(self):
        """Context manager grouping every operation inside it into one transaction."""
        return self.connect()

    def create_all(self) -> None:
        try:
            self.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not create tables: {exc}") from exc

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    def coerce_values(self, table: Table, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Validate column names and store datetimes as ISO text in non-datetime columns."""
        values = {}
        for name, value in fields.items():
            if name not in table.c:
                raise StoreError(f"Unknown column {name!r} on {table.name}")
            if isinstance(value, datetime) and not isinstance(table.c[name].type, (DateTime, Date)):
                value = value.isoformat()
            values[name] = value
        return values

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def parse_datetime(self, value: Any) -> datetime | None:
        """Convert a stored timestamp into an aware datetime. Naive values are taken as UTC.

        Accepts datetime/date objects, ISO 8601 text (with or without "Z"),
        and the SQL "YYYY-MM-DD HH:MM:SS" form. Empty values give None.
        """
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, date):
            parsed = datetime(value.year, value.month, value.day)
        else:
            text = str(value).strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError:
                raise StoreError(f"Unparseable timestamp {value!r}") from None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    # ------------------------------------------------------------------
    # Prefetch
    # ------------------------------------------------------------------

    def prefetch(self, entity: str, records: list[SqlRecord], spec: Mapping[str, dict]) -> None:
        """Load relationships for a batch of records with one query per relationship.

        Single-column relationships are batched with IN (...); anything else
        falls back to following the relationship record by record.
        """
        for name, nested in spec.items():
            rel = self.relationship(entity, name)
            if len(rel.condition) == 1:
                ((target_col, source_col),) = rel.condition.items()
                keys = list({record.get(source_col) for record in records} - {None})
                found = self.resultset(rel.target).search({target_col: {"in": keys}}).all() if keys else []
                grouped: dict[Any, list[SqlRecord]] = {}
                for item in found:
                    grouped.setdefault(item[target_col], []).append(item)
                for record in records:
                    matches = grouped.get(record.get(source_col), [])
                    if rel.multiplicity == MULTI:
                        record._prefetched[name] = matches
                    else:
                        record._prefetched[name] = matches[0] if matches else None
            else:
                found = []
                for record in records:
                    record._prefetched[name] = record.related(name)
                    value = record._prefetched[name]
                    found.extend(value if isinstance(value, list) else [value] if value is not None else [])
            if nested and found:
                self.prefetch(rel.target, found, nested)
