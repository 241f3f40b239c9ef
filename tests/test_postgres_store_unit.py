import uuid
from datetime import datetime

import pytest
from psycopg import errors, sql

from tokenfence.storage.errors import ConstraintViolation
from tokenfence.storage.postgres import (
    PostgresStore,
    _country_from_row,
    _menu_from_row,
    _order_clause,
    _user_from_row,
)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows
        self.rowcount = len(rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.queries = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        self.queries.append((query, params))
        if self.error is not None:
            raise self.error
        return FakeCursor(self.rows)


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    return store


def _country_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "name": "Brazil",
        "code": "BR",
        "currency_code": "BRL",
        "status": "active",
        "created_by": None,
        "updated_by": None,
        "created_at": datetime(2024, 1, 1),
        "updated_at": datetime(2024, 1, 2),
    }
    row.update(overrides)
    return row


class TestRowMappers:
    def test_user_ids_are_strings(self):
        user_id = uuid.uuid4()
        user = _user_from_row({"id": user_id, "email": "a@x.com"})
        assert user.id == str(user_id)
        assert user.role == "user"
        assert user.is_active is True
        assert user.last_login_at is None

    def test_country_audit_columns(self):
        author = uuid.uuid4()
        country = _country_from_row(_country_row(created_by=author))
        assert country.created_by == str(author)
        assert country.updated_by is None
        assert country.updated_at == datetime(2024, 1, 2)

    def test_menu_parent_id(self):
        parent = uuid.uuid4()
        child = _menu_from_row(
            {"id": uuid.uuid4(), "name": "Child", "route": "/c", "parent_id": parent}
        )
        root = _menu_from_row(
            {"id": uuid.uuid4(), "name": "Root", "route": "/r", "parent_id": None}
        )
        assert child.parent_id == str(parent)
        assert root.parent_id is None
        assert root.sort_order == 0


def test_order_clause_direction():
    desc = list(_order_clause("name", "desc"))
    asc = list(_order_clause("code", "sideways"))

    assert sql.Identifier("name") in desc
    assert sql.SQL("DESC") in desc
    assert sql.SQL("ASC") in asc


class TestIdLookups:
    def test_non_uuid_ids_never_reach_the_database(self):
        store = _store(DummyPool())

        assert store.get_user("not-a-uuid") is None
        assert store.get_country("missing") is None
        assert store.get_menu("../etc") is None
        assert store.update_country("x", {"name": "y"}) is None
        assert store.delete_menu("x") is False
        assert store.count_menu_children("x") == 0
        assert store.list_menu_children("x") == []
        assert store.list_menus(parent_id="x") == ([], 0)

    def test_get_country_maps_row(self):
        row = _country_row()
        conn = FakeConnection(rows=[row])
        store = _store(FakePool(conn))

        country = store.get_country(str(row["id"]))

        assert country.code == "BR"
        assert conn.queries[0][1] == (str(row["id"]),)


class TestUpdates:
    def test_update_without_known_columns_reads_current_row(self):
        store = _store(DummyPool())
        sentinel = object()
        store.get_country = lambda country_id: sentinel

        assert store.update_country(str(uuid.uuid4()), {"id": "evil", "created_at": 1}) is sentinel

    def test_update_filters_unknown_columns(self):
        country_id = str(uuid.uuid4())
        conn = FakeConnection(rows=[_country_row(name="Brasil")])
        store = _store(FakePool(conn))

        updated = store.update_country(country_id, {"name": "Brasil", "id": "evil"})

        assert updated.name == "Brasil"
        _, params = conn.queries[0]
        assert params == ["Brasil", country_id]

    def test_unique_violation_becomes_constraint_violation(self):
        conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))
        store = _store(FakePool(conn))

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_country("Brazil", "BR")
        assert excinfo.value.detail == {"field": "code"}
