from contextlib import contextmanager
from datetime import datetime

import pytest

from warden.storage.postgres import REQUIRED_TABLES, PostgresStore, _unique_field


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, present=()):
        self.present = set(present)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((sql, params))
        if "to_regclass" in sql:
            table = params[0].split(".", 1)[1]
            return FakeResult({"oid": 1 if table in self.present else None})
        return FakeResult({"?column?": 1})


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit-test"
    return store


class FakeDiag:
    def __init__(self, constraint_name):
        self.constraint_name = constraint_name


class FakeUniqueViolation(Exception):
    def __init__(self, constraint_name):
        super().__init__(constraint_name)
        self.diag = FakeDiag(constraint_name)


class TestUniqueField:
    @pytest.mark.parametrize(
        "constraint,expected",
        [
            ("app_user_email_key", "email"),
            ("app_user_phone_key", "phone"),
            ("app_user_username_key", "username"),
            (None, "username"),
        ],
    )
    def test_constraint_to_column(self, constraint, expected):
        exc = FakeUniqueViolation(constraint)
        assert _unique_field(exc, ("username", "email", "phone"), "username") == expected

    def test_without_diag(self):
        assert _unique_field(Exception("x"), ("code",), "code") == "code"


class TestSchema:
    def test_missing_tables_reported(self):
        conn = FakeConnection(present={"app_user", "role"})
        store = _store(FakePool(conn))

        with pytest.raises(RuntimeError) as exc_info:
            store._verify_required_schema()
        message = str(exc_info.value)
        assert "menu_permission" in message
        assert "app_user," not in message
        assert "--init-schema" in message

    def test_complete_schema_passes(self):
        conn = FakeConnection(present=REQUIRED_TABLES)
        _store(FakePool(conn))._verify_required_schema()
        assert len(conn.statements) == len(REQUIRED_TABLES)

    def test_verify_connection(self):
        conn = FakeConnection()
        _store(FakePool(conn)).verify_connection()
        assert conn.statements == [("SELECT 1", None)]


class TestRowMappers:
    def test_permission_defaults(self):
        store = _store(DummyPool())
        permission = store._permission_from_row(
            {"id": "3", "name": "read", "code": "user:read", "module": "user", "action": "read",
             "status": None, "level": None, "is_system": None}
        )
        assert permission.id == 3
        assert permission.status == "active"
        assert permission.level == 0
        assert permission.is_system is False
        assert isinstance(permission.created_at, datetime)

    def test_user_row_never_carries_hash(self):
        store = _store(DummyPool())
        user = store._user_from_row(
            {"id": 1, "username": "alice", "email": "a@example.com", "password_hash": "x"}
        )
        assert user.username == "alice"
        assert not hasattr(user, "password_hash")

    def test_role_and_menu_relations(self):
        store = _store(DummyPool())
        permission = store._permission_from_row(
            {"id": 1, "name": "read", "code": "user:read", "module": "user", "action": "read"}
        )
        role = store._role_from_row({"id": 2, "name": "R", "code": "r"}, [permission])
        menu = store._menu_from_row(
            {"id": 4, "name": "users", "title": "Users", "path": "/users", "type": "menu",
             "hidden": True, "menu_path": "4"},
            [permission],
        )
        assert [p.code for p in role.permissions] == ["user:read"]
        assert menu.hidden is True
        assert menu.menu_path == "4"
        assert [p.code for p in menu.permissions] == ["user:read"]
