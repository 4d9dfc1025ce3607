"""Database gateway and repository tests against a mocked connection pool."""

import threading
import time
from unittest.mock import MagicMock, patch

import psycopg2
import psycopg2.errors
import pytest

from src.tagonlink import check_db
from src.tagonlink.db import Database
from src.tagonlink.errors import DatabaseError, ErrorKind
from src.tagonlink.repository import LinkRepository, UserRepository


@pytest.fixture
def pool():
    with patch("src.tagonlink.db.ThreadedConnectionPool") as pool_cls:
        conn = MagicMock()
        conn.closed = 0
        cursor = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor
        pool_cls.return_value.getconn.return_value = conn
        yield pool_cls, conn, cursor


def test_open_requires_dsn():
    with pytest.raises(DatabaseError) as excinfo:
        Database(None).open()
    assert excinfo.value.kind is ErrorKind.unavailable


def test_open_reports_unreachable_server():
    with patch("src.tagonlink.db.ThreadedConnectionPool", side_effect=psycopg2.OperationalError("refused")):
        with pytest.raises(DatabaseError) as excinfo:
            Database("postgresql://localhost/x").open()
    assert excinfo.value.kind is ErrorKind.unavailable


def test_pool_is_built_from_settings(pool):
    pool_cls, _, _ = pool
    Database("postgresql://localhost/x", minconn=2, maxconn=5, sslmode="require").open()
    pool_cls.assert_called_once_with(minconn=2, maxconn=5, dsn="postgresql://localhost/x", sslmode="require")


def test_fetch_one_returns_dict_and_releases_connection(pool):
    pool_cls, conn, cursor = pool
    cursor.fetchone.return_value = {"id": 1, "email": "a@example.com"}
    db = Database("postgresql://localhost/x")

    row = db.fetch_one("SELECT id, email FROM users WHERE id=%s", [1])

    assert row == {"id": 1, "email": "a@example.com"}
    cursor.execute.assert_called_once_with("SELECT id, email FROM users WHERE id=%s", [1])
    pool_cls.return_value.putconn.assert_called_once_with(conn, close=False)


def test_fetch_one_missing_row(pool):
    _, _, cursor = pool
    cursor.fetchone.return_value = None
    assert Database("postgresql://localhost/x").fetch_one("SELECT 1") is None


def test_execute_returns_rowcount_and_commits(pool):
    _, conn, cursor = pool
    cursor.rowcount = 3
    assert Database("postgresql://localhost/x").execute("DELETE FROM links WHERE user_id=%s", [1]) == 3
    conn.commit.assert_called_once()


def test_execute_returning_one_requires_a_row(pool):
    _, _, cursor = pool
    cursor.fetchone.return_value = None
    with pytest.raises(DatabaseError):
        Database("postgresql://localhost/x").execute_returning_one("INSERT ... RETURNING *")


@pytest.mark.parametrize(
    "error, kind, pgcode",
    [
        (psycopg2.errors.ForeignKeyViolation("fk"), ErrorKind.foreign_key, "23503"),
        (psycopg2.errors.UniqueViolation("dup"), ErrorKind.conflict, "23505"),
        (psycopg2.errors.UndefinedTable("no table"), ErrorKind.undefined_table, "42P01"),
        (psycopg2.OperationalError("gone"), ErrorKind.unavailable, None),
        (psycopg2.ProgrammingError("syntax"), ErrorKind.infrastructure, None),
    ],
)
def test_errors_are_classified(pool, error, kind, pgcode):
    _, conn, cursor = pool
    cursor.execute.side_effect = error
    with pytest.raises(DatabaseError) as excinfo:
        Database("postgresql://localhost/x").execute("INSERT INTO links VALUES (%s)", [1])
    assert excinfo.value.kind is kind
    assert excinfo.value.pgcode == pgcode
    conn.rollback.assert_called_once()


def test_missing_tables(pool):
    _, _, cursor = pool
    cursor.fetchall.return_value = [{"table_name": "users"}]
    assert Database("postgresql://localhost/x").missing_tables() == ["links"]


def test_link_queries_filter_by_owner():
    db = MagicMock(spec=Database)
    links = LinkRepository(db)

    links.list_for_owner(5)
    query, params = db.fetch_all.call_args.args
    assert "WHERE user_id=%s" in query
    assert "ORDER BY created_at DESC" in query
    assert params == [5]

    links.update(9, 5, "t", "https://x.io", "", "")
    query, params = db.execute_returning.call_args.args
    assert "WHERE id=%s AND user_id=%s" in query
    assert params[-2:] == [9, 5]

    links.delete(9, 5)
    query, params = db.execute.call_args.args
    assert query == "DELETE FROM links WHERE id=%s AND user_id=%s"
    assert params == [9, 5]


def test_link_owner_lookup():
    db = MagicMock(spec=Database)
    db.fetch_one.return_value = {"user_id": 3}
    assert LinkRepository(db).get_owner_id(1) == 3
    db.fetch_one.return_value = None
    assert LinkRepository(db).get_owner_id(1) is None


def test_user_public_lookup_excludes_password():
    db = MagicMock(spec=Database)
    UserRepository(db).get_public(1)
    query, _ = db.fetch_one.call_args.args
    assert "password" not in query


def test_check_db_reports_missing_tables(capsys):
    db = MagicMock(spec=Database)
    db.server_info.return_value = {"current_time": "now", "pg_version": "PostgreSQL 16.2 on x86_64"}
    db.list_tables.return_value = ["users"]
    db.table_columns.return_value = [{"column_name": "id", "data_type": "integer"}]
    db.count_rows.return_value = 2
    db.index_names.return_value = ["users_pkey"]

    missing = check_db.run_checks(db)

    assert missing == ["links"]
    out = capsys.readouterr().out
    assert "PostgreSQL 16.2" in out
    assert "Missing: links" in out
    db.apply_schema.assert_not_called()


def test_check_db_without_database_url(monkeypatch):
    monkeypatch.setattr(check_db, "get_settings", lambda: MagicMock(database_url=None, log_level="INFO"))
    assert check_db.main([]) == 1


def test_concurrent_open_builds_one_pool(pool):
    pool_cls, _, _ = pool

    def slow_pool(**kwargs):
        time.sleep(0.05)
        return pool_cls.return_value

    pool_cls.side_effect = slow_pool
    db = Database("postgresql://localhost/x")
    threads = [threading.Thread(target=db.open) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert pool_cls.call_count == 1


def test_check_db_missing_tables_still_exits_zero(monkeypatch, capsys):
    settings = MagicMock(database_url="postgresql://localhost/links", log_level="INFO", db_sslmode="prefer")
    monkeypatch.setattr(check_db, "get_settings", lambda: settings)
    monkeypatch.setattr(check_db, "run_checks", lambda db, init_schema=False: ["links"])
    with patch.object(check_db, "Database"):
        assert check_db.main([]) == 0
    assert "tables are missing: links" in capsys.readouterr().out


def test_check_db_unreachable_exits_one(monkeypatch):
    settings = MagicMock(database_url="postgresql://localhost/links", log_level="INFO", db_sslmode="prefer")
    monkeypatch.setattr(check_db, "get_settings", lambda: settings)

    def fail(db, init_schema=False):
        raise DatabaseError(ErrorKind.unavailable, "refused")

    monkeypatch.setattr(check_db, "run_checks", fail)
    with patch.object(check_db, "Database"):
        assert check_db.main([]) == 1
