import logging
import threading
from contextlib import contextmanager
from importlib import resources
from typing import Any, Dict, Iterable, List, Optional, Sequence

import psycopg2
import psycopg2.errorcodes
import psycopg2.errors
import psycopg2.extras
from fastapi import Request
from psycopg2 import sql
from psycopg2.pool import PoolError, ThreadedConnectionPool

from src.tagonlink.config import Settings
from src.tagonlink.errors import DatabaseError, ErrorKind

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("users", "links")

# psycopg2 raises these subclasses for the matching SQLSTATE.
_KIND_BY_ERROR = (
    (psycopg2.errors.ForeignKeyViolation, ErrorKind.foreign_key, psycopg2.errorcodes.FOREIGN_KEY_VIOLATION),
    (psycopg2.errors.UniqueViolation, ErrorKind.conflict, psycopg2.errorcodes.UNIQUE_VIOLATION),
    (psycopg2.errors.UndefinedTable, ErrorKind.undefined_table, psycopg2.errorcodes.UNDEFINED_TABLE),
)


def _classify(exc: psycopg2.Error) -> DatabaseError:
    pgcode = getattr(exc, "pgcode", None)
    kind = ErrorKind.infrastructure
    for error_cls, error_kind, code in _KIND_BY_ERROR:
        if isinstance(exc, error_cls):
            kind, pgcode = error_kind, pgcode or code
            break
    else:
        if isinstance(exc, psycopg2.OperationalError):
            kind = ErrorKind.unavailable
    message = str(exc).strip() or exc.__class__.__name__
    return DatabaseError(kind, message, pgcode=pgcode)


def _dict_cursor(conn):
    return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)


class Database:
    """PostgreSQL connection pool plus parameterized query helpers.

    Every helper borrows one connection for one statement and commits it,
    so each call is its own transaction. psycopg2 failures are re-raised as
    DatabaseError classified by SQLSTATE.
    """

    def __init__(self, dsn: Optional[str], minconn: int = 1, maxconn: int = 10, sslmode: str = "prefer"):
        self._dsn = dsn
        self._minconn = minconn
        self._maxconn = maxconn
        self._sslmode = sslmode
        self._pool: Optional[ThreadedConnectionPool] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.database_url,
            minconn=settings.db_pool_min,
            maxconn=settings.db_pool_max,
            sslmode=settings.db_sslmode,
        )

    # PUBLIC_INTERFACE
    def open(self) -> None:
        """Initialize the connection pool (no-op if already open)."""
        if self._pool is not None:
            return
        if not self._dsn:
            raise DatabaseError(ErrorKind.unavailable, "DATABASE_URL is not configured.")
        with self._lock:
            if self._pool is not None:
                return
            try:
                self._pool = ThreadedConnectionPool(
                    minconn=self._minconn,
                    maxconn=self._maxconn,
                    dsn=self._dsn,
                    sslmode=self._sslmode,
                )
            except psycopg2.Error as exc:
                logger.error("Could not open database pool: %s", exc)
                raise _classify(exc)

    # PUBLIC_INTERFACE
    def close(self) -> None:
        """Close every pooled connection."""
        with self._lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None

    @contextmanager
    def _get_conn(self):
        if self._pool is None:
            self.open()
        assert self._pool is not None
        try:
            conn = self._pool.getconn()
        except PoolError as exc:
            logger.error("Connection pool exhausted: %s", exc)
            raise DatabaseError(ErrorKind.unavailable, str(exc))
        except psycopg2.Error as exc:
            logger.error("Could not acquire database connection: %s", exc)
            raise _classify(exc)
        try:
            yield conn
        except psycopg2.Error as exc:
            if not conn.closed:
                conn.rollback()
            raise _classify(exc)
        finally:
            self._pool.putconn(conn, close=bool(conn.closed))

    # PUBLIC_INTERFACE
    def fetch_one(self, query: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
        """Fetch a single row as a dict, or None."""
        with self._get_conn() as conn:
            with _dict_cursor(conn) as cur:
                cur.execute(query, params or [])
                row = cur.fetchone()
                conn.commit()
                return dict(row) if row else None

    # PUBLIC_INTERFACE
    def fetch_all(self, query: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """Fetch all rows as dicts."""
        with self._get_conn() as conn:
            with _dict_cursor(conn) as cur:
                cur.execute(query, params or [])
                rows = cur.fetchall()
                conn.commit()
                return [dict(r) for r in rows]

    # PUBLIC_INTERFACE
    def execute(self, query: str, params: Optional[Sequence[Any]] = None) -> int:
        """Execute a statement (INSERT/UPDATE/DELETE). Returns affected rowcount."""
        with self._get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params or [])
                affected = cur.rowcount
                conn.commit()
                return affected

    # PUBLIC_INTERFACE
    def execute_returning(self, query: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute a statement with RETURNING and return the first row as dict, or None."""
        with self._get_conn() as conn:
            with _dict_cursor(conn) as cur:
                cur.execute(query, params or [])
                row = cur.fetchone()
                conn.commit()
                return dict(row) if row else None

    # PUBLIC_INTERFACE
    def execute_returning_one(self, query: str, params: Optional[Sequence[Any]] = None) -> Dict[str, Any]:
        """Like execute_returning, but a missing row is an error."""
        row = self.execute_returning(query, params)
        if row is None:
            raise DatabaseError(ErrorKind.infrastructure, "Expected one row returned, got none.")
        return row

    # PUBLIC_INTERFACE
    def ping(self) -> None:
        """Run a trivial query; raises DatabaseError when unreachable."""
        self.fetch_one("SELECT 1 AS ok")

    # PUBLIC_INTERFACE
    def list_tables(self, schema: str = "public") -> List[str]:
        rows = self.fetch_all(
            "SELECT table_name FROM information_schema.tables WHERE table_schema=%s ORDER BY table_name",
            [schema],
        )
        return [r["table_name"] for r in rows]

    # PUBLIC_INTERFACE
    def missing_tables(self, required: Iterable[str] = REQUIRED_TABLES) -> List[str]:
        present = set(self.list_tables())
        return [t for t in required if t not in present]

    def server_info(self) -> Dict[str, Any]:
        row = self.fetch_one("SELECT NOW() AS current_time, version() AS pg_version")
        return row or {}

    def table_columns(self, table: str) -> List[Dict[str, Any]]:
        return self.fetch_all(
            """
            SELECT column_name, data_type, is_nullable
            FROM information_schema.columns
            WHERE table_schema='public' AND table_name=%s
            ORDER BY ordinal_position
            """,
            [table],
        )

    def count_rows(self, table: str) -> int:
        query = sql.SQL("SELECT COUNT(*) AS count FROM {}").format(sql.Identifier(table))
        with self._get_conn() as conn:
            with _dict_cursor(conn) as cur:
                cur.execute(query)
                row = cur.fetchone()
                conn.commit()
                return int(row["count"])

    def index_names(self, tables: Sequence[str] = REQUIRED_TABLES) -> List[str]:
        rows = self.fetch_all(
            "SELECT indexname FROM pg_indexes WHERE schemaname='public' AND tablename = ANY(%s) ORDER BY indexname",
            [list(tables)],
        )
        return [r["indexname"] for r in rows]

    # PUBLIC_INTERFACE
    def apply_schema(self) -> None:
        """Create the users/links tables and indexes if they do not exist."""
        ddl = resources.files("src.tagonlink").joinpath("schema.sql").read_text(encoding="utf-8")
        with self._get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(ddl)
            conn.commit()
        logger.info("Database schema applied.")


# PUBLIC_INTERFACE
def get_db(request: Request) -> Database:
    """Dependency returning the process-wide Database attached at startup."""
    return request.app.state.db
