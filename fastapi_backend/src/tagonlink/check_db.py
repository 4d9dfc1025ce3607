"""
Database connectivity diagnostics.

Usage:
    python -m src.tagonlink.check_db [--init-schema]

Connects with DATABASE_URL, then reports server version, public tables,
missing required tables, columns and row counts of users/links, and their
indexes. Exits 1 when the database cannot be reached or queried; missing
tables are reported as a warning and still exit 0.
"""
import argparse
import logging
import sys
from typing import List, Optional
from urllib.parse import urlparse

from src.tagonlink.config import configure_logging, get_settings
from src.tagonlink.db import REQUIRED_TABLES, Database
from src.tagonlink.errors import DatabaseError

logger = logging.getLogger(__name__)


def _describe_target(dsn: str) -> None:
    parts = urlparse(dsn)
    print(f"Host:     {parts.hostname or '(local socket)'}")
    print(f"Database: {parts.path.lstrip('/') or '(default)'}")
    print()


def run_checks(db: Database, init_schema: bool = False) -> List[str]:
    """Run every check and return the names of missing required tables."""
    print("1. Basic connection...")
    info = db.server_info()
    version = " ".join(str(info.get("pg_version", "")).split(" ")[:2])
    print("   Connected.")
    print(f"   Server time: {info.get('current_time')}")
    print(f"   PostgreSQL:  {version}")
    print()

    if init_schema:
        print("   Applying schema.sql...")
        db.apply_schema()
        print()

    print("2. Tables...")
    tables = db.list_tables()
    print(f"   Found: {', '.join(tables) if tables else 'none'}")
    missing = [t for t in REQUIRED_TABLES if t not in tables]
    if missing:
        print(f"   Missing: {', '.join(missing)} (run with --init-schema to create them)")
    else:
        print("   All required tables exist.")
    print()

    for table in REQUIRED_TABLES:
        if table not in tables:
            continue
        print(f"3. Table {table}...")
        columns = ["%s (%s)" % (c["column_name"], c["data_type"]) for c in db.table_columns(table)]
        print(f"   Columns: {', '.join(columns)}")
        print(f"   Rows:    {db.count_rows(table)}")
        print()

    print("4. Indexes...")
    indexes = db.index_names()
    print(f"   Found: {', '.join(indexes) if indexes else 'none'}")
    print()
    return missing


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Check the TagOnLink database connection and schema.")
    parser.add_argument("--init-schema", action="store_true", help="create missing tables from schema.sql")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level)
    if not settings.database_url:
        print("DATABASE_URL not found. Set it in the environment or the container .env.", file=sys.stderr)
        return 1

    _describe_target(settings.database_url)
    db = Database(settings.database_url, minconn=1, maxconn=1, sslmode=settings.db_sslmode)
    try:
        missing = run_checks(db, init_schema=args.init_schema)
    except DatabaseError as exc:
        print("Error testing connection:", file=sys.stderr)
        print(f"   Message: {exc.message}", file=sys.stderr)
        print(f"   Code:    {exc.pgcode or exc.kind.value}", file=sys.stderr)
        return 1
    finally:
        db.close()

    if missing:
        print(f"Connection OK, but tables are missing: {', '.join(missing)}. Run with --init-schema.")
        return 0
    print("All checks passed. The database is ready.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
