"""Database connection helper."""

from __future__ import annotations

from importlib.resources import files

import psycopg
from psycopg.rows import dict_row

from purchase_sync.config import get_database_url


def get_connection() -> psycopg.Connection[dict[str, object]]:
    """Create and return a new autocommit database connection.

    Multi-statement operations open explicit transactions.
    """
    return psycopg.connect(get_database_url(), row_factory=dict_row, autocommit=True)


def init_schema(conn: psycopg.Connection[dict[str, object]]) -> None:
    """Create tables and indexes if they do not exist."""
    ddl = files("purchase_sync").joinpath("schema.sql").read_text(encoding="utf-8")
    conn.execute(ddl)  # type: ignore[arg-type]
