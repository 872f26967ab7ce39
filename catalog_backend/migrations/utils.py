from __future__ import annotations

from sqlalchemy import inspect
from sqlalchemy.engine import Connection


def table_exists(conn: Connection, table_name: str) -> bool:
    """Check whether a table exists in the current database."""
    inspector = inspect(conn)
    return table_name in inspector.get_table_names()


def index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    inspector = inspect(conn)
    for idx in inspector.get_indexes(table_name):
        if idx.get("name") == index_name:
            return True
    return False
