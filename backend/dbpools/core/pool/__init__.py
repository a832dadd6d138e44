"""
Connection pools for the main and tasks datasources.

Drivers: sqlite3 (embedded), psycopg (PostgreSQL) and pymysql (MySQL);
PoolConfig (backend_kind, connection_uri, ...) is enough to open a connection.
"""

from .connect import (
    build_sqlite_uri,
    connect_factory,
    cursor_to_dicts,
    execute,
    is_memory_database,
)
from .health import health_check
from .manager import ConnectionPool

__all__ = [
    "ConnectionPool",
    "build_sqlite_uri",
    "connect_factory",
    "cursor_to_dicts",
    "execute",
    "health_check",
    "is_memory_database",
]
