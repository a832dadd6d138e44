"""
Connection health check: SELECT 1 on a pooled connection.
"""

from typing import Any

from .connect import execute


def health_check(conn: Any) -> bool:
    """
    Run SELECT 1 and return True if no exception. SQLite, Postgres and MySQL all support SELECT 1.
    """
    cur = None
    try:
        cur = execute(conn, "SELECT 1")
        cur.fetchone()
        return True
    except Exception:
        return False
    finally:
        if cur is not None:
            try:
                cur.close()
            except Exception:
                pass
