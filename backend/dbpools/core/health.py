"""
Readiness probe: can the service take traffic? A connection from each pool
must answer SELECT 1.
"""

import logging

from dbpools.core.datasources import DataSources
from dbpools.core.errors import DataSourceError
from dbpools.core.pool import ConnectionPool, health_check

logger = logging.getLogger(__name__)

# Readiness must not queue behind long-running work for the whole connection timeout
READINESS_ACQUIRE_TIMEOUT_MS = 2_000


# ---------------------------------------------------------------------------
# Individual pool checks
# ---------------------------------------------------------------------------


def check_pool(pool: ConnectionPool, timeout_ms: int = READINESS_ACQUIRE_TIMEOUT_MS) -> bool:
    """Borrow a connection and run SELECT 1. Returns True if ok."""
    try:
        with pool.connection(timeout_ms) as conn:
            return health_check(conn)
    except DataSourceError:
        logger.warning("%s not ready", pool.name, exc_info=True)
        return False
    except Exception:
        logger.warning("%s failed to open a connection", pool.name, exc_info=True)
        return False


# ---------------------------------------------------------------------------
# Composite probes
# ---------------------------------------------------------------------------


def readiness_check(datasources: DataSources) -> tuple[bool, list[str]]:
    """
    Check the main and tasks pools.
    Returns (ok, list of failing pool names). ok is False if any check fails.
    """
    failures: list[str] = []

    for pool in datasources:
        if not check_pool(pool):
            failures.append(pool.name)

    return (len(failures) == 0, failures)
