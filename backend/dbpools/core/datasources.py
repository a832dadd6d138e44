"""
Datasources: backend selection and pool construction.

- main:  networked server when DATASOURCE_URL is set, else the embedded DATABASE file.
- tasks: always the embedded TASKS_DB file, with exactly one connection so
  background tasks run one at a time (waiters are served FIFO).

Each sizing/timeout parameter has one resolve_* function holding its
precedence order; the builders only combine them.
"""

import logging
import os
import threading
from datetime import timedelta
from typing import Any, NamedTuple

from pydantic import ValidationError

from dbpools.core.config import DatabaseProperties, Settings, settings
from dbpools.core.errors import ConfigurationError
from dbpools.core.pool import ConnectionPool, build_sqlite_uri, connect_factory, is_memory_database
from dbpools.core.pool.connect import parse_network_url
from dbpools.models import BackendKindEnum, PoolConfig

_log = logging.getLogger(__name__)

NETWORKED_POOL_NAME = "NetworkedMainPool"
EMBEDDED_POOL_NAME = "SqliteMainPool"
TASKS_POOL_NAME = "SqliteTasksPool"

# Only used with DEV_MODE=true
DEV_DATASOURCE_URL = "postgresql://localhost:5432/dbpools"
DEV_DATASOURCE_USERNAME = "postgres"
DEV_DATASOURCE_PASSWORD = "password"

POOL_SIZE_FLOOR = 10
MIN_IDLE_RATIO = 0.25
MIN_IDLE_FLOOR = 2

DEFAULT_CONNECTION_TIMEOUT_MS = 30_000
DEFAULT_IDLE_TIMEOUT_MS = 600_000
DEFAULT_MAX_LIFETIME_MS = 1_800_000
DEFAULT_LEAK_DETECTION_THRESHOLD_MS = 300_000

NETWORKED_BACKEND_PARAMS = {
    "cache_prepared_statements": "true",
    "prepared_statement_cache_size": "250",
    "prepared_statement_cache_sql_limit": "2048",
    "use_server_prepared_statements": "true",
    "rewrite_batched_statements": "true",
}


# ---------------------------------------------------------------------------
# Resolution functions
# ---------------------------------------------------------------------------


def select_backend(app_settings: Settings) -> BackendKindEnum:
    """
    1. DATASOURCE_URL set -> NETWORKED (always wins)
    2. DATABASE_BACKEND set -> that backend
    3. otherwise -> EMBEDDED
    """
    if app_settings.DATASOURCE_URL:
        if app_settings.DATABASE_BACKEND == BackendKindEnum.EMBEDDED:
            _log.warning("DATASOURCE_URL is set; ignoring DATABASE_BACKEND=embedded")
        return BackendKindEnum.NETWORKED
    if app_settings.DATABASE_BACKEND is not None:
        return app_settings.DATABASE_BACKEND
    return BackendKindEnum.EMBEDDED


def resolve_max_pool_size(override: int | None, configured: int) -> int:
    """Networked max pool size: override, else max(configured, 10)."""
    if override is not None:
        return override
    return max(configured, POOL_SIZE_FLOOR)


def resolve_min_idle(override: int | None, max_pool_size: int) -> int:
    """Networked min idle: override, else max(int(max_pool_size * 0.25), 2)."""
    if override is not None:
        return override
    return max(int(max_pool_size * MIN_IDLE_RATIO), MIN_IDLE_FLOOR)


def resolve_timeout(override: int | None, default: int) -> int:
    return default if override is None else override


def resolve_embedded_pool_size(props: DatabaseProperties, cpu_count: int | None = None) -> int:
    """
    1. in-memory database -> 1 (separate connections would see separate databases)
    2. explicit pool_size -> verbatim
    3. otherwise -> min(cpu_count, max(max_pool_size, 10))
    """
    if is_memory_database(props.file):
        return 1
    if props.pool_size is not None:
        return props.pool_size
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    return min(cpus, max(props.max_pool_size, POOL_SIZE_FLOOR))


def busy_timeout_ms(busy_timeout: timedelta) -> int:
    return busy_timeout // timedelta(milliseconds=1)


def embedded_backend_params(props: DatabaseProperties) -> dict[str, str]:
    params = {"foreign_keys": "true", "get_generated_keys": "false"}
    if props.journal_mode is not None:
        params["journal_mode"] = props.journal_mode.value
    if props.busy_timeout is not None:
        params["busy_timeout"] = str(busy_timeout_ms(props.busy_timeout))
    return params


def _pool_config(**values: Any) -> PoolConfig:
    try:
        return PoolConfig(**values)
    except ValidationError as e:
        raise ConfigurationError(f"invalid pool configuration for {values.get('pool_name')}: {e}") from e


# ---------------------------------------------------------------------------
# Pool configs
# ---------------------------------------------------------------------------


def _networked_credentials(app_settings: Settings) -> tuple[str, str, str]:
    url = app_settings.DATASOURCE_URL
    username = app_settings.DATASOURCE_USERNAME
    password = app_settings.DATASOURCE_PASSWORD
    if url is not None:
        # user:password@host in the URI counts as configured
        parsed = parse_network_url(url)
        username = parsed.username if username is None else username
        password = parsed.password if password is None else password
    missing = [
        name
        for name, value in (
            ("DATASOURCE_URL", url),
            ("DATASOURCE_USERNAME", username),
            ("DATASOURCE_PASSWORD", password),
        )
        if value is None
    ]
    if missing and not app_settings.DEV_MODE:
        raise ConfigurationError(
            f"networked datasource requires {', '.join(missing)} (set DEV_MODE=true for local defaults)"
        )
    if missing:
        _log.warning("Using local development defaults for %s", ", ".join(missing))
    return (
        url or DEV_DATASOURCE_URL,
        username if username is not None else DEV_DATASOURCE_USERNAME,
        password if password is not None else DEV_DATASOURCE_PASSWORD,
    )


def networked_pool_config(app_settings: Settings) -> PoolConfig:
    url, username, password = _networked_credentials(app_settings)
    parse_network_url(url)
    max_pool_size = resolve_max_pool_size(
        app_settings.DATASOURCE_MAXIMUM_POOL_SIZE, app_settings.DATABASE.max_pool_size
    )
    return _pool_config(
        backend_kind=BackendKindEnum.NETWORKED,
        connection_uri=url,
        username=username,
        password=password,
        pool_name=NETWORKED_POOL_NAME,
        max_pool_size=max_pool_size,
        min_idle=resolve_min_idle(app_settings.DATASOURCE_MINIMUM_IDLE, max_pool_size),
        connection_timeout_ms=resolve_timeout(
            app_settings.DATASOURCE_CONNECTION_TIMEOUT_MS, DEFAULT_CONNECTION_TIMEOUT_MS
        ),
        idle_timeout_ms=resolve_timeout(app_settings.DATASOURCE_IDLE_TIMEOUT_MS, DEFAULT_IDLE_TIMEOUT_MS),
        max_lifetime_ms=resolve_timeout(app_settings.DATASOURCE_MAX_LIFETIME_MS, DEFAULT_MAX_LIFETIME_MS),
        leak_detection_threshold_ms=resolve_timeout(
            app_settings.DATASOURCE_LEAK_DETECTION_THRESHOLD_MS, DEFAULT_LEAK_DETECTION_THRESHOLD_MS
        ),
        backend_params=dict(NETWORKED_BACKEND_PARAMS),
    )


def embedded_pool_config(
    props: DatabaseProperties,
    pool_name: str,
    *,
    cpu_count: int | None = None,
) -> PoolConfig:
    pool_size = resolve_embedded_pool_size(props, cpu_count)
    return _pool_config(
        backend_kind=BackendKindEnum.EMBEDDED,
        connection_uri=build_sqlite_uri(props.file, props.pragmas),
        pool_name=pool_name,
        max_pool_size=pool_size,
        min_idle=pool_size,
        connection_timeout_ms=DEFAULT_CONNECTION_TIMEOUT_MS,
        idle_timeout_ms=DEFAULT_IDLE_TIMEOUT_MS,
        # the only connection to an in-memory database holds its data
        max_lifetime_ms=0 if is_memory_database(props.file) else DEFAULT_MAX_LIFETIME_MS,
        backend_params=embedded_backend_params(props),
    )


def main_pool_config(app_settings: Settings | None = None, *, cpu_count: int | None = None) -> PoolConfig:
    app_settings = app_settings or settings
    backend = select_backend(app_settings)
    _log.info("Main datasource backend: %s", backend.value)
    if backend == BackendKindEnum.NETWORKED:
        return networked_pool_config(app_settings)
    return embedded_pool_config(app_settings.DATABASE, EMBEDDED_POOL_NAME, cpu_count=cpu_count)


def tasks_pool_config(app_settings: Settings | None = None) -> PoolConfig:
    """Embedded TASKS_DB config with max_pool_size forced to 1, whatever the sizing inputs say."""
    app_settings = app_settings or settings
    config = embedded_pool_config(app_settings.TASKS_DB, TASKS_POOL_NAME)
    return config.model_copy(update={"max_pool_size": 1, "min_idle": 1})


# ---------------------------------------------------------------------------
# Pools
# ---------------------------------------------------------------------------


def create_pool(config: PoolConfig, app_settings: Settings | None = None) -> ConnectionPool:
    app_settings = app_settings or settings
    return ConnectionPool(
        config,
        connect_factory(config),
        housekeeping_period=app_settings.POOL_HOUSEKEEPING_PERIOD_SEC,
    )


def build_main_pool(app_settings: Settings | None = None) -> ConnectionPool:
    app_settings = app_settings or settings
    return create_pool(main_pool_config(app_settings), app_settings)


def build_tasks_pool(app_settings: Settings | None = None) -> ConnectionPool:
    app_settings = app_settings or settings
    return create_pool(tasks_pool_config(app_settings), app_settings)


class DataSources(NamedTuple):
    main: ConnectionPool
    tasks: ConnectionPool


_datasources: DataSources | None = None
_datasources_lock = threading.Lock()


def get_datasources() -> DataSources:
    """Return the process-wide main and tasks pools (thread-safe double-checked locking)."""
    global _datasources
    if _datasources is None:
        with _datasources_lock:
            if _datasources is None:
                main = build_main_pool()
                try:
                    tasks = build_tasks_pool()
                except Exception:
                    main.close()
                    raise
                _datasources = DataSources(main=main, tasks=tasks)
    return _datasources


def dispose_datasources() -> None:
    """Close both pools; the next get_datasources() builds new ones."""
    global _datasources
    with _datasources_lock:
        current, _datasources = _datasources, None
    if current is not None:
        current.main.close()
        current.tasks.close()
