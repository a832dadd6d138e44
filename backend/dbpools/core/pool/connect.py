"""
DB connection helpers for the pools.

Turns a PoolConfig into a zero-argument connect factory: sqlite3 for the
embedded backend, psycopg (PostgreSQL) or pymysql (MySQL) for networked.
"""

import math
import re
import sqlite3
from collections.abc import Callable, Mapping
from functools import partial
from typing import Any
from urllib.parse import quote, unquote

import psycopg
import pymysql
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from dbpools.core.errors import ConfigurationError
from dbpools.models import BackendKindEnum, PoolConfig, ProductTypeEnum

# Substrings marking a transient in-memory SQLite database
MEMORY_MARKERS = (":memory:", "mode=memory")

# Query parameters SQLite itself understands in a file: URI; everything else is a pragma
SQLITE_URI_KEYWORDS = frozenset({"vfs", "mode", "cache", "psow", "nolock", "immutable"})

_PRAGMA_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PRAGMA_VALUE_RE = re.compile(r"^[A-Za-z0-9_.+\-]+$")

_DEFAULT_PORTS = {ProductTypeEnum.POSTGRES: 5432, ProductTypeEnum.MYSQL: 3306}


# ---------------------------------------------------------------------------
# SQLite URI
# ---------------------------------------------------------------------------


def is_memory_database(file: str) -> bool:
    return any(marker in file for marker in MEMORY_MARKERS)


def check_pragma(key: str, value: str) -> None:
    """Raise ValueError unless key is an identifier and value a plain token."""
    if not _PRAGMA_KEY_RE.match(key):
        raise ValueError(f"invalid pragma name: {key!r}")
    if not _PRAGMA_VALUE_RE.match(value):
        raise ValueError(f"invalid value for pragma {key!r}: {value!r}")


def build_sqlite_uri(file: str, pragmas: Mapping[str, str]) -> str:
    """
    Build the SQLite URI for *file* with every pragma appended as key=value.

    - "/data/app.db", {"foo": "1", "bar": "2"} -> "file:/data/app.db?foo=1&bar=2"
    - Values are percent-encoded, so "+2000" travels as "%2B2000".
    - No pragmas -> no query suffix.
    - A file that is already a file: URI is kept as-is; if it carries a query,
      pragmas are appended with "&".
    """
    base = file if file.startswith("file:") else "file:" + quote(file, safe="/:\\")
    query = "&".join(f"{key}={quote(value, safe='')}" for key, value in pragmas.items())
    if not query:
        return base
    return f"{base}{'&' if '?' in base else '?'}{query}"


def uri_pragmas(uri: str) -> list[tuple[str, str]]:
    """
    Pragmas encoded in a SQLite URI query, in order, minus SQLite's own URI keywords.

    Only %XX escapes are decoded, as SQLite does; "+" is not a space here.
    """
    query = uri.partition("?")[2]
    pairs = []
    for item in filter(None, query.split("&")):
        raw_key, _, raw_value = item.partition("=")
        key, value = unquote(raw_key), unquote(raw_value)
        if key in SQLITE_URI_KEYWORDS:
            continue
        try:
            check_pragma(key, value)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        pairs.append((key, value))
    return pairs


# ---------------------------------------------------------------------------
# Networked URI
# ---------------------------------------------------------------------------


def parse_network_url(uri: str) -> URL:
    """
    Parse a networked-server URI (postgresql://, mysql://, optionally jdbc:-prefixed).

    Raises ConfigurationError for malformed URIs, unsupported products or a missing host.
    """
    raw = uri[len("jdbc:"):] if uri.startswith("jdbc:") else uri
    try:
        url = make_url(raw)
    except (ArgumentError, ValueError) as e:
        raise ConfigurationError(f"malformed datasource URI: {uri!r}") from e
    resolve_product_type(url)
    if not url.host:
        raise ConfigurationError(f"datasource URI has no host: {uri!r}")
    return url


def resolve_product_type(url: URL) -> ProductTypeEnum:
    backend = url.get_backend_name()
    if backend in ("postgresql", "postgres"):
        return ProductTypeEnum.POSTGRES
    if backend == "mysql":
        return ProductTypeEnum.MYSQL
    raise ConfigurationError(f"Unsupported datasource product: {backend}")


# ---------------------------------------------------------------------------
# Connect
# ---------------------------------------------------------------------------


def _flag(params: Mapping[str, str], key: str) -> bool:
    return params.get(key, "").strip().lower() in ("1", "true", "yes", "on")


def _timeout_seconds(timeout_ms: int) -> int | None:
    if timeout_ms <= 0:
        return None
    return max(1, math.ceil(timeout_ms / 1000))


def connect_sqlite(uri: str, params: Mapping[str, str]) -> sqlite3.Connection:
    """
    Open one SQLite connection and apply its per-connection settings.

    URI pragmas run first, then foreign_keys, journal_mode and busy_timeout
    from *params*, so explicit settings win over the pragma map.
    """
    conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
    try:
        for key, value in uri_pragmas(uri):
            conn.execute(f"PRAGMA {key}={value}")
        if _flag(params, "foreign_keys"):
            conn.execute("PRAGMA foreign_keys=ON")
        if params.get("journal_mode"):
            conn.execute(f"PRAGMA journal_mode={params['journal_mode']}").fetchone()
        if params.get("busy_timeout"):
            conn.execute(f"PRAGMA busy_timeout={int(params['busy_timeout'])}")
    except Exception:
        conn.close()
        raise
    return conn


def connect_postgres(url: URL, config: PoolConfig) -> psycopg.Connection:
    params = config.backend_params
    extra = {k: v for k, v in url.query.items() if isinstance(v, str)}
    timeout = _timeout_seconds(config.connection_timeout_ms)
    if timeout is not None:
        extra["connect_timeout"] = timeout
    conn = psycopg.connect(
        host=url.host,
        port=url.port or _DEFAULT_PORTS[ProductTypeEnum.POSTGRES],
        dbname=url.database,
        user=config.username or url.username,
        password=config.password if config.password is not None else (url.password or ""),
        **extra,
    )
    if _flag(params, "cache_prepared_statements") and _flag(params, "use_server_prepared_statements"):
        conn.prepared_max = int(params.get("prepared_statement_cache_size", "100"))
    else:
        conn.prepare_threshold = None
    return conn


def connect_mysql(url: URL, config: PoolConfig) -> Any:
    kwargs: dict[str, Any] = {}
    timeout = _timeout_seconds(config.connection_timeout_ms)
    if timeout is not None:
        kwargs["connect_timeout"] = timeout
    return pymysql.connect(
        host=url.host,
        port=url.port or _DEFAULT_PORTS[ProductTypeEnum.MYSQL],
        database=url.database,
        user=config.username or url.username,
        password=config.password if config.password is not None else (url.password or ""),
        **kwargs,
    )


def connect_factory(config: PoolConfig) -> Callable[[], Any]:
    """
    Return a zero-argument callable that opens one connection for *config*.

    The URI is parsed here, so a malformed networked URI fails when the pool
    is built rather than on first use.
    """
    if config.backend_kind == BackendKindEnum.EMBEDDED:
        uri_pragmas(config.connection_uri)
        return partial(connect_sqlite, config.connection_uri, dict(config.backend_params))
    url = parse_network_url(config.connection_uri)
    if resolve_product_type(url) == ProductTypeEnum.POSTGRES:
        return partial(connect_postgres, url, config)
    return partial(connect_mysql, url, config)


# ---------------------------------------------------------------------------
# Execute
# ---------------------------------------------------------------------------


def execute(
    conn: Any,
    sql: str,
    params: dict | list | tuple | None = None,
    *,
    sql_cache_limit: int | None = None,
) -> Any:
    """
    Execute SQL and return the cursor. Caller uses cursor_to_dicts(cursor) or cursor.rowcount.

    - sql_cache_limit: on psycopg connections, statements longer than this are
      never prepared server-side (prepared_statement_cache_sql_limit).
    """
    kwargs: dict[str, Any] = {}
    if sql_cache_limit is not None and len(sql) > sql_cache_limit and isinstance(conn, psycopg.Connection):
        kwargs["prepare"] = False
    cur = conn.cursor()
    if params is not None:
        cur.execute(sql, params, **kwargs)
    else:
        cur.execute(sql, **kwargs)
    return cur


def cursor_to_dicts(cursor: Any) -> list[dict[str, Any]]:
    """Convert cursor result to list of dicts. Works for sqlite3, psycopg and pymysql."""
    desc = cursor.description
    if not desc:
        return []
    names = [d[0] for d in desc]
    return [dict(zip(names, row, strict=True)) for row in cursor.fetchall()]
