"""
Datasource models: backend kind, SQLite journal modes and the resolved PoolConfig.

PoolConfig is the only thing a ConnectionPool needs; it is built once at
startup by dbpools.core.datasources and never changed afterwards.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class BackendKindEnum(str, Enum):
    """Storage engine behind a pool: embedded SQLite file or networked server."""

    EMBEDDED = "embedded"
    NETWORKED = "networked"


class ProductTypeEnum(str, Enum):
    """Networked server products (postgres, mysql)."""

    POSTGRES = "postgres"
    MYSQL = "mysql"


class JournalModeEnum(str, Enum):
    """SQLite journal modes accepted by PRAGMA journal_mode."""

    DELETE = "DELETE"
    TRUNCATE = "TRUNCATE"
    PERSIST = "PERSIST"
    MEMORY = "MEMORY"
    WAL = "WAL"
    OFF = "OFF"


# ---------------------------------------------------------------------------
# Backend parameter namespaces
# ---------------------------------------------------------------------------

# Statement caching for networked servers; never sent to SQLite.
NETWORKED_PARAM_KEYS = frozenset(
    {
        "cache_prepared_statements",
        "prepared_statement_cache_size",
        "prepared_statement_cache_sql_limit",
        "use_server_prepared_statements",
        "rewrite_batched_statements",
    }
)

# Per-connection SQLite settings; never sent to a networked server.
EMBEDDED_PARAM_KEYS = frozenset(
    {
        "foreign_keys",
        "get_generated_keys",
        "journal_mode",
        "busy_timeout",
    }
)


# ---------------------------------------------------------------------------
# PoolConfig
# ---------------------------------------------------------------------------


class PoolConfig(BaseModel):
    """Fully resolved settings for one connection pool.

    Timeouts are milliseconds; 0 disables the idle reaper (idle_timeout_ms),
    lifetime retirement (max_lifetime_ms) and leak detection
    (leak_detection_threshold_ms).
    """

    model_config = ConfigDict(frozen=True)

    backend_kind: BackendKindEnum
    connection_uri: str = Field(min_length=1)
    username: str | None = None
    password: str | None = Field(default=None, repr=False)
    pool_name: str = Field(min_length=1)
    max_pool_size: int = Field(ge=1)
    min_idle: int = Field(default=0, ge=0)
    connection_timeout_ms: int = Field(default=30_000, ge=0)
    idle_timeout_ms: int = Field(default=600_000, ge=0)
    max_lifetime_ms: int = Field(default=1_800_000, ge=0)
    leak_detection_threshold_ms: int = Field(default=0, ge=0)
    backend_params: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _clamp_min_idle(cls, data: object) -> object:
        if isinstance(data, dict):
            max_size = data.get("max_pool_size")
            min_idle = data.get("min_idle")
            if isinstance(max_size, int) and isinstance(min_idle, int) and min_idle > max_size:
                data = {**data, "min_idle": max_size}
        return data

    @model_validator(mode="after")
    def _check_param_namespace(self) -> "PoolConfig":
        keys = set(self.backend_params)
        if self.backend_kind == BackendKindEnum.NETWORKED:
            foreign = keys - NETWORKED_PARAM_KEYS
        else:
            foreign = keys & NETWORKED_PARAM_KEYS
        if foreign:
            raise ValueError(
                f"{self.backend_kind.value} pool cannot take parameters: {', '.join(sorted(foreign))}"
            )
        return self
