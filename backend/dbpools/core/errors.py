"""
Error types raised while provisioning and using datasource pools.

Configuration problems are fatal at startup; exhaustion is retriable.
"""


class DataSourceError(Exception):
    """Base class for every datasource/pool error."""

    retriable = False


class ConfigurationError(DataSourceError, ValueError):
    """Malformed URI, invalid pragma, unparsable duration or unsafe defaults."""


class PoolInitializationError(ConfigurationError):
    """The pool could not open its initial connections."""


class PoolExhaustedError(DataSourceError, TimeoutError):
    """No connection became available within the connection timeout."""

    retriable = True

    def __init__(self, pool_name: str, timeout_ms: int, stats: dict | None = None) -> None:
        self.pool_name = pool_name
        self.timeout_ms = timeout_ms
        self.stats = stats or {}
        super().__init__(
            f"{pool_name} - Connection is not available, request timed out after {timeout_ms}ms "
            f"(total={self.stats.get('total')}, active={self.stats.get('active')}, "
            f"idle={self.stats.get('idle')}, waiting={self.stats.get('waiting')})"
        )


class PoolClosedError(DataSourceError, RuntimeError):
    """The pool has been shut down."""
