"""
Bounded, thread-safe connection pool.

One ConnectionPool per PoolConfig. Waiters are served strictly FIFO; idle
connections are reused most-recently-returned first. Includes health-check on
checkout, max-lifetime retirement, idle reaping down to min_idle, and leak
detection that reports (but never interrupts) long-held connections.
"""

import logging
import threading
import time
import traceback
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, NamedTuple

from dbpools.core.errors import PoolClosedError, PoolExhaustedError, PoolInitializationError
from dbpools.models import PoolConfig

from .connect import execute
from .health import health_check

_log = logging.getLogger(__name__)

_ALIVE_BYPASS_SEC = 0.5  # only ping connections idle longer than this (seconds)
_RECLAIMED_LIMIT = 64  # reclaimed connection ids remembered for late release()


class _PoolEntry(NamedTuple):
    conn: Any
    created_at: float  # time.monotonic() when the connection was opened
    last_used: float  # time.monotonic() when last returned to pool


class _Lease(NamedTuple):
    entry: _PoolEntry
    acquired_at: float
    stack: str | None  # where it was acquired, kept only with leak detection on


class ConnectionPool:
    """Connection pool bounded by config.max_pool_size.

    With max_pool_size=1 the pool is a FIFO mutex over its only connection.
    """

    def __init__(
        self,
        config: PoolConfig,
        connect: Callable[[], Any],
        *,
        housekeeping_period: float = 30.0,
    ) -> None:
        self.config = config
        self._connect = connect
        self._idle: list[_PoolEntry] = []
        self._leases: dict[int, _Lease] = {}
        self._leaked: set[int] = set()
        self._reclaimed: deque[int] = deque(maxlen=_RECLAIMED_LIMIT)
        self._total = 0  # idle + leased + being opened
        self._waiters: deque[object] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._stop = threading.Event()
        self._housekeeper: threading.Thread | None = None
        self._leak_detector: threading.Thread | None = None

        _log.info("%s - Starting (max=%d, min_idle=%d)", self.name, config.max_pool_size, config.min_idle)
        self._fill_initial()
        if housekeeping_period > 0:
            self._housekeeper = threading.Thread(
                target=self._housekeeping_loop,
                args=(housekeeping_period,),
                name=f"{self.name}-housekeeper",
                daemon=True,
            )
            self._housekeeper.start()
        if config.leak_detection_threshold_ms > 0:
            self._leak_detector = threading.Thread(
                target=self._leak_detection_loop,
                args=(config.leak_detection_threshold_ms / 1000,),
                name=f"{self.name}-leak-detector",
                daemon=True,
            )
            self._leak_detector.start()
        _log.info("%s - Start completed", self.name)

    @property
    def name(self) -> str:
        return self.config.pool_name

    @property
    def max_pool_size(self) -> int:
        return self.config.max_pool_size

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(self, timeout_ms: int | None = None) -> Any:
        """
        Borrow a connection, waiting up to *timeout_ms* (default: connection_timeout_ms).

        Raises PoolExhaustedError on timeout and PoolClosedError after close().
        The caller must release() it on every exit path; prefer connection().
        """
        timeout_ms = self.config.connection_timeout_ms if timeout_ms is None else timeout_ms
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            entry = self._reserve(deadline, timeout_ms)
            if entry is None:
                entry = self._open_reserved()
            elif not self._usable(entry):
                self._discard(entry)
                continue
            return self._lease(entry)

    def release(self, conn: Any) -> None:
        """Return a connection to the pool (or close it if retired or the pool is closed)."""
        key = id(conn)
        with self._cond:
            lease = self._leases.pop(key, None)
            if lease is None and key in self._reclaimed:
                self._reclaimed.remove(key)
                return
            leaked = key in self._leaked
            self._leaked.discard(key)
        if lease is None:
            raise ValueError(f"{self.name} - connection {conn!r} was not acquired from this pool")
        if leaked:
            _log.info(
                "%s - Previously reported leaked connection %r was returned after %.0fms",
                self.name,
                conn,
                (time.monotonic() - lease.acquired_at) * 1000,
            )

        try:
            conn.rollback()
        except Exception:
            _log.debug("%s - Rollback failed, closing connection %r", self.name, conn, exc_info=True)
            self._discard(lease.entry)
            return

        if self._closed or self._is_expired(lease.entry):
            self._discard(lease.entry)
            return
        with self._cond:
            if not self._closed:
                self._idle.append(lease.entry._replace(last_used=time.monotonic()))
                self._cond.notify_all()
                return
        self._discard(lease.entry)

    def execute(self, conn: Any, sql: str, params: dict | list | tuple | None = None) -> Any:
        """Execute on a borrowed connection, honoring prepared_statement_cache_sql_limit."""
        limit = self.config.backend_params.get("prepared_statement_cache_sql_limit")
        return execute(conn, sql, params, sql_cache_limit=int(limit) if limit else None)

    @contextmanager
    def connection(self, timeout_ms: int | None = None) -> Iterator[Any]:
        """Context manager: acquire on enter, release on every exit path."""
        conn = self.acquire(timeout_ms)
        try:
            yield conn
        finally:
            self.release(conn)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def housekeep(self) -> None:
        """
        Retire expired idle connections, reap idle ones beyond min_idle, reclaim
        leaked connections past max lifetime, then top the pool up to min_idle.
        """
        now = time.monotonic()
        idle_timeout = self.config.idle_timeout_ms / 1000
        retired: list[_PoolEntry] = []
        with self._cond:
            if self._closed:
                return
            keep: list[_PoolEntry] = []
            for entry in self._idle:
                if self._is_expired(entry, now):
                    retired.append(entry)
                else:
                    keep.append(entry)
            surplus = len(keep) + len(self._leases) - self.config.min_idle
            if idle_timeout > 0 and surplus > 0:
                # oldest-returned first
                for entry in sorted(keep, key=lambda e: e.last_used):
                    if surplus <= 0:
                        break
                    if now - entry.last_used > idle_timeout:
                        keep.remove(entry)
                        retired.append(entry)
                        surplus -= 1
            self._idle = keep
            reclaimed = [
                self._leases.pop(key)
                for key in list(self._leaked)
                if key in self._leases and self._is_expired(self._leases[key].entry, now)
            ]
            for lease in reclaimed:
                key = id(lease.entry.conn)
                self._leaked.discard(key)
                self._reclaimed.append(key)
        for lease in reclaimed:
            _log.warning("%s - Reclaiming leaked connection %r past its max lifetime", self.name, lease.entry.conn)
        for entry in retired + [lease.entry for lease in reclaimed]:
            self._discard(entry)
        self._fill_to_min_idle()
        _log.debug("%s - Housekeeping done: %s", self.name, self.stats())

    def _housekeeping_loop(self, period: float) -> None:
        while not self._stop.wait(period):
            try:
                self.housekeep()
            except Exception:
                _log.warning("%s - Housekeeping failed", self.name, exc_info=True)

    # ------------------------------------------------------------------
    # Shutdown / stats
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close idle connections and wake waiters. In-use connections close on release."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            idle, self._idle = self._idle, []
            self._cond.notify_all()
        _log.info("%s - Shutdown initiated...", self.name)
        self._stop.set()
        for thread in (self._housekeeper, self._leak_detector):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=5)
        for entry in idle:
            self._discard(entry)
        _log.info("%s - Shutdown completed", self.name)

    def stats(self) -> dict[str, Any]:
        """Return pool statistics for monitoring."""
        with self._cond:
            return {
                "pool_name": self.name,
                "total": self._total,
                "active": len(self._leases),
                "idle": len(self._idle),
                "waiting": len(self._waiters),
                "max_pool_size": self.config.max_pool_size,
                "min_idle": self.config.min_idle,
                "closed": self._closed,
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reserve(self, deadline: float, timeout_ms: int) -> _PoolEntry | None:
        """Wait for this caller's FIFO turn; return an idle entry, or None after reserving a new slot."""
        ticket = object()
        with self._cond:
            if self._closed:
                raise PoolClosedError(f"{self.name} has been closed")
            self._waiters.append(ticket)
            try:
                while True:
                    if self._closed:
                        raise PoolClosedError(f"{self.name} has been closed")
                    if self._waiters[0] is ticket:
                        if self._idle:
                            return self._idle.pop()
                        if self._total < self.config.max_pool_size:
                            self._total += 1
                            return None
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise PoolExhaustedError(self.name, timeout_ms, self._stats_locked())
                    self._cond.wait(remaining)
            finally:
                self._waiters.remove(ticket)
                self._cond.notify_all()

    def _open_reserved(self) -> _PoolEntry:
        """Open a connection for a slot already counted in _total."""
        try:
            conn = self._connect()
        except Exception:
            with self._cond:
                self._total -= 1
                self._cond.notify_all()
            raise
        now = time.monotonic()
        return _PoolEntry(conn=conn, created_at=now, last_used=now)

    def _lease(self, entry: _PoolEntry) -> Any:
        key = id(entry.conn)
        stack = None
        if self.config.leak_detection_threshold_ms > 0:
            stack = "".join(traceback.format_stack()[:-2])
        with self._cond:
            if self._closed:
                closed = True
            else:
                closed = False
                # id reused by a new connection; the reclaimed one is gone
                if key in self._reclaimed:
                    self._reclaimed.remove(key)
                self._leases[key] = _Lease(entry=entry, acquired_at=time.monotonic(), stack=stack)
        if closed:
            self._discard(entry)
            raise PoolClosedError(f"{self.name} has been closed")
        return entry.conn

    def _leak_detection_loop(self, threshold: float) -> None:
        """Report leases held past *threshold* seconds, once each."""
        while True:
            now = time.monotonic()
            # a lease taken after this scan is due no earlier than now + threshold
            next_due = now + threshold
            leaked: list[_Lease] = []
            with self._cond:
                for key, lease in self._leases.items():
                    if key in self._leaked:
                        continue
                    due = lease.acquired_at + threshold
                    if due <= now:
                        self._leaked.add(key)
                        leaked.append(lease)
                    else:
                        next_due = min(next_due, due)
            for lease in leaked:
                self._report_leak(lease)
            if self._stop.wait(next_due - now):
                return

    def _report_leak(self, lease: _Lease) -> None:
        _log.warning(
            "%s - Connection leak detection triggered for %r, held longer than %dms. Acquired at:\n%s",
            self.name,
            lease.entry.conn,
            self.config.leak_detection_threshold_ms,
            lease.stack,
        )

    def _usable(self, entry: _PoolEntry) -> bool:
        if self._is_expired(entry):
            return False
        if time.monotonic() - entry.last_used > _ALIVE_BYPASS_SEC:
            return health_check(entry.conn)
        return True

    def _is_expired(self, entry: _PoolEntry, now: float | None = None) -> bool:
        max_lifetime = self.config.max_lifetime_ms / 1000
        if max_lifetime <= 0:
            return False
        now = time.monotonic() if now is None else now
        return (now - entry.created_at) > max_lifetime

    def _discard(self, entry: _PoolEntry) -> None:
        """Close a connection and free its slot."""
        self._close_quiet(entry.conn)
        with self._cond:
            self._total -= 1
            self._cond.notify_all()

    def _fill_initial(self) -> None:
        target = min(self.config.min_idle, self.config.max_pool_size)
        for _ in range(target):
            with self._cond:
                self._total += 1
            try:
                entry = self._open_reserved()
            except Exception as e:
                self.close()
                raise PoolInitializationError(f"{self.name} - failed to open initial connection: {e}") from e
            with self._cond:
                self._idle.append(entry)

    def _fill_to_min_idle(self) -> None:
        while True:
            with self._cond:
                if self._closed or self._total >= self.config.min_idle:
                    return
                self._total += 1
            try:
                entry = self._open_reserved()
            except Exception:
                _log.warning("%s - Cannot add connection while filling to min_idle", self.name, exc_info=True)
                return
            with self._cond:
                if self._closed:
                    closed = True
                else:
                    closed = False
                    self._idle.append(entry)
                    self._cond.notify_all()
            if closed:
                self._discard(entry)
                return

    def _stats_locked(self) -> dict[str, Any]:
        return {
            "total": self._total,
            "active": len(self._leases),
            "idle": len(self._idle),
            "waiting": len(self._waiters),
        }

    @staticmethod
    def _close_quiet(conn: Any) -> None:
        try:
            conn.close()
        except Exception:
            pass
