"""SQLite medium underneath the local key-space store and the SQLite clusters.

Features:
    - Writable connections with tuned pragmas (WAL, busy timeout, cache size)
    - Snapshot read-only connections (mode=ro&immutable=1) for health checks
    - Environment driven tuning with clamping + sanity logging
    - Optional small connection pool via BACKEND_POOL_SIZE
    - session() context manager: commit on success, rollback on error, always release
"""
from __future__ import annotations
import sqlite3, os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from .config import env_int, env_flag, clamp
from .logging_util import warn, debug

MAX_CACHE_KIB = 512 * 1024        # 512 MiB upper clamp
MIN_CACHE_KIB = 16
DEFAULT_CACHE_KIB = 16 * 1024     # 16 MiB, the local store is small
MAX_BUSY_TIMEOUT_MS = 120_000
DEFAULT_BUSY_TIMEOUT_MS = 30_000


@dataclass
class BackendConfig:
    cache_kib: int = DEFAULT_CACHE_KIB
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    pool_size: int = 0
    verify_on_connect: bool = False

    @classmethod
    def from_env(cls) -> "BackendConfig":
        cache_kib = env_int("CACHE_SIZE_KIB", DEFAULT_CACHE_KIB)
        busy = env_int("BUSY_TIMEOUT_MS", DEFAULT_BUSY_TIMEOUT_MS)
        pool_size = max(0, env_int("BACKEND_POOL_SIZE", 0))
        verify = env_flag("VERIFY_ON_CONNECT")
        adjusted = {}
        if not MIN_CACHE_KIB <= cache_kib <= MAX_CACHE_KIB:
            adjusted["cache_kib"] = cache_kib
            cache_kib = clamp(cache_kib, MIN_CACHE_KIB, MAX_CACHE_KIB)
        if not 0 <= busy <= MAX_BUSY_TIMEOUT_MS:
            adjusted["busy_timeout_ms"] = busy
            busy = clamp(busy, 0, MAX_BUSY_TIMEOUT_MS)
        if adjusted:
            warn("backend_config_clamped", original=adjusted,
                 clamped={"cache_kib": cache_kib, "busy_timeout_ms": busy})
        return cls(cache_kib=cache_kib, busy_timeout_ms=busy, pool_size=pool_size, verify_on_connect=verify)


class _PooledConnection:
    """Light wrapper so .close() returns the connection to the pool instead of closing it."""
    def __init__(self, inner: sqlite3.Connection, pool: List[sqlite3.Connection], max_pool: int):
        self._inner = inner
        self._pool = pool
        self._max_pool = max_pool

    def __getattr__(self, item):
        return getattr(self._inner, item)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return self._inner.__exit__(exc_type, exc, tb)

    def close(self):
        if self._inner is None:
            return
        if len(self._pool) < self._max_pool:
            self._pool.append(self._inner)
        else:
            self._inner.close()
        self._inner = None  # type: ignore


class SQLiteBackend:
    """SQLite connection factory.

    Responsibilities:
      - Provide writable connections or immutable snapshot read connections
      - Apply tuned pragmas with safe clamping
      - Optional small connection pool (opt-in)
      - Health check utility
    """
    def __init__(self, path: str, config: Optional[BackendConfig] = None):
        path = str(path)
        if os.path.isdir(path):
            raise ValueError(f"Path points to a directory, expected file: {path}")
        self.path = path
        self.config = config or BackendConfig.from_env()
        self._pools: Dict[bool, List[sqlite3.Connection]] = {True: [], False: []}
        self._pool_hits: int = 0
        self._pool_misses: int = 0

    # --- Public API -----------------------------------------------------------------
    def connect(self, write: bool) -> sqlite3.Connection:
        """Return a configured sqlite3.Connection.

        write=True creates the file (and parent directory) if needed.
        write=False opens an immutable snapshot and raises sqlite3.OperationalError
        with a clearer message when the file does not exist.
        """
        if not write and not os.path.exists(self.path):
            raise sqlite3.OperationalError(f"Database not found and read-only access requested: {self.path}")

        if self.config.pool_size > 0 and self._pools[write]:
            conn = self._pools[write].pop()
            self._pool_hits += 1
            return _PooledConnection(conn, self._pools[write], self.config.pool_size)  # type: ignore
        if self.config.pool_size > 0:
            self._pool_misses += 1

        if write:
            parent = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(parent, exist_ok=True)
            conn = sqlite3.connect(self.path, check_same_thread=False)
        else:
            conn = sqlite3.connect(f"file:{self.path}?mode=ro&immutable=1", uri=True, check_same_thread=False)

        conn.row_factory = sqlite3.Row
        self._apply_pragmas(conn, write)
        if self.config.verify_on_connect and write:
            res = conn.execute("PRAGMA integrity_check").fetchone()[0]
            if res != "ok":
                warn("integrity_check_failed", path=self.path, result=res)
        if self.config.pool_size == 0:
            return conn
        return _PooledConnection(conn, self._pools[write], self.config.pool_size)  # type: ignore

    @contextmanager
    def session(self, write: bool = True) -> Iterator[sqlite3.Connection]:
        """Yield a connection; commit on success, roll back on error, always release it."""
        conn = self.connect(write=write)
        try:
            yield conn
            if write:
                conn.commit()
        except BaseException:
            if write:
                conn.rollback()
            raise
        finally:
            conn.close()

    def health_check(self) -> Dict[str, Any]:
        """Return core pragma values and basic status."""
        try:
            conn = self.connect(write=False)
        except sqlite3.Error as e:
            return {"ok": False, "path": self.path, "error": str(e)}
        try:
            rows = {
                "journal_mode": conn.execute("PRAGMA journal_mode").fetchone()[0],
                "cache_size": conn.execute("PRAGMA cache_size").fetchone()[0],
                "busy_timeout": conn.execute("PRAGMA busy_timeout").fetchone()[0],
            }
            if self.config.pool_size > 0:
                rows.update({
                    "pool_size_configured": self.config.pool_size,
                    "pool_available_read": len(self._pools[False]),
                    "pool_available_write": len(self._pools[True]),
                    "pool_hits": self._pool_hits,
                    "pool_misses": self._pool_misses,
                })
            return {"ok": True, "path": self.path, **rows}
        finally:
            conn.close()

    def get_connection_id(self, conn) -> int:
        """Identity of the underlying connection (lets tests observe pool reuse)."""
        if hasattr(conn, '_inner'):
            return id(conn._inner)
        return id(conn)

    def close_all(self):
        """Close all pooled connections (test teardown / shutdown)."""
        for pool in self._pools.values():
            while pool:
                pool.pop().close()

    # --- Internal -------------------------------------------------------------------
    def _apply_pragmas(self, conn: sqlite3.Connection, write: bool) -> None:
        mode = "write" if write else "snapshot_ro"
        conn.execute(f"PRAGMA busy_timeout={int(self.config.busy_timeout_ms)}")
        if not write:
            try:
                conn.execute("PRAGMA query_only=ON")
            except sqlite3.Error as e:
                debug("pragma_query_only_failed", mode=mode, path=self.path, error=str(e))
            return
        try:
            jm = conn.execute("PRAGMA journal_mode=WAL").fetchone()[0]
            if jm.lower() != "wal":
                warn("journal_mode_unexpected", got=jm, path=self.path)
        except sqlite3.Error as e:
            warn("pragma_failed", pragma="journal_mode=WAL", mode=mode, path=self.path, error=str(e))
        for p in (f"cache_size=-{self.config.cache_kib}", "synchronous=NORMAL", "trusted_schema=OFF"):
            try:
                conn.execute(f"PRAGMA {p}")
            except sqlite3.Error as e:
                warn("pragma_failed", pragma=p, mode=mode, path=self.path, error=str(e))
