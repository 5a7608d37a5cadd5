"""Server-side cluster stack: try each database cluster in order until one answers.

The stack is built once at process start from an ordered list of connection
string variables (DATABASE_URL, DATABASE_URL_SECONDARY, ...). Unset entries are
dropped. Each request makes at most one attempt per cluster, sequentially; the
first success wins and is labelled PRIMARY (index 0) or SECONDARY_<i>.
"""
from __future__ import annotations
import os, re, sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence
from urllib.parse import urlparse, unquote

from .errors import StackExhaustedError
from .logging_util import info, warn, error
from .sqlite_backend import SQLiteBackend

CLUSTER_ENV_VARS = ("DATABASE_URL", "DATABASE_URL_SECONDARY", "DATABASE_URL_TERTIARY")
NO_CONNECTIONS_MESSAGE = "No database connections available in stack."
_INSERT_IGNORE_RE = re.compile(r"^\s*insert\s+ignore\s+into\b", re.I)


class ClusterConnection(Protocol):  # pragma: no cover - structural typing helper
    def execute(self, query: str, params: Sequence[Any]) -> List[Dict[str, Any]]: ...
    def close(self) -> None: ...


@dataclass
class StackResult:
    rows: List[Dict[str, Any]]
    source: str


def cluster_label(index: int) -> str:
    return "PRIMARY" if index == 0 else f"SECONDARY_{index}"


def execute_on_stack(connections: Sequence[ClusterConnection], query: str,
                     params: Optional[Sequence[Any]] = None) -> StackResult:
    """Run query on the first healthy connection; raise StackExhaustedError if none answers."""
    args = list(params or [])
    last_error: Optional[BaseException] = None
    attempts: List[str] = []
    for i, conn in enumerate(connections):
        label = cluster_label(i)
        attempts.append(label)
        try:
            rows = conn.execute(query, args)
        except Exception as e:
            warn("cluster_attempt_failed", cluster=label, error=str(e))
            last_error = e
            continue
        if i > 0:
            info("cluster_failover_served", cluster=label, failed=attempts[:-1])
        return StackResult(rows=rows, source=label)

    if last_error is None:
        raise StackExhaustedError(NO_CONNECTIONS_MESSAGE, attempts=attempts)
    error("cluster_stack_exhausted", attempts=attempts, error=str(last_error))
    raise StackExhaustedError(
        f"All {len(attempts)} clusters failed; last ({attempts[-1]}): {last_error}",
        last_error=last_error, attempts=attempts,
    ) from last_error


class SQLiteClusterConnection:
    """A cluster reachable through a sqlite:///path URL (or a bare file path)."""

    def __init__(self, url: str, backend: Optional[SQLiteBackend] = None):
        self.url = url
        self.backend = backend or SQLiteBackend(sqlite_path_from_url(url))

    def execute(self, query: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        # the app speaks the MySQL dialect for duplicate-tolerant inserts
        query = _INSERT_IGNORE_RE.sub("INSERT OR IGNORE INTO", query, count=1)
        with self.backend.session(write=True) as conn:
            cur = conn.execute(query, list(params))
            if cur.description is None:
                return []
            return [dict(r) for r in cur.fetchall()]

    def close(self) -> None:
        self.backend.close_all()


def sqlite_path_from_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme in ("", "file"):
        return unquote(parsed.path or url)
    if parsed.scheme == "sqlite":
        # sqlite:///relative.db -> relative.db, sqlite:////abs/path.db -> /abs/path.db
        path = unquote(parsed.path)
        return path[1:] if path.startswith("/") else path
    raise ValueError(f"Unsupported cluster URL scheme: {parsed.scheme!r}")


def connect_cluster(url: str) -> ClusterConnection:
    """Build a connection for one stack entry; unsupported schemes fail at startup."""
    return SQLiteClusterConnection(url)


def cluster_urls_from_env(names: Sequence[str] = CLUSTER_ENV_VARS) -> List[str]:
    urls = []
    for name in names:
        value = (os.environ.get(name) or "").strip()
        if value:
            urls.append(value)
    return urls


class ClusterStack:
    """Ordered, immutable list of cluster connections held for the process lifetime."""

    def __init__(self, connections: Sequence[ClusterConnection]):
        self.connections = tuple(connections)

    @classmethod
    def from_urls(cls, urls: Sequence[str]) -> "ClusterStack":
        return cls([connect_cluster(u) for u in urls if u])

    @classmethod
    def from_env(cls, names: Sequence[str] = CLUSTER_ENV_VARS) -> "ClusterStack":
        urls = cluster_urls_from_env(names)
        info("cluster_stack_configured", clusters=len(urls))
        return cls.from_urls(urls)

    def __len__(self) -> int:
        return len(self.connections)

    def execute(self, query: str, params: Optional[Sequence[Any]] = None) -> StackResult:
        return execute_on_stack(self.connections, query, params)

    def close(self) -> None:
        for conn in self.connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                warn("cluster_close_failed", error=str(e))
