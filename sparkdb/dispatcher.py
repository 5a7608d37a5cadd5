"""Client query dispatcher: remote endpoint first, local key-space store on failure.

Every application query goes through QueryDispatcher.execute(). The remote call
is a POST of {"query", "params"} to the /api/query endpoint. Any transport
error, non-2xx status or unreadable body flips the connectivity mode to local
and re-runs the same query through the LocalInterpreter. A 2xx answer flips
the mode back to remote. execute() never raises for connectivity reasons.
"""
from __future__ import annotations
import threading
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

import httpx

from .config import env_float, env_str
from .errors import UnhandledQueryShape
from .keyspace import KeySpaceStore
from .logging_util import debug, warn, error
from .mode import ConnectivityMode, ModePublisher, default_publisher
from .shapes import LocalInterpreter

DEFAULT_ENDPOINT = "http://127.0.0.1:5000/api/query"
DEFAULT_LOCAL_DB = "data/local_store.db"
DEFAULT_TIMEOUT_S = 10.0

# Statements issued by init_schema(); remote clusters create real tables, the
# local store only registers empty table keys.
SCHEMA_STATEMENTS = [
    "CREATE TABLE IF NOT EXISTS profiles (id VARCHAR(255) PRIMARY KEY, username VARCHAR(255), email VARCHAR(255), photoURL LONGTEXT, bio TEXT, theme VARCHAR(20) DEFAULT 'nebula', interests TEXT)",
    "CREATE TABLE IF NOT EXISTS posts (id VARCHAR(36) PRIMARY KEY, user_id VARCHAR(255), domain_id VARCHAR(255), content TEXT, imageURL LONGTEXT, created_at DATETIME)",
    "CREATE TABLE IF NOT EXISTS comments (id VARCHAR(36) PRIMARY KEY, post_id VARCHAR(36), user_id VARCHAR(255), content TEXT, parent_id VARCHAR(255) DEFAULT NULL, created_at DATETIME)",
    "CREATE TABLE IF NOT EXISTS likes (id VARCHAR(36) PRIMARY KEY, post_id VARCHAR(36), user_id VARCHAR(255), created_at DATETIME)",
    "CREATE TABLE IF NOT EXISTS follows (follower_id VARCHAR(255), following_id VARCHAR(255), status VARCHAR(20) DEFAULT 'accepted', PRIMARY KEY (follower_id, following_id))",
    "CREATE TABLE IF NOT EXISTS saved_domains (id VARCHAR(36) PRIMARY KEY, user_id VARCHAR(255), domain_id VARCHAR(255), domain_name VARCHAR(255), saved_at DATETIME)",
    "CREATE TABLE IF NOT EXISTS chats (id VARCHAR(255) PRIMARY KEY, participants JSON, lastMessage TEXT, updatedAt DATETIME)",
    "CREATE TABLE IF NOT EXISTS messages (id VARCHAR(36) PRIMARY KEY, chat_id VARCHAR(255), senderId VARCHAR(255), text TEXT, createdAt DATETIME)",
]


class RemoteQueryError(Exception):
    """Internal signal: the remote path did not produce rows."""


@dataclass(frozen=True)
class DispatcherConfig:
    endpoint: str = DEFAULT_ENDPOINT
    timeout_s: float = DEFAULT_TIMEOUT_S
    local_db: str = DEFAULT_LOCAL_DB

    @classmethod
    def from_env(cls) -> "DispatcherConfig":
        timeout_s = env_float("SPARK_QUERY_TIMEOUT_S", DEFAULT_TIMEOUT_S)
        if timeout_s <= 0:
            warn("backend_config_clamped", original={"timeout_s": timeout_s}, clamped={"timeout_s": DEFAULT_TIMEOUT_S})
            timeout_s = DEFAULT_TIMEOUT_S
        return cls(
            endpoint=env_str("SPARK_QUERY_ENDPOINT", DEFAULT_ENDPOINT),
            timeout_s=timeout_s,
            local_db=env_str("SPARK_LOCAL_DB", DEFAULT_LOCAL_DB),
        )


def extract_rows(payload: Any) -> List[Any]:
    """Accept {"data": {"rows": [...]}} or {"data": [...]}; anything else is no rows."""
    if not isinstance(payload, dict):
        raise RemoteQueryError(f"non-object json: {type(payload).__name__}")
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("rows"), list):
        return data["rows"]
    if isinstance(data, list):
        return data
    return []


class QueryDispatcher:
    """Routes queries to the remote endpoint with transparent local fallback.

    Usage:
        with QueryDispatcher(DispatcherConfig.from_env()) as db:
            rows = db.execute("SELECT * FROM profiles WHERE id = ?", [uid])
    """

    def __init__(self, config: Optional[DispatcherConfig] = None, *,
                 store: Optional[KeySpaceStore] = None,
                 interpreter: Optional[LocalInterpreter] = None,
                 publisher: Optional[ModePublisher] = None,
                 client: Optional[httpx.Client] = None):
        self.config = config or DispatcherConfig.from_env()
        if interpreter is None:
            interpreter = LocalInterpreter(store or KeySpaceStore(self.config.local_db))
        self.interpreter = interpreter
        self.store = interpreter.store
        self.publisher = publisher or default_publisher
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=self.config.timeout_s)

    @property
    def mode(self) -> ConnectivityMode:
        return self.publisher.mode

    def execute(self, query: str, params: Optional[Sequence[Any]] = None) -> List[Any]:
        args = list(params or [])
        try:
            rows = self._execute_remote(query, args)
        except (httpx.HTTPError, RemoteQueryError, ValueError) as e:
            warn("remote_query_failed", endpoint=self.config.endpoint, error=str(e))
            self.publisher.set_mode(ConnectivityMode.LOCAL)
            return self._execute_local(query, args)
        self.publisher.set_mode(ConnectivityMode.REMOTE)
        return rows

    def _execute_remote(self, query: str, params: List[Any]) -> List[Any]:
        try:
            r = self.client.post(self.config.endpoint, json={"query": query, "params": params})
        except TypeError as e:
            # params the wire format cannot carry; the local store may still answer
            raise RemoteQueryError(f"request not serializable: {e}") from e
        if not r.is_success:
            raise RemoteQueryError(f"API Error: HTTP {r.status_code}")
        rows = extract_rows(r.json())
        debug("remote_query_ok", rows=len(rows))
        return rows

    def _execute_local(self, query: str, params: List[Any]) -> List[Any]:
        try:
            return self.interpreter.run(query, params)
        except UnhandledQueryShape as e:
            error("unhandled_query_shape_strict", query=e.query[:120])
            return []

    def init_schema(self) -> None:
        for statement in SCHEMA_STATEMENTS:
            self.execute(statement)
        debug("schema_initialized", mode=self.mode.value)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "QueryDispatcher":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


_dispatcher: Optional[QueryDispatcher] = None
_dispatcher_lock = threading.Lock()


def get_dispatcher() -> QueryDispatcher:
    """Process-wide dispatcher built lazily from the environment."""
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is None:
            _dispatcher = QueryDispatcher(DispatcherConfig.from_env())
        return _dispatcher


def reset_dispatcher() -> None:
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is not None:
            _dispatcher.close()
        _dispatcher = None


def execute(query: str, params: Optional[Sequence[Any]] = None) -> List[Any]:
    return get_dispatcher().execute(query, params)
