"""Embedded key-space store used by the offline fallback path.

One persisted key per table (``spark_db_<table>``) holding the whole row list as
JSON text. Every write replaces the whole table and every read decodes it again.
Missing or corrupted tables read as empty. Last write wins across processes.
"""
from __future__ import annotations
import json, sqlite3
from typing import Any, Dict, List, Optional

from . import KEYSPACE_PREFIX
from .config import env_str
from .logging_util import debug, warn, error
from .sqlite_backend import SQLiteBackend

Row = Dict[str, Any]

_KV_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS kv_store ("
    " key TEXT PRIMARY KEY,"
    " value TEXT NOT NULL,"
    " updated_at TEXT NOT NULL DEFAULT (datetime('now')))"
)


class KeySpaceStore:
    """Table name -> list of rows, persisted through a SQLite key/value table."""

    def __init__(self, path: str, prefix: Optional[str] = None, backend: Optional[SQLiteBackend] = None):
        self.backend = backend or SQLiteBackend(path)
        self.prefix = prefix if prefix is not None else env_str("KEYSPACE_PREFIX", KEYSPACE_PREFIX)
        self._schema_ready = False

    @property
    def path(self) -> str:
        return self.backend.path

    def key_for(self, table: str) -> str:
        return f"{self.prefix}{table}"

    def _ensure_schema(self, conn) -> None:
        if not self._schema_ready:
            conn.execute(_KV_SCHEMA)
            self._schema_ready = True

    # --- Table access -----------------------------------------------------------------
    def get_table(self, name: str) -> List[Row]:
        key = self.key_for(name)
        try:
            with self.backend.session(write=True) as conn:
                self._ensure_schema(conn)
                row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            error("keyspace_read_failed", table=name, path=self.path, error=str(e))
            return []
        if row is None:
            return []
        try:
            data = json.loads(row[0])
        except (TypeError, ValueError) as e:
            warn("keyspace_corrupt_table", table=name, error=str(e))
            return []
        if not isinstance(data, list):
            warn("keyspace_corrupt_table", table=name, error=f"expected list, got {type(data).__name__}")
            return []
        return data

    def set_table(self, name: str, rows: List[Row]) -> None:
        try:
            payload = json.dumps(list(rows), separators=(',', ':'))
        except (TypeError, ValueError) as e:
            error("keyspace_serialize_failed", table=name, error=str(e))
            return
        try:
            with self.backend.session(write=True) as conn:
                self._ensure_schema(conn)
                conn.execute(
                    "INSERT INTO kv_store(key, value, updated_at) VALUES (?, ?, datetime('now')) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                    (self.key_for(name), payload),
                )
        except sqlite3.Error as e:
            error("keyspace_write_failed", table=name, path=self.path, error=str(e))
            return
        debug("keyspace_table_written", table=name, rows=len(rows))

    def ensure_table(self, name: str) -> None:
        """Create an empty table unless one is already stored under its key."""
        if name not in self.table_names():
            self.set_table(name, [])

    def clear_table(self, name: str) -> None:
        with self.backend.session(write=True) as conn:
            self._ensure_schema(conn)
            conn.execute("DELETE FROM kv_store WHERE key = ?", (self.key_for(name),))

    def clear(self) -> int:
        """Remove every namespaced table; unrelated keys in the medium are left alone."""
        with self.backend.session(write=True) as conn:
            self._ensure_schema(conn)
            cur = conn.execute("DELETE FROM kv_store WHERE substr(key, 1, ?) = ?", (len(self.prefix), self.prefix))
            return cur.rowcount

    def table_names(self) -> List[str]:
        with self.backend.session(write=True) as conn:
            self._ensure_schema(conn)
            keys = [r[0] for r in conn.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(self.prefix), self.prefix),
            )]
        return [k[len(self.prefix):] for k in keys]

    def dump(self) -> Dict[str, List[Row]]:
        return {name: self.get_table(name) for name in self.table_names()}


def cli_dump_tables():  # pragma: no cover - thin CLI wrapper
    """CLI helper: print every namespaced table in a local store as JSON."""
    import argparse
    ap = argparse.ArgumentParser(description='Dump the tables held in a local fallback store')
    ap.add_argument('db', help='Path to the local store SQLite file')
    ap.add_argument('--table', help='Only dump this table')
    args = ap.parse_args()
    store = KeySpaceStore(args.db)
    out = {args.table: store.get_table(args.table)} if args.table else store.dump()
    print(json.dumps({'path': store.path, 'tables': out, 'health_check': store.backend.health_check()}, indent=2))


if __name__ == '__main__':  # pragma: no cover
    cli_dump_tables()
