#!/usr/bin/env python3
"""Idempotent local fallback store initializer.

Registers an empty table key for every application table, then optionally
loads seed rows from a JSON file shaped {"table": [row, ...]}. Seeded tables
are replaced wholesale. Safe to run multiple times.

Usage:
  python scripts/init_local_store.py /path/to/local_store.db [--seed seed.json] [--reset]
"""
from __future__ import annotations
import argparse, json, sys, pathlib

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from sparkdb.dispatcher import SCHEMA_STATEMENTS  # noqa: E402
from sparkdb.keyspace import KeySpaceStore  # noqa: E402
from sparkdb.shapes import LocalInterpreter  # noqa: E402


def main(argv=None):
    ap = argparse.ArgumentParser(description='Initialize the local fallback store')
    ap.add_argument('db', help='Path to the local store SQLite file')
    ap.add_argument('--seed', help='JSON file of {table: [rows]} to load')
    ap.add_argument('--reset', action='store_true', help='Drop existing tables first')
    args = ap.parse_args(argv)

    store = KeySpaceStore(args.db)
    if args.reset:
        store.clear()
    interpreter = LocalInterpreter(store, strict=True)
    for statement in SCHEMA_STATEMENTS:
        interpreter.run(statement)

    seeded = {}
    if args.seed:
        data = json.loads(pathlib.Path(args.seed).read_text(encoding='utf-8'))
        if not isinstance(data, dict):
            print('seed file must hold a JSON object of table -> rows', file=sys.stderr)
            return 2
        for table, rows in data.items():
            store.set_table(table, rows)
            seeded[table] = len(rows)
    print(json.dumps({'initialized': args.db, 'tables': store.table_names(), 'seeded': seeded}))
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
