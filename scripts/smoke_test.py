#!/usr/bin/env python3
"""Offline smoke test for the fallback path.

Points the dispatcher at an unreachable endpoint and checks:
  * schema init registers every application table locally
  * profile insert + select round-trips through the local interpreter
  * duplicate profile insert is ignored
  * like then unlike leaves no like rows
  * unknown query shape yields []
  * connectivity mode ends in 'local' and the transition was published once
  * (Optional) store health_check is ok (set SMOKE_HEALTH_CHECK=1)

Env: SPARK_LOCAL_DB (required), SPARK_QUERY_ENDPOINT (default unreachable port 9).
"""
import os, sys, json, pathlib

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from sparkdb.dispatcher import QueryDispatcher, DispatcherConfig, SCHEMA_STATEMENTS  # noqa: E402
from sparkdb.mode import ModePublisher  # noqa: E402

DB_PATH = os.environ.get('SPARK_LOCAL_DB')
ENDPOINT = os.environ.get('SPARK_QUERY_ENDPOINT', 'http://127.0.0.1:9/api/query')

failures = []

def check(cond, msg):
    if not cond:
        failures.append(msg)

if not DB_PATH:
    print(json.dumps({'success': False, 'error': 'SPARK_LOCAL_DB not set'}))
    sys.exit(1)

publisher = ModePublisher()
seen = []
publisher.subscribe(lambda m: seen.append(m.value))
config = DispatcherConfig(endpoint=ENDPOINT, timeout_s=2.0, local_db=DB_PATH)

with QueryDispatcher(config, publisher=publisher) as db:
    db.init_schema()
    tables = set(db.store.table_names())
    for name in ['profiles', 'posts', 'comments', 'likes', 'follows', 'saved_domains', 'chats', 'messages']:
        check(name in tables, f'missing table after init: {name}')

    db.execute("INSERT IGNORE INTO profiles (id, username) VALUES (?, ?)", ['smoke-user', 'smoke'])
    db.execute("INSERT IGNORE INTO profiles (id, username) VALUES (?, ?)", ['smoke-user', 'dupe'])
    rows = db.execute("SELECT * FROM profiles WHERE id = ?", ['smoke-user'])
    check(len(rows) == 1 and rows[0].get('username') == 'smoke', f'profile round-trip failed: {rows}')

    db.execute("INSERT INTO likes (id, post_id, user_id, created_at) VALUES (?, ?, ?, ?)",
               ['smoke-like', 'smoke-post', 'smoke-user', '2024-01-01T00:00:00Z'])
    db.execute("DELETE FROM likes WHERE post_id = ? AND user_id = ?", ['smoke-post', 'smoke-user'])
    left = [r for r in db.store.get_table('likes') if r.get('post_id') == 'smoke-post']
    check(not left, f'like rows left after unlike: {left}')

    check(db.execute("EXPLAIN SELECT nothing", []) == [], 'unknown shape did not yield []')
    check(db.mode.value == 'local', f'mode not local: {db.mode.value}')
    check(seen == ['remote', 'local'], f'unexpected mode notifications: {seen}')

    if os.environ.get('SMOKE_HEALTH_CHECK', '0') == '1':
        hc = db.store.backend.health_check()
        check(hc.get('ok') is True, f'health_check not ok: {hc}')

if failures:
    print(json.dumps({'success': False, 'failures': failures}))
    sys.exit(2)
print(json.dumps({'success': True, 'statements': len(SCHEMA_STATEMENTS)}))
