"""Local query-shape interpreter for the offline fallback.

This is not a SQL engine. The application issues a finite set of statements;
each one is recognized by a structural signature of its normalized text
(QueryShape) and executed by a dedicated handler against whole tables from the
KeySpaceStore. Anything unrecognized yields no rows.

Supported shapes (checked in declaration order of _SIGNATURES):
  - CREATE TABLE ...                          -> ensure the table key exists
  - INSERT [IGNORE] INTO t (cols) VALUES (..) -> append a row (duplicate suppression per table)
  - ... ON DUPLICATE KEY UPDATE c = VALUES(c) -> update the existing row in place
  - UPDATE t SET col = ?, ... WHERE id = ?    -> only whitelisted table/column pairs
  - DELETE FROM t WHERE ...                   -> arity based predicates of the known call sites
  - feed / search / liked / per-user post selects, comments, saved domains,
    follows, profiles, messages, counts, likes received, follower lists, SELECT 1
"""
from __future__ import annotations
import re, uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from .config import env_flag
from .errors import UnhandledQueryShape
from .keyspace import KeySpaceStore, Row
from .logging_util import debug, warn, error

NO_USER = "NO_USER"
UNKNOWN_AUTHOR = {"username": "Unknown", "photoURL": None}


class QueryShape(Enum):
    CREATE_TABLE = "create_table"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    LIKED_POSTS = "liked_posts"
    SEARCH_POSTS = "search_posts"
    FEED_BY_DOMAIN = "feed_by_domain"
    POSTS_BY_USER = "posts_by_user"
    LIKES_RECEIVED = "likes_received"
    COUNT = "count"
    COMMENTS_FOR_POSTS = "comments_for_posts"
    SAVED_DOMAINS = "saved_domains"
    SAVED_CHECK = "saved_check"
    FOLLOW_LOOKUP = "follow_lookup"
    FOLLOWERS = "followers"
    FOLLOWING = "following"
    PROFILE_BY_ID = "profile_by_id"
    PROFILE_BY_USERNAME = "profile_by_username"
    MESSAGES = "messages"
    PING = "ping"
    UNKNOWN = "unknown"


_WS_RE = re.compile(r"\s+")
_INSERT_RE = re.compile(
    r"^insert\s+(?:ignore\s+)?into\s+`?(\w+)`?\s*\(([^)]*)\)\s*(?:values\s*\((.*))?", re.I)
_ON_DUPLICATE_RE = re.compile(r"\bon\s+duplicate\s+key\s+update\s+(.*)$", re.I)
_DUPLICATE_ASSIGN_RE = re.compile(r"`?(\w+)`?\s*=\s*values\s*\(\s*`?(\w+)`?\s*\)", re.I)
_UPDATE_RE = re.compile(r"^update\s+`?(\w+)`?\s+set\s+(.*?)\s+where\s+", re.I)
_ASSIGN_RE = re.compile(r"`?(\w+)`?\s*=\s*\?")
_DELETE_RE = re.compile(r"^delete\s+from\s+`?(\w+)`?", re.I)
_DELETE_IN_RE = re.compile(r"where\s+(\w+)\s+in\s*\(", re.I)
_CREATE_RE = re.compile(r"^create\s+table\s+(?:if\s+not\s+exists\s+)?`?(\w+)`?", re.I)
_COUNT_RE = re.compile(r"^select count\(\*\) as (\w+) from (\w+)(?: where (\w+) = \?)?$")
_LIKES_RECEIVED_RE = re.compile(
    r"^select count\(\*\) as (\w+) from likes l join posts p on (?:l\.post_id = p\.id|p\.id = l\.post_id) where p\.user_id = \?$")
_PROJECTION_RE = re.compile(r"^select\s+(.*?)\s+from\s", re.I)
_LIMIT_RE = re.compile(r"\blimit (\d+)\s*$")
_SEARCH_RE = re.compile(r"p\.content\)?\s+like\b")

# (shape, predicate over the lowercased normalized text); first match wins
_SIGNATURES: List[tuple] = [
    (QueryShape.CREATE_TABLE, lambda q: q.startswith("create table")),
    (QueryShape.INSERT, lambda q: q.startswith("insert into") or q.startswith("insert ignore into")),
    (QueryShape.UPDATE, lambda q: q.startswith("update ")),
    (QueryShape.DELETE, lambda q: q.startswith("delete from")),
    (QueryShape.LIKED_POSTS, lambda q: "from posts p" in q and "join likes l" in q),
    (QueryShape.SEARCH_POSTS, lambda q: "from posts p" in q and _SEARCH_RE.search(q) is not None),
    (QueryShape.FEED_BY_DOMAIN, lambda q: "from posts p" in q and "left join profiles" in q),
    (QueryShape.POSTS_BY_USER, lambda q: "from posts p where user_id" in q),
    (QueryShape.LIKES_RECEIVED, lambda q: _LIKES_RECEIVED_RE.match(q) is not None),
    (QueryShape.COUNT, lambda q: _COUNT_RE.match(q) is not None),
    (QueryShape.COMMENTS_FOR_POSTS, lambda q: "from comments c" in q),
    (QueryShape.SAVED_DOMAINS, lambda q: "select * from saved_domains" in q),
    (QueryShape.SAVED_CHECK, lambda q: "select id from saved_domains where user_id" in q),
    (QueryShape.FOLLOW_LOOKUP, lambda q: "from follows where follower_id = ? and following_id = ?" in q),
    (QueryShape.FOLLOWERS, lambda q: "from profiles p" in q and "join follows f" in q
        and "f.follower_id = p.id" in q and "f.following_id = ?" in q),
    (QueryShape.FOLLOWING, lambda q: "from profiles p" in q and "join follows f" in q
        and "f.following_id = p.id" in q and "f.follower_id = ?" in q),
    (QueryShape.PROFILE_BY_ID, lambda q: q.startswith("select") and "from profiles where id = ?" in q),
    (QueryShape.PROFILE_BY_USERNAME, lambda q: q.startswith("select") and "from profiles where username = ?" in q),
    (QueryShape.MESSAGES, lambda q: "select * from messages" in q),
    (QueryShape.PING, lambda q: re.match(r"^select 1\b", q) is not None),
]

# Tables whose INSERT always suppresses duplicates, and the identity fields per table.
_ALWAYS_IGNORE_DUPLICATES = {"profiles"}
_IDENTITY_FIELDS = {"follows": ("follower_id", "following_id")}

# UPDATE is only honoured for the columns the application actually writes.
_UPDATABLE_COLUMNS = {
    "profiles": ("username", "photoURL", "bio", "theme", "interests", "tags", "is_private"),
    "chats": ("lastMessage", "updatedAt"),
    "posts": ("content", "imageURL", "domain_id"),
}


def normalize(query: str) -> str:
    return _WS_RE.sub(" ", query or "").strip().rstrip(";").strip()


def classify(query: str) -> QueryShape:
    lowered = normalize(query).lower()
    for shape, matches in _SIGNATURES:
        if matches(lowered):
            return shape
    return QueryShape.UNKNOWN


def _timestamp(value: Any) -> float:
    """Sort key for created_at-style fields: ISO text, epoch numbers, or missing."""
    if value is None or value == "":
        return float("-inf")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return float("-inf")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _newest_first(rows: Iterable[Row], field: str = "created_at") -> List[Row]:
    return sorted(rows, key=lambda r: _timestamp(r.get(field)), reverse=True)


def _oldest_first(rows: Iterable[Row], field: str = "created_at") -> List[Row]:
    return sorted(rows, key=lambda r: _timestamp(r.get(field)))


def _split_values(values: str) -> List[str]:
    """Split a VALUES list on top-level commas (quotes and parentheses respected)."""
    parts, buf, depth, quote = [], [], 0, None
    for ch in values:
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append("".join(buf).strip())
            buf = []
            continue
        buf.append(ch)
    if buf or parts:
        parts.append("".join(buf).strip())
    return parts


def _values_body(text: str) -> str:
    """Text of a VALUES list up to its closing parenthesis; trailing clauses are dropped."""
    depth, quote = 0, None
    for i, ch in enumerate(text):
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            if depth == 0:
                return text[:i]
            depth -= 1
    return text


def _literal(token: str) -> Any:
    lowered = token.lower()
    if lowered == "uuid()":
        return str(uuid.uuid4())
    if lowered in ("now()", "current_timestamp", "current_timestamp()"):
        return datetime.now(timezone.utc).isoformat()
    if lowered == "null":
        return None
    if lowered in ("true", "false"):
        return lowered == "true"
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
        return token[1:-1].replace(token[0] * 2, token[0])
    try:
        return int(token)
    except ValueError:
        pass
    try:
        return float(token)
    except ValueError:
        return token


def _projection(query: str) -> Optional[List[str]]:
    """Column list of a simple SELECT; None means all columns."""
    m = _PROJECTION_RE.match(query)
    if not m or m.group(1).strip() == "*":
        return None
    return [c.strip().split(".")[-1].strip("`") for c in m.group(1).split(",")]


def _project(rows: Iterable[Row], columns: Optional[Sequence[str]]) -> List[Row]:
    if columns is None:
        return [dict(r) for r in rows]
    out = []
    for r in rows:
        by_lower = {k.lower(): k for k in r}
        out.append({c: r.get(by_lower.get(c.lower(), c)) for c in columns})
    return out


def _limit(lowered: str, rows: List[Row]) -> List[Row]:
    m = _LIMIT_RE.search(lowered)
    return rows[:int(m.group(1))] if m else rows


class LocalInterpreter:
    """Executes recognized query shapes against a KeySpaceStore.

    run() never raises for unknown shapes or handler failures; both yield [].
    With strict=True (LOCAL_STRICT_SHAPES=1) unknown shapes raise UnhandledQueryShape
    so development runs can surface queries that silently return nothing.
    """

    def __init__(self, store: KeySpaceStore, strict: Optional[bool] = None):
        self.store = store
        self.strict = env_flag("LOCAL_STRICT_SHAPES") if strict is None else strict
        self._handlers: Dict[QueryShape, Callable[[str, str, List[Any]], List[Row]]] = {
            QueryShape.CREATE_TABLE: self._create_table,
            QueryShape.INSERT: self._insert,
            QueryShape.UPDATE: self._update,
            QueryShape.DELETE: self._delete,
            QueryShape.LIKED_POSTS: self._liked_posts,
            QueryShape.SEARCH_POSTS: self._search_posts,
            QueryShape.FEED_BY_DOMAIN: self._feed_by_domain,
            QueryShape.POSTS_BY_USER: self._posts_by_user,
            QueryShape.LIKES_RECEIVED: self._likes_received,
            QueryShape.COUNT: self._count,
            QueryShape.COMMENTS_FOR_POSTS: self._comments,
            QueryShape.SAVED_DOMAINS: self._saved_domains,
            QueryShape.SAVED_CHECK: self._saved_check,
            QueryShape.FOLLOW_LOOKUP: self._follow_lookup,
            QueryShape.FOLLOWERS: self._followers,
            QueryShape.FOLLOWING: self._following,
            QueryShape.PROFILE_BY_ID: self._profile_by_id,
            QueryShape.PROFILE_BY_USERNAME: self._profile_by_username,
            QueryShape.MESSAGES: self._messages,
            QueryShape.PING: lambda s, q, a: [{"val": 1}],
        }

    def run(self, query: str, params: Optional[Sequence[Any]] = None) -> List[Row]:
        s = normalize(query)
        lowered = s.lower()
        args = list(params or [])
        shape = classify(s)
        if shape is QueryShape.UNKNOWN:
            warn("unhandled_query_shape", query=s[:120], params=len(args))
            if self.strict:
                raise UnhandledQueryShape(s)
            return []
        debug("local_query", shape=shape.value, params=len(args))
        try:
            return self._handlers[shape](s, lowered, args)
        except Exception as e:
            error("local_query_failed", shape=shape.value, query=s[:120], error=str(e))
            return []

    # --- helpers ------------------------------------------------------------------------
    def _authors(self) -> Dict[Any, Row]:
        return {p.get("id"): p for p in self.store.get_table("profiles")}

    @staticmethod
    def _with_author(row: Row, authors: Dict[Any, Row]) -> Row:
        author = authors.get(row.get("user_id")) or UNKNOWN_AUTHOR
        return {**row, "username": author.get("username"), "photoURL": author.get("photoURL")}

    # --- writes -------------------------------------------------------------------------
    def _create_table(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        m = _CREATE_RE.match(s)
        if m:
            self.store.ensure_table(m.group(1))
        return []

    def _insert(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        m = _INSERT_RE.match(s)
        if not m:
            debug("insert_unparsed", query=s[:120])
            return []
        table = m.group(1)
        columns = [c.strip().strip("`") for c in m.group(2).split(",") if c.strip()]
        values = _split_values(_values_body(m.group(3))) if m.group(3) is not None else []
        item: Row = {}
        if len(values) == len(columns):
            pending = iter(args)
            for col, token in zip(columns, values):
                item[col] = next(pending, None) if token == "?" else _literal(token)
        else:
            for i, col in enumerate(columns):
                item[col] = args[i] if i < len(args) else None

        rows = self.store.get_table(table)
        identity = _IDENTITY_FIELDS.get(table, ("id",))
        existing = None
        if all(f in item for f in identity):
            existing = next((r for r in rows if all(r.get(f) == item[f] for f in identity)), None)

        on_duplicate = _ON_DUPLICATE_RE.search(s)
        if on_duplicate and existing is not None:
            for col, source in _DUPLICATE_ASSIGN_RE.findall(on_duplicate.group(1)):
                if source in item:
                    existing[col] = item[source]
            self.store.set_table(table, rows)
            debug("insert_upserted", table=table)
            return []

        ignore = lowered.startswith("insert ignore") or table in _ALWAYS_IGNORE_DUPLICATES
        if ignore and existing is not None:
            debug("insert_ignored_duplicate", table=table)
            return []
        rows.append(item)
        self.store.set_table(table, rows)
        return []

    def _update(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        m = _UPDATE_RE.match(s)
        if not m or not args:
            return []
        table = m.group(1)
        allowed = {c.lower(): c for c in _UPDATABLE_COLUMNS.get(table, ())}
        if not allowed:
            debug("update_table_unsupported", table=table)
            return []
        assignments = _ASSIGN_RE.findall(m.group(2))
        target_id = args[-1]
        rows = self.store.get_table(table)
        row = next((r for r in rows if r.get("id") == target_id), None)
        if row is None:
            return []
        changed = False
        for i, col in enumerate(assignments):
            canonical = allowed.get(col.lower())
            if canonical is not None and i < len(args) - 1:
                row[canonical] = args[i]
                changed = True
        if changed:
            self.store.set_table(table, rows)
        return []

    def _delete(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        m = _DELETE_RE.match(s)
        if not m:
            return []
        table = m.group(1)
        rows = self.store.get_table(table)
        in_clause = _DELETE_IN_RE.search(s)
        if in_clause:
            column, targets = in_clause.group(1), set(args)
            kept = [r for r in rows if r.get(column) not in targets]
        elif len(args) == 1:
            target = args[0]
            kept = [r for r in rows if r.get("id") != target and r.get("post_id") != target]
        elif len(args) == 2 and table == "likes":
            kept = [r for r in rows if not (r.get("post_id") == args[0] and r.get("user_id") == args[1])]
        elif len(args) == 2 and table == "follows":
            kept = [r for r in rows if not (r.get("follower_id") == args[0] and r.get("following_id") == args[1])]
        else:
            debug("delete_shape_unsupported", table=table, params=len(args))
            kept = rows
        if len(kept) != len(rows):
            self.store.set_table(table, kept)
        return []

    # --- post selects -------------------------------------------------------------------
    def _feed_by_domain(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        user_id = args[0] if args else NO_USER
        domain = args[1] if len(args) > 1 else None
        suffix_match = "concat('%/'" in lowered
        likes = self.store.get_table("likes")
        comments = self.store.get_table("comments")
        authors = self._authors()

        def in_domain(post: Row) -> bool:
            value = post.get("domain_id")
            if value == domain:
                return True
            if suffix_match and isinstance(value, str) and isinstance(domain, str):
                return value.lower() == domain.lower() or value.lower().endswith("/" + domain.lower())
            return False

        results = []
        for p in self.store.get_table("posts"):
            if not in_domain(p):
                continue
            post_likes = [l for l in likes if l.get("post_id") == p.get("id")]
            liked = user_id != NO_USER and any(l.get("user_id") == user_id for l in post_likes)
            results.append({
                **self._with_author(p, authors),
                "like_count": len(post_likes),
                "comment_count": sum(1 for c in comments if c.get("post_id") == p.get("id")),
                "is_liked_by_user": 1 if liked else 0,
            })
        return _limit(lowered, _newest_first(results))

    def _search_posts(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        term = str(args[0] if args else "").replace("%", "").lower()
        authors = self._authors()
        hits = [self._with_author(p, authors) for p in self.store.get_table("posts")
                if term in str(p.get("content") or "").lower()]
        return _limit(lowered, _newest_first(hits))

    def _posts_by_user(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        user_id = args[0] if args else None
        likes = self.store.get_table("likes")
        comments = self.store.get_table("comments")
        results = [{
            **p,
            "like_count": sum(1 for l in likes if l.get("post_id") == p.get("id")),
            "comment_count": sum(1 for c in comments if c.get("post_id") == p.get("id")),
        } for p in self.store.get_table("posts") if p.get("user_id") == user_id]
        return _limit(lowered, _newest_first(results))

    def _liked_posts(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        user_id = args[0] if args else None
        likes = self.store.get_table("likes")
        posts = {p.get("id"): p for p in self.store.get_table("posts")}
        results = []
        for like in _newest_first(l for l in likes if l.get("user_id") == user_id):
            post = posts.get(like.get("post_id"))
            if post is None:
                continue
            results.append({**post, "like_count": sum(1 for l in likes if l.get("post_id") == post.get("id"))})
        return _limit(lowered, results)

    # --- other selects ------------------------------------------------------------------
    def _count(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        alias, table, column = _COUNT_RE.match(lowered).groups()
        rows = self.store.get_table(table)
        if column:
            target = args[0] if args else None
            rows = [r for r in rows if r.get(column) == target]
        return [{alias: len(rows)}]

    def _likes_received(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        """Likes on posts written by param 0."""
        alias = _LIKES_RECEIVED_RE.match(lowered).group(1)
        owner = args[0] if args else None
        own_posts = {p.get("id") for p in self.store.get_table("posts") if p.get("user_id") == owner}
        return [{alias: sum(1 for l in self.store.get_table("likes") if l.get("post_id") in own_posts)}]

    def _comments(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        post_ids: Set[Any] = set(args) if "post_id in (" in lowered else {args[0] if args else None}
        authors = self._authors()
        matched = [self._with_author(c, authors) for c in self.store.get_table("comments")
                   if c.get("post_id") in post_ids]
        return _oldest_first(matched)

    def _saved_domains(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        user_id = args[0] if args else None
        saved = [r for r in self.store.get_table("saved_domains") if r.get("user_id") == user_id]
        return _newest_first(saved, "saved_at")

    def _saved_check(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        if len(args) < 2:
            return []
        matched = [r for r in self.store.get_table("saved_domains")
                   if r.get("user_id") == args[0] and r.get("domain_id") == args[1]]
        return _project(matched, _projection(s))

    def _follow_lookup(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        if len(args) < 2:
            return []
        matched = [r for r in self.store.get_table("follows")
                   if r.get("follower_id") == args[0] and r.get("following_id") == args[1]]
        return _project(matched, _projection(s))

    def _followers(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        target = args[0] if args else None
        ids = {f.get("follower_id") for f in self.store.get_table("follows") if f.get("following_id") == target}
        return [p for p in self.store.get_table("profiles") if p.get("id") in ids]

    def _following(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        source = args[0] if args else None
        ids = {f.get("following_id") for f in self.store.get_table("follows") if f.get("follower_id") == source}
        return [p for p in self.store.get_table("profiles") if p.get("id") in ids]

    def _profile_by_id(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        target = args[0] if args else None
        matched = [p for p in self.store.get_table("profiles") if p.get("id") == target]
        return _project(matched, _projection(s))

    def _profile_by_username(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        username = args[0] if args else None
        matched = [p for p in self.store.get_table("profiles") if p.get("username") == username]
        if "and id != ?" in lowered and len(args) > 1:
            matched = [p for p in matched if p.get("id") != args[1]]
        return _project(matched, _projection(s))

    def _messages(self, s: str, lowered: str, args: List[Any]) -> List[Row]:
        chat_id = args[0] if args else None
        return _oldest_first((m for m in self.store.get_table("messages") if m.get("chat_id") == chat_id), "createdAt")
