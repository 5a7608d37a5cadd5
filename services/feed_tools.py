#!/usr/bin/env python3
"""
Social feed data calls for the Spark app
Every statement here is one of the shapes the local interpreter understands, so
each call works against the remote clusters and in offline/local mode alike.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from sparkdb.dispatcher import execute as dispatch
from sparkdb.logging_util import info, warn

Executor = Callable[[str, Optional[Sequence[Any]]], List[Any]]

FEED_SQL = """
    SELECT p.*, u.username, u.photoURL,
    (SELECT COUNT(*) FROM likes l WHERE l.post_id = p.id) as like_count,
    (SELECT COUNT(*) FROM comments c WHERE c.post_id = p.id) as comment_count,
    EXISTS(SELECT 1 FROM likes l WHERE l.post_id = p.id AND l.user_id = ?) as is_liked_by_user
    FROM posts p
    LEFT JOIN profiles u ON p.user_id = u.id
    WHERE p.domain_id = ?
    ORDER BY p.created_at DESC
    LIMIT 50
"""

SEARCH_SQL = """
    SELECT p.*, u.username, u.photoURL
    FROM posts p
    LEFT JOIN profiles u ON p.user_id = u.id
    WHERE LOWER(p.content) LIKE LOWER(?)
    ORDER BY p.created_at DESC
    LIMIT 20
"""

COMMENTS_SQL = """
    SELECT c.*, p.username, p.photoURL
    FROM comments c
    LEFT JOIN profiles p ON c.user_id = p.id
    WHERE c.post_id = ?
    ORDER BY c.created_at ASC
"""

FOLLOWERS_SQL = "SELECT p.* FROM profiles p JOIN follows f ON f.follower_id = p.id WHERE f.following_id = ?"
FOLLOWING_SQL = "SELECT p.* FROM profiles p JOIN follows f ON f.following_id = p.id WHERE f.follower_id = ?"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FeedTools:
    """Profile, post, like, comment and follow operations over a query executor.

    Reads return row lists. Writes return {"success": bool, ...} dicts and never
    raise; the executor (the dispatcher by default) already fails open.
    """

    USER_PLACEHOLDER = "NO_USER"
    THEMES = ("nebula", "aurora", "void", "solar")

    def __init__(self, executor: Optional[Executor] = None):
        self._execute: Executor = executor or dispatch

    def _run(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Any]:
        return self._execute(sql, list(params or []))

    def _write(self, action: str, sql: str, params: Sequence[Any], **result) -> Dict[str, Any]:
        try:
            self._run(sql, params)
        except Exception as e:
            warn("feed_write_failed", action=action, error=str(e))
            return {"success": False, "error": str(e)}
        info("feed_write", action=action)
        return {"success": True, **result}

    # --- profiles ---------------------------------------------------------------
    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = self._run("SELECT * FROM profiles WHERE id = ?", [user_id])
        return rows[0] if rows else None

    def ensure_profile(self, user_id: str, username: str, email: Optional[str] = None,
                       photo_url: Optional[str] = None) -> Dict[str, Any]:
        """Create the profile row on first sign-in; an existing profile is left untouched."""
        return self._write(
            "ensure_profile",
            "INSERT IGNORE INTO profiles (id, username, email, photoURL) VALUES (?, ?, ?, ?)",
            [user_id, username, email, photo_url], user_id=user_id,
        )

    def update_username(self, user_id: str, username: str) -> Dict[str, Any]:
        username = (username or "").strip()
        if not username:
            return {"success": False, "error": "Username is required"}
        taken = self._run("SELECT id FROM profiles WHERE username = ? AND id != ?", [username, user_id])
        if taken:
            return {"success": False, "error": "Username already taken"}
        return self._write("update_username", "UPDATE profiles SET username = ? WHERE id = ?", [username, user_id])

    def update_theme(self, user_id: str, theme: str) -> Dict[str, Any]:
        if theme not in self.THEMES:
            return {"success": False, "error": f"Invalid theme. Must be one of: {list(self.THEMES)}"}
        return self._write("update_theme", "UPDATE profiles SET theme = ? WHERE id = ?", [theme, user_id])

    # --- posts ------------------------------------------------------------------
    def create_post(self, user_id: str, domain_id: str, content: str,
                    image_url: Optional[str] = None) -> Dict[str, Any]:
        if not (content or "").strip() and not image_url:
            return {"success": False, "error": "Post is empty"}
        post_id = str(uuid.uuid4())
        return self._write(
            "create_post",
            "INSERT INTO posts (id, user_id, domain_id, content, imageURL, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            [post_id, user_id, domain_id, content, image_url, _now()], post_id=post_id,
        )

    def delete_post(self, post_id: str) -> Dict[str, Any]:
        """Delete a post with its likes and comments (children first)."""
        for sql in ("DELETE FROM likes WHERE post_id = ?",
                    "DELETE FROM comments WHERE post_id = ?",
                    "DELETE FROM posts WHERE id = ?"):
            result = self._write("delete_post", sql, [post_id])
            if not result["success"]:
                return result
        return {"success": True, "post_id": post_id}

    def get_domain_feed(self, domain_id: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._run(FEED_SQL, [user_id or self.USER_PLACEHOLDER, domain_id])

    def get_user_posts(self, user_id: str) -> List[Dict[str, Any]]:
        return self._run("""
            SELECT p.*,
            (SELECT COUNT(*) FROM likes l WHERE l.post_id = p.id) as like_count,
            (SELECT COUNT(*) FROM comments c WHERE c.post_id = p.id) as comment_count
            FROM posts p WHERE user_id = ? ORDER BY created_at DESC
        """, [user_id])

    def search_posts(self, term: str) -> List[Dict[str, Any]]:
        term = (term or "").strip()
        if not term:
            return []
        return self._run(SEARCH_SQL, [f"%{term}%"])

    # --- likes & comments -------------------------------------------------------
    def like_post(self, post_id: str, user_id: str) -> Dict[str, Any]:
        return self._write(
            "like_post",
            "INSERT INTO likes (id, post_id, user_id, created_at) VALUES (?, ?, ?, ?)",
            [str(uuid.uuid4()), post_id, user_id, _now()],
        )

    def unlike_post(self, post_id: str, user_id: str) -> Dict[str, Any]:
        return self._write("unlike_post", "DELETE FROM likes WHERE post_id = ? AND user_id = ?", [post_id, user_id])

    def add_comment(self, post_id: str, user_id: str, content: str,
                    parent_id: Optional[str] = None) -> Dict[str, Any]:
        if not (content or "").strip():
            return {"success": False, "error": "Comment is empty"}
        comment_id = str(uuid.uuid4())
        if parent_id:
            return self._write(
                "add_comment",
                "INSERT INTO comments (id, post_id, user_id, content, created_at, parent_id) VALUES (?, ?, ?, ?, ?, ?)",
                [comment_id, post_id, user_id, content, _now(), parent_id], comment_id=comment_id,
            )
        return self._write(
            "add_comment",
            "INSERT INTO comments (id, post_id, user_id, content, created_at) VALUES (?, ?, ?, ?, ?)",
            [comment_id, post_id, user_id, content, _now()], comment_id=comment_id,
        )

    def get_comments(self, post_id: str) -> List[Dict[str, Any]]:
        return self._run(COMMENTS_SQL, [post_id])

    # --- follows ----------------------------------------------------------------
    def follow(self, follower_id: str, following_id: str, status: str = "accepted") -> Dict[str, Any]:
        if follower_id == following_id:
            return {"success": False, "error": "Cannot follow yourself"}
        return self._write(
            "follow",
            "INSERT IGNORE INTO follows (follower_id, following_id, status) VALUES (?, ?, ?)",
            [follower_id, following_id, status],
        )

    def unfollow(self, follower_id: str, following_id: str) -> Dict[str, Any]:
        return self._write("unfollow", "DELETE FROM follows WHERE follower_id = ? AND following_id = ?",
                           [follower_id, following_id])

    def is_following(self, follower_id: str, following_id: str) -> bool:
        rows = self._run("SELECT status FROM follows WHERE follower_id = ? AND following_id = ?",
                         [follower_id, following_id])
        return bool(rows)

    def get_followers(self, user_id: str) -> List[Dict[str, Any]]:
        return self._run(FOLLOWERS_SQL, [user_id])

    def get_following(self, user_id: str) -> List[Dict[str, Any]]:
        return self._run(FOLLOWING_SQL, [user_id])

    def follow_counts(self, user_id: str) -> Dict[str, int]:
        def _count(sql: str) -> int:
            rows = self._run(sql, [user_id])
            return int(rows[0].get("c", 0)) if rows else 0
        return {
            "followers": _count("SELECT COUNT(*) as c FROM follows WHERE following_id = ?"),
            "following": _count("SELECT COUNT(*) as c FROM follows WHERE follower_id = ?"),
            "posts": _count("SELECT COUNT(*) as c FROM posts WHERE user_id = ?"),
        }
