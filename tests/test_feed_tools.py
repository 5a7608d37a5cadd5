import pytest
from services.feed_tools import FeedTools, FEED_SQL, SEARCH_SQL
from sparkdb.mode import ConnectivityMode
from sparkdb.shapes import QueryShape, classify


class Recorder:
    def __init__(self, rows=None):
        self.rows = rows or []
        self.calls = []

    def __call__(self, sql, params=None):
        self.calls.append((sql, params))
        return self.rows


@pytest.fixture()
def offline_tools(make_dispatcher):
    db = make_dispatcher()
    return FeedTools(db.execute), db


def test_statements_are_locally_interpretable():
    assert classify(FEED_SQL) is QueryShape.FEED_BY_DOMAIN
    assert classify(SEARCH_SQL) is QueryShape.SEARCH_POSTS


def test_validation_short_circuits_before_executor():
    rec = Recorder()
    tools = FeedTools(rec)
    assert tools.update_username("u1", "   ") == {"success": False, "error": "Username is required"}
    assert tools.update_theme("u1", "neon")["success"] is False
    assert tools.create_post("u1", "d1", "  ")["error"] == "Post is empty"
    assert tools.add_comment("p1", "u1", "")["error"] == "Comment is empty"
    assert tools.follow("u1", "u1") == {"success": False, "error": "Cannot follow yourself"}
    assert tools.search_posts("  ") == []
    assert rec.calls == []


def test_anonymous_feed_uses_placeholder():
    rec = Recorder()
    FeedTools(rec).get_domain_feed("space")
    assert rec.calls == [(FEED_SQL, ["NO_USER", "space"])]


def test_username_taken():
    tools = FeedTools(Recorder([{"id": "someone-else"}]))
    assert tools.update_username("u1", "bob") == {"success": False, "error": "Username already taken"}


def test_write_failure_is_reported(capsys):
    def broken(sql, params=None):
        raise RuntimeError("executor down")

    result = FeedTools(broken).like_post("p1", "u1")
    assert result == {"success": False, "error": "executor down"}
    assert 'feed_write_failed' in capsys.readouterr().err


def test_offline_social_flow(offline_tools):
    tools, db = offline_tools
    db.init_schema()
    assert tools.ensure_profile("u1", "ada")["success"]
    assert tools.ensure_profile("u1", "imposter")["success"]
    tools.ensure_profile("u2", "grace")
    assert tools.get_profile("u1")["username"] == "ada"

    post = tools.create_post("u1", "space", "Hello orbit")
    assert post["success"] and post["post_id"]
    tools.like_post(post["post_id"], "u2")
    tools.add_comment(post["post_id"], "u2", "nice")

    feed = tools.get_domain_feed("space", "u2")
    assert len(feed) == 1
    assert feed[0]["username"] == "ada"
    assert feed[0]["like_count"] == 1 and feed[0]["comment_count"] == 1
    assert feed[0]["is_liked_by_user"] == 1
    assert tools.get_domain_feed("space")[0]["is_liked_by_user"] == 0

    assert [p["id"] for p in tools.search_posts("ORBIT")] == [post["post_id"]]
    assert tools.get_comments(post["post_id"])[0]["username"] == "grace"
    assert tools.get_user_posts("u1")[0]["like_count"] == 1

    tools.unlike_post(post["post_id"], "u2")
    assert tools.get_domain_feed("space", "u2")[0]["like_count"] == 0

    assert tools.delete_post(post["post_id"]) == {"success": True, "post_id": post["post_id"]}
    assert tools.get_domain_feed("space") == []
    assert db.store.get_table("comments") == []
    assert db.mode is ConnectivityMode.LOCAL


def test_offline_follow_graph(offline_tools):
    tools, db = offline_tools
    tools.ensure_profile("u1", "ada")
    tools.ensure_profile("u2", "grace")
    tools.follow("u1", "u2")
    tools.follow("u1", "u2")
    assert len(db.store.get_table("follows")) == 1
    assert tools.is_following("u1", "u2") is True
    assert [p["id"] for p in tools.get_followers("u2")] == ["u1"]
    assert [p["id"] for p in tools.get_following("u1")] == ["u2"]
    assert tools.follow_counts("u2") == {"followers": 1, "following": 0, "posts": 0}
    tools.unfollow("u1", "u2")
    assert tools.is_following("u1", "u2") is False


def test_offline_profile_updates(offline_tools):
    tools, _ = offline_tools
    tools.ensure_profile("u1", "ada")
    tools.ensure_profile("u2", "grace")
    assert tools.update_username("u1", "grace")["error"] == "Username already taken"
    assert tools.update_username("u1", "countess")["success"]
    assert tools.update_theme("u1", "aurora")["success"]
    profile = tools.get_profile("u1")
    assert profile["username"] == "countess" and profile["theme"] == "aurora"
