import pytest
from services.query_api import create_app
from sparkdb.cluster_stack import ClusterStack


class FakeConnection:
    def __init__(self, rows=None, fail=None):
        self.rows = rows or []
        self.fail = fail
        self.calls = []

    def execute(self, query, params):
        self.calls.append((query, list(params)))
        if self.fail is not None:
            raise self.fail
        return self.rows

    def close(self):
        pass


@pytest.fixture()
def client_for():
    def _make(*connections):
        app = create_app(ClusterStack(connections))
        app.testing = True
        return app.test_client()
    return _make


def test_non_post_rejected(client_for):
    client = client_for(FakeConnection())
    for method in ("get", "put", "delete"):
        r = getattr(client, method)("/api/query")
        assert r.status_code == 405
        assert r.get_json() == {"message": "Method Not Allowed"}


def test_missing_query(client_for):
    client = client_for(FakeConnection())
    assert client.post("/api/query", json={"params": []}).status_code == 400
    r = client.post("/api/query", data="not json", content_type="text/plain")
    assert r.status_code == 400 and r.get_json() == {"message": "Query is required"}


def test_success_reports_source(client_for):
    primary = FakeConnection(fail=RuntimeError("down"))
    secondary = FakeConnection([{"id": "u1"}])
    r = client_for(primary, secondary).post("/api/query", json={"query": "SELECT * FROM profiles WHERE id = ?", "params": ["u1"]})
    assert r.status_code == 200
    assert r.get_json() == {"data": {"rows": [{"id": "u1"}], "meta": {"source": "SECONDARY_1"}}}
    assert secondary.calls == [("SELECT * FROM profiles WHERE id = ?", ["u1"])]


def test_params_default_to_empty(client_for):
    conn = FakeConnection([{"val": 1}])
    client_for(conn).post("/api/query", json={"query": "SELECT 1 as val"})
    assert conn.calls == [("SELECT 1 as val", [])]


def test_stack_exhausted_hides_details_in_production(client_for, monkeypatch):
    monkeypatch.delenv('APP_ENV', raising=False)
    r = client_for(FakeConnection(fail=RuntimeError("secret dsn detail"))).post("/api/query", json={"query": "SELECT 1"})
    assert r.status_code == 500
    assert r.get_json() == {"message": "All Database Stack Layers Failed"}


def test_stack_exhausted_details_in_development(client_for, monkeypatch):
    monkeypatch.setenv('APP_ENV', 'development')
    r = client_for(FakeConnection(fail=RuntimeError("cluster gone"))).post("/api/query", json={"query": "SELECT 1"})
    assert r.status_code == 500
    assert r.get_json()["details"] == "cluster gone"


def test_empty_stack_is_500(client_for):
    r = client_for().post("/api/query", json={"query": "SELECT 1"})
    assert r.status_code == 500


def test_health(client_for):
    r = client_for(FakeConnection(), FakeConnection()).get("/api/health")
    assert r.get_json() == {"ok": True, "clusters": 2}


def test_options_and_unlisted_methods_get_json_405(client_for):
    client = client_for(FakeConnection())
    r = client.options("/api/query")
    assert r.status_code == 405
    assert r.get_json() == {"message": "Method Not Allowed"}
    r = client.open("/api/query", method="TRACE")
    assert r.status_code == 405
    assert r.get_json() == {"message": "Method Not Allowed"}


@pytest.mark.parametrize("params", ["u1", {"id": "u1"}, 7])
def test_non_list_params_rejected(client_for, params):
    conn = FakeConnection([{"id": "u1"}])
    r = client_for(conn).post("/api/query", json={"query": "SELECT * FROM profiles WHERE id = ?", "params": params})
    assert r.status_code == 400
    assert r.get_json() == {"message": "Params must be an array"}
    assert conn.calls == []
