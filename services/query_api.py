"""HTTP surface for the cluster stack: POST /api/query.

Response contract:
    405 {"message": "Method Not Allowed"}           non-POST
    400 {"message": "Query is required"}            missing query
    400 {"message": "Params must be an array"}      params present but not a list
    200 {"data": {"rows": [...], "meta": {"source": "PRIMARY"}}}
    500 {"message": "All Database Stack Layers Failed", "details": "..."}
        (details only when APP_ENV=development)
"""
from __future__ import annotations
from typing import Optional

from flask import Flask, jsonify, request

from sparkdb.cluster_stack import ClusterStack
from sparkdb.config import env_int, env_str
from sparkdb.errors import StackExhaustedError
from sparkdb.logging_util import info, error

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


def _development() -> bool:
    return (env_str("APP_ENV", "production") or "").lower() == "development"


def create_app(stack: Optional[ClusterStack] = None) -> Flask:
    app = Flask(__name__)
    # connections are built once per process, never per request
    app.config["CLUSTER_STACK"] = stack if stack is not None else ClusterStack.from_env()

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return jsonify({"message": "Method Not Allowed"}), 405

    @app.route("/api/query", methods=ALL_METHODS, provide_automatic_options=False)
    def query():
        if request.method != "POST":
            return jsonify({"message": "Method Not Allowed"}), 405
        body = request.get_json(silent=True) or {}
        sql = body.get("query") if isinstance(body, dict) else None
        if not sql:
            return jsonify({"message": "Query is required"}), 400
        params = body.get("params")
        if params is None:
            params = []
        elif not isinstance(params, list):
            return jsonify({"message": "Params must be an array"}), 400
        try:
            result = app.config["CLUSTER_STACK"].execute(sql, params)
        except StackExhaustedError as e:
            error("database_stack_error", error=str(e), attempts=e.attempts)
            payload = {"message": "All Database Stack Layers Failed"}
            if _development():
                payload["details"] = str(e.last_error or e)
            return jsonify(payload), 500
        return jsonify({"data": {"rows": result.rows, "meta": {"source": result.source}}}), 200

    @app.route("/api/health", methods=["GET"])
    def health():
        return jsonify({"ok": True, "clusters": len(app.config["CLUSTER_STACK"])}), 200

    return app


def main():  # pragma: no cover - thin CLI wrapper
    host = env_str("HOST", "127.0.0.1")
    port = env_int("PORT", 5000)
    app = create_app()
    info("query_api_starting", host=host, port=port, clusters=len(app.config["CLUSTER_STACK"]))
    app.run(host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
