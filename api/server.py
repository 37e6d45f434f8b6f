"""
api/server.py
Flask API exposing the indexer's read-only state to downstream consumers,
chiefly the data-freshness signal used for staleness warnings.

Usage:
    DATUM_DB_PATH=data/datum.db python api/server.py

Endpoints:
    GET /api/health     Health check
    GET /api/freshness  Most recent cursor update, age, stale flag
                        (?category=loans|stability_pool, ?stale_after=<seconds>)
    GET /api/cursors    Every scan cursor and its position
    GET /api/tables     Row counts per store table
"""

import os
import sys
from pathlib import Path

# Make sure datum/ is importable when run as a script
sys.path.insert(0, str(Path(__file__).parent.parent))

from flask import Flask, jsonify, request
from flask_cors import CORS

from api.data_service import DataService
from datum.config import CATEGORIES


def create_app(service: DataService) -> Flask:
    app = Flask(__name__)
    CORS(app)

    @app.route("/api/health")
    def health():
        return jsonify({"status": "ok", "endpoints": ["freshness", "cursors", "tables"]})

    @app.route("/api/freshness")
    def freshness_endpoint():
        category = request.args.get("category") or None
        if category is not None and category not in CATEGORIES:
            return jsonify({"error": f"unknown category: {category}"}), 400
        stale_after = request.args.get("stale_after", type=float)
        return jsonify(service.get_freshness(category=category, stale_after_s=stale_after))

    @app.route("/api/cursors")
    def cursors_endpoint():
        return jsonify(service.get_cursors())

    @app.route("/api/tables")
    def tables_endpoint():
        return jsonify(service.get_tables())

    return app


def _db_url_from_env() -> str:
    url = os.environ.get("DATUM_DB_URL")
    if url:
        return url
    path = os.environ.get("DATUM_DB_PATH")
    if not path:
        raise SystemExit("DATUM_DB_PATH or DATUM_DB_URL must be set")
    return f"sqlite:///{path}"


if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv()
    app = create_app(DataService.from_url(_db_url_from_env()))
    port = int(os.environ.get("PORT", 5000))
    host = os.environ.get("HOST", "127.0.0.1")
    debug = os.environ.get("FLASK_ENV") != "production"
    print(f"\nDatum read-only API at http://{host}:{port}")
    print("   Endpoints: /api/health  /api/freshness  /api/cursors  /api/tables\n")
    app.run(debug=debug, host=host, port=port)
