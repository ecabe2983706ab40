"""
Flood Dashboard: read-only Flask view over the agent's run journal.

Serves the latest rebalancing runs and a status summary from the JSONL
journal the agent appends to after every run.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask, jsonify, request

from flood import config

logger = logging.getLogger("flood.dashboard")

DEFAULT_LIMIT = 50
MAX_LIMIT = 500


def read_runs(journal_path: Path, limit: int = DEFAULT_LIMIT) -> list[dict]:
    """Last `limit` journal records, oldest first. Corrupt lines are skipped."""
    if not journal_path.exists():
        return []
    runs = []
    for line in journal_path.read_text().splitlines()[-limit:]:
        try:
            runs.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("Skipping corrupt journal line in %s", journal_path)
    return runs


def summarize(runs: list[dict]) -> dict:
    if not runs:
        return {"status": "initializing", "runs": 0, "last_run": None}

    last = runs[-1]
    age = (
        datetime.now(timezone.utc) - datetime.fromisoformat(last["ts"])
    ).total_seconds()
    failed = [r for r in runs if r.get("error")]
    return {
        "status": "error" if last.get("error") else "ok",
        "runs": len(runs),
        "broadcasts": sum(1 for r in runs if r.get("tx_hash")),
        "failed_broadcasts": len(failed),
        "messages": sum(r.get("messages", 0) for r in runs),
        "last_run": last,
        "age_seconds": round(age, 1),
    }


def create_app(journal_path=None) -> Flask:
    app = Flask(__name__)
    journal = Path(journal_path or config.JOURNAL_FILE)

    @app.route("/api/runs")
    def api_runs():
        try:
            limit = int(request.args.get("limit", DEFAULT_LIMIT))
        except ValueError:
            return jsonify({"error": "limit must be an integer"}), 400
        limit = max(1, min(limit, MAX_LIMIT))
        return jsonify(read_runs(journal, limit))

    @app.route("/api/status")
    def api_status():
        return jsonify(summarize(read_runs(journal, MAX_LIMIT)))

    @app.route("/health")
    def health():
        runs = read_runs(journal, 1)
        if runs:
            return jsonify({"ok": True, "last_run": runs[-1]["ts"]}), 200
        return jsonify({"ok": False, "status": "initializing"}), 503

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    host = os.environ.get("DASHBOARD_HOST", "0.0.0.0")
    port = int(os.environ.get("DASHBOARD_PORT", "5005"))
    print(f"Flood Dashboard starting on http://localhost:{port}")
    create_app().run(host=host, port=port, debug=False)
