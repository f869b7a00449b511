# batchtrace/routes/root_routes.py

from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify

root_bp = Blueprint("root", __name__)


# -----------------------------
# HEALTH
# -----------------------------
@root_bp.get("/_health")
def health():
    return jsonify(
        ok=True,
        service="batchtrace",
        ledger=current_app.config.get("BATCH_SERVICE") is not None,
        ts=int(datetime.now(tz=timezone.utc).timestamp()),
    )


# -----------------------------
# NETWORK / IDENTITIES
# (replaces the old "check balance" debug screen)
# -----------------------------
@root_bp.get("/api/network")
def network():
    svc = current_app.config.get("BATCH_SERVICE")
    if svc is None:
        return jsonify(ok=False, err="ledger not configured"), 503
    status = svc.network_status()
    return jsonify(ok=bool(status.get("connected")), **status)
