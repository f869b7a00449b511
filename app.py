# app.py (gunicorn "app:create_app()", or python app.py locally)

import logging
from datetime import timedelta

from flask import Flask
from flask_cors import CORS

from batchtrace.app_config import load_config
from batchtrace.blockchain import init_blockchain
from batchtrace.mongo import get_col, init_mongo
from batchtrace.register_blueprints import register_all_blueprints
from batchtrace.services.batch_service import build_batch_service
from batchtrace.services.quantity_ledger import QuantityLedger
from batchtrace.services.role_gate import RoleProgressionGate

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def init_batch_service(app, mongo_enabled=False):
    """Attach BatchService to app.config once the gateway and signers exist."""
    if app.config.get("BATCH_SERVICE") is not None:
        return
    gateway = app.config.get("LEDGER_GATEWAY")
    if gateway is None:
        app.logger.warning("⚠️ No ledger gateway; batch endpoints will answer 503")
        return

    app.config["BATCH_SERVICE"] = build_batch_service(
        app.config,
        gateway,
        app.config["SIGNERS"],
        quantities_col=get_col(QuantityLedger.COL) if mongo_enabled else None,
        progress_col=get_col(RoleProgressionGate.COL) if mongo_enabled else None,
    )


def create_app(overrides=None):
    app = Flask(__name__)

    # -------------------------
    # Config & security
    # -------------------------
    load_config(app, overrides)
    app.secret_key = app.config["SECRET_KEY"]
    app.permanent_session_lifetime = timedelta(days=7)

    CORS(app, resources={r"/*": {"origins": "*"}})

    # -------------------------
    # Mongo
    # -------------------------
    mongo = init_mongo(app)

    # -------------------------
    # Ledger + services
    # -------------------------
    init_blockchain(app)
    init_batch_service(app, mongo_enabled=mongo is not None)

    # -------------------------
    # Blueprints
    # -------------------------
    register_all_blueprints(app)

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=5000, debug=True)
