# batchtrace/mongo.py
from __future__ import annotations

import logging

from flask_pymongo import PyMongo

logger = logging.getLogger(__name__)

mongo = PyMongo()


def init_mongo(app):
    """
    Initializes Flask-PyMongo.
    Requires app.config["MONGO_URI"]. Call this during app startup (create_app).
    """
    if app.config.get("DISABLE_MONGO"):
        logger.warning("⚠️ Mongo disabled by DISABLE_MONGO=1")
        return None

    if not app.config.get("MONGO_URI"):
        logger.warning("⚠️ MONGO_URI not set. Mongo will not be initialized.")
        return None

    try:
        mongo.init_app(app)
        _ = mongo.db
        logger.info("✅ Mongo initialized")
    except Exception as e:
        # keep serving; stores fall back to process memory
        logger.warning("⚠️ Mongo init failed: %s", e)
        return None

    return mongo


def get_col(name: str):
    """
    col = get_col("quantity_records")
    None when Mongo was never initialized.
    """
    db = getattr(mongo, "db", None)
    if db is None:
        return None
    return db[name]
