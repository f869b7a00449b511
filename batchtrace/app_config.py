# batchtrace/app_config.py

import logging
import os
from typing import Any, Dict, Mapping, Optional

from batchtrace.blockchain_setup import ROLE_KEY_ENV

logger = logging.getLogger(__name__)


def _int_or_none(raw: Optional[str]) -> Optional[int]:
    if raw is None or str(raw).strip() == "":
        return None
    return int(raw)


def env_config(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Read every setting from the environment. Shared by the Flask app and
    the FastAPI server so both sides see the same ledger and keys.
    """
    env = environ if environ is not None else os.environ

    return {
        # ------------------------------
        # Mongo
        # ------------------------------
        "MONGO_URI": env.get("MONGO_URI", "mongodb://localhost:27017/batchtrace_db"),
        "DISABLE_MONGO": env.get("DISABLE_MONGO", "0") == "1",

        # ------------------------------
        # Blockchain Settings
        # ------------------------------
        "RPC_URL": env.get("RPC_URL", "http://127.0.0.1:7545"),
        "SUPPLY_CHAIN_ADDRESS": env.get("SUPPLY_CHAIN_ADDRESS"),
        "CHAIN_ID": _int_or_none(env.get("CHAIN_ID")),
        "TX_RECEIPT_TIMEOUT": int(env.get("TX_RECEIPT_TIMEOUT", "120")),
        "GAS_LIMIT_MULTIPLIER": env.get("GAS_LIMIT_MULTIPLIER", "1.2"),
        "ROLE_PRIVATE_KEYS": {role.value: env.get(var) for role, var in ROLE_KEY_ENV.items()},

        # ------------------------------
        # Hop behaviour
        # ------------------------------
        "AUTO_ADVANCE_ROLES": env.get("AUTO_ADVANCE_ROLES", "Retailer"),
        "AUTO_ADVANCE_CONSUMER_ADDRESS": env.get("AUTO_ADVANCE_CONSUMER_ADDRESS"),

        # ------------------------------
        # Security Keys
        # ------------------------------
        "SECRET_KEY": env.get("SECRET_KEY") or os.urandom(24),
        "JWT_SECRET_KEY": env.get("JWT_SECRET_KEY", "change-me"),
    }


def load_config(app, overrides: Optional[Mapping[str, Any]] = None):
    """
    Load all Flask configuration in a clean centralized way.
    """
    app.config.update(env_config())
    if overrides:
        app.config.update(overrides)

    logger.info("✓ Config Loaded Successfully")
