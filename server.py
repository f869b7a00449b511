# server.py (uvicorn server:app) - mobile API over the same ledger + stores as app.py
import logging
from datetime import datetime, timezone

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo import MongoClient

from batchtrace.app_config import env_config
from batchtrace.blockchain import build_gateway
from batchtrace.blockchain_setup import SignerRegistry
from batchtrace.fastapi.batch_api import auth_identity, router as batch_router, set_batch_service
from batchtrace.services.batch_service import build_batch_service
from batchtrace.services.quantity_ledger import QuantityLedger
from batchtrace.services.role_gate import RoleProgressionGate

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("server")

# --- config ---
CONFIG = env_config()

app = FastAPI(title="BatchTrace Mobile API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _wire_service():
    if not CONFIG.get("SUPPLY_CHAIN_ADDRESS"):
        logger.warning("⚠️ SUPPLY_CHAIN_ADDRESS not set. /api/v1/batches will answer 503")
        return

    quantities_col = progress_col = None
    if not CONFIG["DISABLE_MONGO"]:
        db = MongoClient(CONFIG["MONGO_URI"]).get_database()
        quantities_col = db[QuantityLedger.COL]
        progress_col = db[RoleProgressionGate.COL]

    set_batch_service(build_batch_service(
        CONFIG,
        build_gateway(CONFIG),
        SignerRegistry.from_keys(CONFIG["ROLE_PRIVATE_KEYS"]),
        quantities_col=quantities_col,
        progress_col=progress_col,
    ))


_wire_service()

# --- include routers ---
app.include_router(batch_router)


# --- diagnostics ---
@app.get("/_health")
def _health():
    return {"ok": True, "service": "fastapi-mobile", "ts": int(datetime.now(tz=timezone.utc).timestamp())}


@app.get("/_whoami")
def _whoami(identity=Depends(auth_identity)):
    return {"ok": True, "identity": identity}
