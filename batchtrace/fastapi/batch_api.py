# batchtrace/fastapi/batch_api.py
# FastAPI version of batchtrace/routes/batch_routes.py for the mobile scanner app.
# The acting role is taken from the token, never from the request body.
from __future__ import annotations

import os
from typing import Any, Dict, Optional

import jwt
from fastapi import APIRouter, Depends, HTTPException, Security
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from batchtrace.errors import OutOfOrderRoleError, classify_error
from batchtrace.models.batch_models import Role
from batchtrace.models.hop_models import CreateBatchPayload, HopPayload
from batchtrace.qr_generator import batch_qr_png
from batchtrace.services.batch_service import BatchService, hop_error_status

# ==========================================================
# CONFIG
# ==========================================================
JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "change-me")

router = APIRouter(prefix="/api/v1/batches", tags=["batches"])

_SERVICE: Dict[str, Optional[BatchService]] = {"svc": None}


def set_batch_service(svc: Optional[BatchService]) -> None:
    _SERVICE["svc"] = svc


def get_batch_service() -> BatchService:
    svc = _SERVICE["svc"]
    if svc is None:
        raise HTTPException(status_code=503, detail="ledger not configured")
    return svc


# ==========================================================
# AUTH HELPERS
# ==========================================================
bearer = HTTPBearer(scheme_name="AccessToken", bearerFormat="JWT", auto_error=False)


def _jwt_decode(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET_KEY, algorithms=["HS256"], options={"verify_sub": False})
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def auth_identity(credentials: HTTPAuthorizationCredentials = Security(bearer)) -> Dict[str, Any]:
    if not credentials or (credentials.scheme or "").lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    payload = _jwt_decode(credentials.credentials.strip())
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Not an access token")

    identity = payload.get("user") or payload.get("sub")
    if isinstance(identity, str):
        identity = {"userId": identity}
    if not identity:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return identity


def _acting_role(identity: Dict[str, Any]) -> Role:
    try:
        return Role.parse(identity.get("role"))
    except ValueError:
        raise HTTPException(status_code=403, detail="Token carries no supply-chain role")


def _error_response(error, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=hop_error_status(error),
        content={"ok": False, "error": error.to_dict() if error else None, **extra},
    )


# ==========================================================
# ROUTES
# ==========================================================
@router.post("")
def create_batch(
    req: CreateBatchPayload,
    identity=Depends(auth_identity),
    svc: BatchService = Depends(get_batch_service),
):
    if _acting_role(identity) != Role.FARMER:
        raise HTTPException(status_code=403, detail="Only farmers can create batches")

    batch_id, result = svc.create_batch(req)
    if not result.success:
        return _error_response(result.error, batchId=batch_id)
    return JSONResponse(status_code=201, content={"ok": True, "batchId": batch_id, **result.to_dict()})


@router.post("/{batch_id}/hop")
def perform_hop(
    batch_id: str,
    req: HopPayload,
    identity=Depends(auth_identity),
    svc: BatchService = Depends(get_batch_service),
):
    role = _acting_role(identity)
    try:
        result = svc.perform_hop(batch_id, role, req)
    except OutOfOrderRoleError as e:
        return JSONResponse(status_code=409, content={"ok": False, "err": str(e), "nextRole": e.expected})

    if not result.success:
        return _error_response(result.error, **{k: v for k, v in result.to_dict().items() if k != "error"})
    return {"ok": True, "role": role.value, **result.to_dict()}


@router.get("/{batch_id}")
def get_batch(batch_id: str, identity=Depends(auth_identity), svc: BatchService = Depends(get_batch_service)):
    try:
        vm = svc.batch_view(batch_id)
    except Exception as e:
        return _error_response(classify_error(e, {"batchId": batch_id, "action": "getBatchInfo"}))
    return {"ok": True, "data": vm.to_dict()}


@router.get("/{batch_id}/history")
def get_history(batch_id: str, identity=Depends(auth_identity), svc: BatchService = Depends(get_batch_service)):
    events = svc.history(batch_id)
    return {"ok": True, "batchId": batch_id, "count": len(events), "events": [ev.to_dict() for ev in events]}


@router.get("/{batch_id}/next-role")
def get_next_role(batch_id: str, identity=Depends(auth_identity), svc: BatchService = Depends(get_batch_service)):
    nxt = svc.next_role(batch_id)
    role = _acting_role(identity)
    return {
        "ok": True,
        "batchId": batch_id,
        "nextRole": nxt.value if nxt else None,
        "canAct": nxt == role,
        "completed": svc.completed_roles(batch_id),
    }


@router.get("/{batch_id}/qr")
def get_batch_qr(batch_id: str, identity=Depends(auth_identity)):
    return StreamingResponse(batch_qr_png(batch_id), media_type="image/png")
