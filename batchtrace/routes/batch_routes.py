# batchtrace/routes/batch_routes.py

from flask import Blueprint, current_app, jsonify, request, send_file
from pydantic import ValidationError

from batchtrace.errors import OutOfOrderRoleError, classify_error
from batchtrace.models.hop_models import CreateBatchPayload, HopRequest
from batchtrace.qr_generator import batch_qr_png
from batchtrace.services.batch_service import hop_error_status

batch_bp = Blueprint("batch_bp", __name__, url_prefix="/api/batches")


def _service():
    return current_app.config.get("BATCH_SERVICE")


def _unavailable():
    return jsonify(ok=False, err="ledger not configured"), 503


def _ledger_error(e: Exception, batch_id: str, action: str):
    err = classify_error(e, {"batchId": batch_id, "action": action})
    current_app.logger.error("❌ %s %s: [%s] %s", action, batch_id, err.kind, err.message)
    return jsonify(ok=False, error=err.to_dict()), hop_error_status(err)


# ---------------------------------------------------
# CREATE (Farmer)
# ---------------------------------------------------
@batch_bp.post("")
def create_batch():
    svc = _service()
    if svc is None:
        return _unavailable()

    try:
        payload = CreateBatchPayload(**(request.get_json(silent=True) or {}))
    except ValidationError as e:
        return jsonify(ok=False, err="invalid payload", details=e.errors(include_url=False, include_context=False)), 400

    batch_id, result = svc.create_batch(payload)
    if not result.success:
        return jsonify(ok=False, batchId=batch_id, **result.to_dict()), hop_error_status(result.error)
    return jsonify(ok=True, batchId=batch_id, **result.to_dict()), 201


# ---------------------------------------------------
# HOP (Distributor / Retailer / Consumer)
# ---------------------------------------------------
@batch_bp.post("/<batch_id>/hop")
def perform_hop(batch_id):
    svc = _service()
    if svc is None:
        return _unavailable()

    try:
        req = HopRequest(**(request.get_json(silent=True) or {}))
    except ValidationError as e:
        return jsonify(ok=False, err="invalid payload", details=e.errors(include_url=False, include_context=False)), 400

    try:
        result = svc.perform_hop(batch_id, req.role, req)
    except OutOfOrderRoleError as e:
        return jsonify(ok=False, err=str(e), nextRole=e.expected), 409

    if not result.success:
        return jsonify(ok=False, **result.to_dict()), hop_error_status(result.error)
    return jsonify(ok=True, **result.to_dict())


# ---------------------------------------------------
# READS
# ---------------------------------------------------
@batch_bp.get("")
def list_batches():
    svc = _service()
    if svc is None:
        return _unavailable()

    try:
        ids = svc.list_batches()
    except Exception as e:
        return _ledger_error(e, "*", "getAllBatchIds")
    return jsonify(ok=True, count=len(ids), items=ids)


@batch_bp.get("/<batch_id>")
def get_batch(batch_id):
    svc = _service()
    if svc is None:
        return _unavailable()

    try:
        vm = svc.batch_view(batch_id)
    except Exception as e:
        return _ledger_error(e, batch_id, "getBatchInfo")
    return jsonify(ok=True, data=vm.to_dict())


@batch_bp.get("/<batch_id>/history")
def get_history(batch_id):
    svc = _service()
    if svc is None:
        return _unavailable()

    events = svc.history(batch_id)
    return jsonify(ok=True, batchId=batch_id, count=len(events), events=[ev.to_dict() for ev in events])


@batch_bp.get("/<batch_id>/next-role")
def get_next_role(batch_id):
    svc = _service()
    if svc is None:
        return _unavailable()

    nxt = svc.next_role(batch_id)
    return jsonify(
        ok=True,
        batchId=batch_id,
        nextRole=nxt.value if nxt else None,
        completed=svc.completed_roles(batch_id),
    )


@batch_bp.get("/<batch_id>/qr")
def get_batch_qr(batch_id):
    return send_file(
        batch_qr_png(batch_id),
        mimetype="image/png",
        as_attachment=False,
        download_name=f"{batch_id}_qr.png",
    )
