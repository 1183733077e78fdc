"""Reconciliation endpoints for schedulers and operators."""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from identity_hub.api.decorators import require_sync_token

bp = Blueprint("sync", __name__, url_prefix="/api/sync")


def _flag(payload: dict, name: str) -> bool:
    value = payload.get(name, False)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


@bp.route("/run", methods=["POST"])
@require_sync_token
def run_sync():
    """Run one reconciliation pass.

    Returns 200 when every record succeeded and 207 when some failed; the
    body always carries the full result.
    """
    payload = request.get_json(silent=True) or {}
    service = current_app.config["IDENTITY_SERVICE"]
    result = service.run_reconciliation(
        only_active=_flag(payload, "only_active"),
        force_full=_flag(payload, "force_full"),
    )
    return jsonify(result.to_dict()), (200 if result.ok else 207)


@bp.route("/status", methods=["GET"])
@require_sync_token
def sync_status():
    """ERP roster size, account counts, last run summary and directory reachability.

    ``?directory=0`` skips the directory bind check.
    """
    service = current_app.config["IDENTITY_SERVICE"]
    check_directory = _flag({"directory": request.args.get("directory", "1")}, "directory")
    return jsonify(service.sync_status(check_directory=check_directory)), 200
