"""Authentication routes: login, password change and password policy checks."""
from __future__ import annotations

from flask import Blueprint, abort, current_app, g, jsonify, request

from identity_hub.api.decorators import require_access_token
from identity_hub.core.password_policy import HINT_KEYS

bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _service():
    return current_app.config["IDENTITY_SERVICE"]


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        abort(400, description="Request body must be a JSON object")
    return payload


def _required(payload: dict, *names: str) -> list[str]:
    values = []
    for name in names:
        value = payload.get(name)
        if not isinstance(value, str) or not value:
            abort(400, description=f"Field '{name}' is required")
        values.append(value)
    return values


@bp.route("/login", methods=["POST"])
def login():
    """Hybrid login. Every failure is a generic 401 "Invalid credentials"."""
    username, password = _required(_json_body(), "username", "password")
    result = _service().authenticate(username, password)
    return jsonify(result.to_dict()), 200


@bp.route("/change-password", methods=["POST"])
@require_access_token
def change_password():
    """Change the caller's own password; policy violations come back as a list."""
    current, new, confirm = _required(_json_body(), "current_password", "new_password", "confirm_password")
    outcome = _service().change_password(g.token_claims["username"], current, new, confirm)
    return jsonify({"status": "changed", **outcome.to_dict()}), 200


@bp.route("/validate-password", methods=["POST"])
def validate_password():
    """Score a candidate password without changing anything."""
    payload = _json_body()
    (password,) = _required(payload, "password")
    hints = {key: str(payload[key]) for key in HINT_KEYS if payload.get(key)}
    result, suggestions = _service().validate_password_policy(password, hints)
    return jsonify({**result.to_dict(), "suggestions": suggestions}), 200


@bp.route("/me", methods=["GET"])
@require_access_token
def me():
    """Current account and permissions for the bearer token."""
    service = _service()
    account = service.store.get_by_username(g.token_claims["username"])
    if account is None or not account.active:
        return jsonify({"error": "unauthorized", "message": "Account is no longer available"}), 401
    permissions = service.permissions.resolve_permissions(account)
    return jsonify({"account": account.public_view(), "permissions": permissions.to_dict()}), 200
