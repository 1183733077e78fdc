"""
Flask decorators for bearer-token protected endpoints.

- ``require_access_token``: HS256 access token issued by ``/api/auth/login``
- ``require_sync_token``: static operator token for the reconciliation endpoint
"""

import hmac
import logging
from functools import wraps
from typing import Optional

from flask import current_app, g, jsonify, request

from identity_hub.core.tokens import TokenValidationError

logger = logging.getLogger(__name__)


def _bearer_token() -> tuple[Optional[str], Optional[str]]:
    """Extract the bearer token; returns (token, error_detail)."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header:
        return None, "Authorization header required. Use 'Authorization: Bearer <token>'"
    if not auth_header.startswith("Bearer "):
        return None, "Invalid Authorization header format. Expected 'Bearer <token>'"
    token = auth_header[7:].strip()
    if not token:
        return None, "Bearer token is empty"
    return token, None


def _unauthorized(detail: str):
    return jsonify({"error": "unauthorized", "message": detail}), 401


def require_access_token(fn):
    """Require a valid access token; claims are exposed as ``g.token_claims``.

    Example:
        @bp.route("/me")
        @require_access_token
        def me():
            return {"username": g.token_claims["username"]}
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        token, error = _bearer_token()
        if error:
            logger.warning(f"Request to {request.path} rejected: {error}")
            return _unauthorized(error)

        service = current_app.config["IDENTITY_SERVICE"]
        try:
            claims = service.tokens.verify(token)
        except TokenValidationError as e:
            logger.warning(f"Access token rejected on {request.path}: {e}")
            return _unauthorized(str(e))

        g.token_claims = claims
        return fn(*args, **kwargs)

    return wrapper


def require_sync_token(fn):
    """Require the configured reconciliation API token (constant-time compare)."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        token, error = _bearer_token()
        if error:
            logger.warning(f"Sync request rejected: {error}")
            return _unauthorized(error)

        expected = current_app.config["APP_CONFIG"].sync_api_token
        if not expected:
            logger.error("SYNC_API_TOKEN is not configured; refusing sync request")
            return jsonify({"error": "unavailable", "message": "Sync API is not configured"}), 503
        if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            logger.warning("Sync request with invalid token")
            return _unauthorized("Invalid sync token")

        return fn(*args, **kwargs)

    return wrapper
