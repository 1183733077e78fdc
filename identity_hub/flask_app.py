"""Flask application factory and bootstrap.

Run with a WSGI server, e.g. ``gunicorn "identity_hub.flask_app:create_app()"``.
"""
from __future__ import annotations
import logging
from typing import Optional

from flask import Flask
from werkzeug.middleware.proxy_fix import ProxyFix

from identity_hub.config import AppConfig, load_settings
from identity_hub.core.service import IdentityService


# ─────────────────────────────────────────────────────────────────────────────
# Application Factory
# ─────────────────────────────────────────────────────────────────────────────
def create_app(cfg: Optional[AppConfig] = None, service: Optional[IdentityService] = None) -> Flask:
    """Create and configure Flask application.

    Args:
        cfg: Configuration (loaded from the environment when omitted)
        service: Pre-wired identity service (built from ``cfg`` when omitted)
    """
    cfg = cfg or load_settings()
    service = service or IdentityService.from_config(cfg)

    app = Flask(__name__)
    app.config["APP_CONFIG"] = cfg
    app.config["IDENTITY_SERVICE"] = service
    app.config["SECRET_KEY"] = cfg.secret_key
    app.config["JSON_SORT_KEYS"] = False

    _configure_logging(app, cfg)

    # Trust X-Forwarded-* headers from the reverse proxy
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)  # type: ignore

    # Register blueprints
    from identity_hub.api import auth, errors, health, sync

    app.register_blueprint(auth.bp)
    app.register_blueprint(sync.bp)
    app.register_blueprint(health.bp)

    # Register error handlers
    errors.register_error_handlers(app)

    mode_label = "DEMO" if cfg.demo_mode else "PRODUCTION"
    print(f"[flask_app] Mode={mode_label}")
    print(f"[flask_app] Auth API registered at /api/auth, sync API at /api/sync")

    if cfg.demo_mode:
        print("[flask_app] WARNING: Demo mode active - do not deploy with demo credentials")

    return app


def _configure_logging(app: Flask, cfg: AppConfig) -> None:
    """Send package logs through the Flask/gunicorn handlers."""
    level = logging.DEBUG if cfg.demo_mode else logging.INFO
    package_logger = logging.getLogger("identity_hub")
    package_logger.setLevel(level)
    if not package_logger.handlers and not logging.getLogger().handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
        package_logger.addHandler(handler)


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=5000, debug=False)
