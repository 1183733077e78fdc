"""Gunicorn configuration for the identity hub.

Run with: ``gunicorn -c gunicorn.conf.py "identity_hub.flask_app:create_app()"``

Secret Loading Priority (post_fork hook):
1. /run/secrets (Docker secrets mount, read by settings.py)
2. Environment variables
"""
import os
from pathlib import Path

bind = os.environ.get("GUNICORN_BIND", "0.0.0.0:8000")
workers = int(os.environ.get("GUNICORN_WORKERS", "2"))
# Directory fallbacks can take several strategy timeouts back to back
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "90"))
accesslog = "-"

SECRETS_DIR = Path("/run/secrets")
REQUIRED_SECRETS = {
    "FLASK_SECRET_KEY": "flask_secret_key",
    "JWT_SECRET": "jwt_secret",
}


def missing_secrets(secrets_dir: Path = SECRETS_DIR) -> list[str]:
    """Secrets available neither in ``secrets_dir`` nor in the environment."""
    missing = []
    for env_name, file_name in REQUIRED_SECRETS.items():
        if os.environ.get(env_name):
            continue
        if (secrets_dir / file_name).is_file():
            continue
        missing.append(env_name)
    return missing


def post_fork(server, worker):
    """
    Called just after a worker has been forked.

    Settings are loaded per worker by create_app(); this only reports where
    secrets will come from so a misconfigured deployment is visible early.
    """
    demo_mode = os.environ.get("DEMO_MODE", "false").lower() == "true"

    if SECRETS_DIR.exists() and SECRETS_DIR.is_dir():
        secret_files = list(SECRETS_DIR.glob("*"))
        if secret_files:
            worker.log.info(f"Found {len(secret_files)} secrets in /run/secrets")

    missing = missing_secrets(SECRETS_DIR)
    if missing and not demo_mode:
        worker.log.error(f"Missing secrets in production mode: {', '.join(missing)}")
    elif missing:
        worker.log.warning(f"DEMO_MODE=true: demo defaults will replace {', '.join(missing)}")
