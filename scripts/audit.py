"""Signed audit trail for identity events.

Each event is one JSON line in ``AUDIT_LOG_FILE``; when a signing key is
available the line carries an HMAC-SHA256 ``signature`` over the canonical
event so later edits are detectable (see ``verify_audit_log``).

Details are redacted before writing: any key that names a password, secret,
token, hash or credential is dropped, at every nesting level.
"""

from __future__ import annotations
import datetime
import hashlib
import hmac
import json
import os
import sys
from pathlib import Path
from typing import Any, Iterator, Literal, Optional

AUDIT_LOG_DIR = Path(os.environ.get("AUDIT_LOG_DIR", ".runtime/audit"))
AUDIT_LOG_FILE = AUDIT_LOG_DIR / "identity-events.jsonl"

_default_secret_paths: list[Path] = [
    Path(p) for p in [os.environ.get("AUDIT_LOG_SIGNING_KEY_FILE", "")] if p
] + [
    Path("/run/secrets/audit_log_signing_key"),
    Path(".runtime/secrets/audit_log_signing_key"),
]

_SENSITIVE_MARKERS = ("password", "secret", "token", "hash", "credential")

EventType = Literal[
    "login_success", "login_failure",
    "password_change", "password_set",
    "reconcile_create", "reconcile_update", "reconcile_deactivate", "reconcile_run",
]


def _signing_key() -> bytes:
    key = os.environ.get("AUDIT_LOG_SIGNING_KEY", "").strip()
    if key:
        return key.encode("utf-8")
    for path in _default_secret_paths:
        if not path.is_file():
            continue
        try:
            key = path.read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if key:
            return key.encode("utf-8")
    return b""


def _signature(event: dict[str, Any], key: bytes) -> str:
    canonical = json.dumps(event, sort_keys=True, separators=(",", ":"), default=str)
    return hmac.new(key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def redact(details: dict[str, Any] | None) -> dict[str, Any]:
    """Copy of ``details`` without secret-looking keys."""
    return {
        key: redact(value) if isinstance(value, dict) else value
        for key, value in (details or {}).items()
        if not any(marker in key.lower() for marker in _SENSITIVE_MARKERS)
    }


def log_identity_event(
    event_type: EventType,
    username: str,
    *,
    operator: str = "system",
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """Append one event to the audit trail.

    Args:
        event_type: Kind of identity event
        username: Account the event is about ("*" for whole-roster runs)
        operator: Who triggered it (the user, "cli", "sync-api", "reconciliation")
        details: Extra context, redacted before writing
        success: Outcome of the operation
    """
    AUDIT_LOG_DIR.mkdir(parents=True, exist_ok=True)
    AUDIT_LOG_DIR.chmod(0o700)

    event: dict[str, Any] = {
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "event_type": event_type,
        "username": username,
        "operator": operator,
        "success": success,
        "details": redact(details),
    }
    key = _signing_key()
    if key:
        event["signature"] = _signature(event, key)

    with AUDIT_LOG_FILE.open("a", encoding="utf-8") as f:
        f.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")
    AUDIT_LOG_FILE.chmod(0o600)


def safe_log_identity_event(
    event_type: EventType,
    username: str,
    *,
    operator: str = "system",
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> bool:
    """``log_identity_event`` that reports failures on stderr instead of raising.

    A full disk must not turn a valid login into an error.
    """
    try:
        log_identity_event(event_type, username, operator=operator, details=details, success=success)
    except Exception as e:
        print(f"[audit] Warning: could not record {event_type} for {username}: {e}", file=sys.stderr)
        return False
    return True


def read_events(
    username: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: Optional[int] = None,
) -> Iterator[dict[str, Any]]:
    """Yield logged events, oldest first, optionally filtered.

    ``limit`` keeps only the most recent matches. Unparseable lines are skipped.
    """
    if not AUDIT_LOG_FILE.exists():
        return iter(())

    matches = []
    with AUDIT_LOG_FILE.open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if username is not None and event.get("username") != username:
                continue
            if event_type is not None and event.get("event_type") != event_type:
                continue
            matches.append(event)

    if limit is not None:
        matches = matches[-limit:] if limit > 0 else []
    return iter(matches)


def verify_audit_log() -> tuple[int, int]:
    """Count events and events whose signature checks out.

    Returns:
        Tuple of (total_events, valid_signatures)
    """
    if not AUDIT_LOG_FILE.exists():
        return 0, 0

    key = _signing_key()
    total = valid = 0
    with AUDIT_LOG_FILE.open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            total += 1
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            stored = event.pop("signature", "")
            if stored and key and hmac.compare_digest(stored, _signature(event, key)):
                valid += 1
    return total, valid


if __name__ == "__main__":
    total, valid = verify_audit_log()
    print(f"[audit] {valid}/{total} events with valid signatures")
    sys.exit(0 if total == valid else 1)
