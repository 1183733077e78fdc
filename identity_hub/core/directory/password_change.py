"""Password-write mechanisms, tried in order until one succeeds.

1. ``ldaps``     dedicated encrypted connection
2. ``starttls``  plain connection upgraded in place
3. ``helper``    out-of-process privileged helper (secrets on stdin, never argv)
4. ``http_api``  external HTTP password-change service
"""
from __future__ import annotations
import json
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Any, Callable

import requests

from identity_hub.config.settings import DirectorySettings
from identity_hub.core.directory.connection import LDAPS, STARTTLS, DirectoryConnector
from identity_hub.core.directory.entries import down_level_logon_name, user_principal_name
from identity_hub.core.directory.strategies import Strategy
from identity_hub.core.errors import AuthFailed, ConnectionUnavailable, DirectoryTimeout, PolicyRejected

logger = logging.getLogger(__name__)


@dataclass
class PasswordChangeRequest:
    username: str
    user_dn: str
    old_password: str = field(repr=False)
    new_password: str = field(repr=False)


def build_change_strategies(
    settings: DirectorySettings,
    connector: DirectoryConnector,
    change: PasswordChangeRequest,
    *,
    http: Any = None,
    run_process: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> list[Strategy[None]]:
    """Ordered write strategies for one change request."""
    http = http or requests
    return [
        Strategy(
            LDAPS,
            lambda: write_over_directory(settings, connector, LDAPS, change),
            timeout=settings.change_timeout,
        ),
        Strategy(
            STARTTLS,
            lambda: write_over_directory(settings, connector, STARTTLS, change),
            timeout=settings.change_timeout,
        ),
        # helper and http_api enforce their own timeouts
        Strategy(
            "helper",
            lambda: write_via_helper(settings, change, run_process),
            enabled=bool(settings.helper_command),
        ),
        Strategy(
            "http_api",
            lambda: write_via_http_api(settings, change, http),
            enabled=bool(settings.change_api_url),
        ),
    ]


def write_over_directory(
    settings: DirectorySettings,
    connector: DirectoryConnector,
    transport: str,
    change: PasswordChangeRequest,
) -> None:
    """Modify the password attribute over an encrypted directory connection.

    With an administrative account configured the password is replaced by the
    admin; otherwise the user binds with the old password (trying each logon
    name form) and swaps old for new.
    """
    if settings.admin_bind_dn and settings.admin_bind_password:
        try:
            with connector.session(
                transport,
                user=settings.admin_bind_dn,
                password=settings.admin_bind_password,
                timeout=settings.change_timeout,
            ) as session:
                session.modify_password(change.user_dn, change.new_password)
        except AuthFailed:
            # Misconfigured admin account is not the user's fault
            raise ConnectionUnavailable(f"{transport}: administrative bind was rejected")
        return

    bind_names = [
        down_level_logon_name(change.username, settings.domain),
        change.user_dn,
        user_principal_name(change.username, settings.upn_suffix),
    ]
    for bind_name in dict.fromkeys(name for name in bind_names if name):
        try:
            with connector.session(
                transport,
                user=bind_name,
                password=change.old_password,
                timeout=settings.change_timeout,
            ) as session:
                session.modify_password(change.user_dn, change.new_password, change.old_password)
            return
        except AuthFailed:
            logger.debug("%s: bind form rejected for %s, trying next form", transport, change.username)
            continue
    raise ConnectionUnavailable(f"{transport}: no bind form was accepted for the password write")


def write_via_helper(
    settings: DirectorySettings,
    change: PasswordChangeRequest,
    run_process: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> None:
    """Delegate the write to the privileged helper process.

    Exit status 0 is success, 2 means the directory refused the value on policy
    grounds, anything else is treated as unavailability.
    """
    payload = json.dumps({
        "username": change.username,
        "user_dn": change.user_dn,
        "old_password": change.old_password,
        "new_password": change.new_password,
    })
    try:
        completed = run_process(
            list(settings.helper_command),
            input=payload,
            capture_output=True,
            text=True,
            timeout=settings.helper_timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        raise DirectoryTimeout(f"password helper exceeded {settings.helper_timeout:g}s")
    except OSError as exc:
        raise ConnectionUnavailable(f"password helper could not start: {exc.__class__.__name__}") from exc

    if completed.returncode == 0:
        return
    reason = (completed.stderr or "").strip().splitlines()
    summary = reason[0][:200] if reason else f"exit status {completed.returncode}"
    if completed.returncode == 2:
        raise PolicyRejected([f"The directory rejected the new password: {summary}"])
    raise ConnectionUnavailable(f"password helper failed: {summary}")


def write_via_http_api(settings: DirectorySettings, change: PasswordChangeRequest, http: Any = None) -> None:
    """POST the change to the external password API."""
    http = http or requests
    headers = {"Content-Type": "application/json"}
    if settings.change_api_token:
        headers["Authorization"] = f"Bearer {settings.change_api_token}"
    try:
        response = http.post(
            settings.change_api_url,
            json={
                "username": change.username,
                "user_dn": change.user_dn,
                "current_password": change.old_password,
                "new_password": change.new_password,
            },
            headers=headers,
            timeout=settings.change_timeout,
        )
    except requests.Timeout:
        raise DirectoryTimeout(f"password API exceeded {settings.change_timeout:g}s")
    except requests.RequestException as exc:
        raise ConnectionUnavailable(f"password API unreachable: {exc.__class__.__name__}") from exc

    if 200 <= response.status_code < 300:
        return
    if response.status_code in (400, 422):
        raise PolicyRejected([_api_message(response) or "The password service rejected the new password"])
    raise ConnectionUnavailable(f"password API returned HTTP {response.status_code}")


def _api_message(response: Any) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or "")
    return ""
