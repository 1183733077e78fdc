"""Pytest shared fixtures for the identity engine."""
import datetime
import os
import pathlib
import sys
from types import SimpleNamespace

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Configure test environment BEFORE any identity_hub imports
os.environ.setdefault("DEMO_MODE", "true")

import pytest

from identity_hub.config.settings import AppConfig, DirectorySettings, MatchingSettings
from identity_hub.core.errors import AuthFailed, ConnectionUnavailable, PolicyRejected
from identity_hub.core.models import DirectoryIdentity
from identity_hub.core.store import InMemoryAccountStore, StaticErpRoster


FIXED_NOW = datetime.datetime(2024, 5, 1, 9, 30, tzinfo=datetime.timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────────────────────
class FakeDirectory:
    """In-memory stand-in for DirectoryClient.

    ``users`` maps username -> (password, DirectoryIdentity). Every call is
    recorded in ``calls`` so tests can assert on (absence of) invocations.
    """

    def __init__(self, users=None, roster=None, reachable=True):
        self.users = dict(users or {})
        self.roster = list(roster or [])
        self.reachable = reachable
        self.calls = []

    def add_user(self, identity: DirectoryIdentity, password: str):
        self.users[identity.username] = (password, identity)
        if identity not in self.roster:
            self.roster.append(identity)

    def authenticate(self, username, secret):
        self.calls.append(("authenticate", username))
        if not self.reachable:
            raise ConnectionUnavailable("fake directory offline")
        entry = self.users.get(username)
        if entry is None or entry[0] != secret or not secret:
            raise AuthFailed("bad credentials")
        return entry[1]

    def fetch_all_identities(self):
        self.calls.append(("fetch_all_identities",))
        return list(self.roster) if self.reachable else []

    def check_connection(self):
        self.calls.append(("check_connection",))
        outcome = "success" if self.reachable else "unavailable"
        return {
            "reachable": self.reachable,
            "strategy": "anonymous/ldaps" if self.reachable else None,
            "attempts": [{"strategy": "anonymous/ldaps", "outcome": outcome, "elapsed_ms": 0}],
        }

    def change_secret(self, username, old_secret, new_secret, *, owner_hints=None):
        self.calls.append(("change_secret", username))
        if not self.reachable:
            raise ConnectionUnavailable("fake directory offline")
        password, identity = self.users[username]
        if password != old_secret:
            raise AuthFailed("bad credentials")
        self.users[username] = (new_secret, identity)
        return SimpleNamespace(username=username, strategy="ldaps", attempts=[])


class RecordingAudit:
    """Collects audit events instead of writing the signed log."""

    def __init__(self):
        self.events = []

    def __call__(self, event_type, username, **kwargs):
        self.events.append(SimpleNamespace(event_type=event_type, username=username, **kwargs))
        return True

    def types(self):
        return [event.event_type for event in self.events]


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def matching_settings():
    return MatchingSettings()


@pytest.fixture()
def app_config(tmp_path):
    """AppConfig built directly (no environment parsing)."""
    return AppConfig(
        demo_mode=True,
        secret_key="test-secret-key",
        directory=DirectorySettings(
            host="dc01.corp.test",
            base_dn="DC=corp,DC=test",
            domain="CORP",
            email_domain="corp.test",
        ),
        matching=MatchingSettings(),
        roster_cache_ttl=0,
        local_email_domain="corp.test",
        account_store_path=str(tmp_path / "accounts.json"),
        erp_roster_path=str(tmp_path / "erp.json"),
        password_policy_preset="strict",
        bcrypt_rounds=4,
        jwt_secret="test-jwt-secret-with-32-bytes-min",
        sync_api_token="sync-token",
        audit_log_signing_key="test-audit-key",
    )


@pytest.fixture()
def fake_directory():
    return FakeDirectory()


@pytest.fixture()
def store():
    return InMemoryAccountStore()


@pytest.fixture()
def erp_roster():
    return StaticErpRoster()


@pytest.fixture()
def recording_audit():
    return RecordingAudit()


@pytest.fixture()
def fixed_clock():
    return lambda: FIXED_NOW


# ─────────────────────────────────────────────────────────────────────────────
# Pytest Configuration
# ─────────────────────────────────────────────────────────────────────────────
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (requires a reachable directory)"
    )
    config.addinivalue_line(
        "markers", "critical: marks tests as critical security tests (P0 priority)"
    )
