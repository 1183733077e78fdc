from contextlib import contextmanager
from types import SimpleNamespace

import pytest

from identity_hub.config.settings import DirectorySettings
from identity_hub.core.directory import DirectoryClient
from identity_hub.core.errors import AuthFailed, ChangeUnverified, ConnectionUnavailable, PolicyRejected
from identity_hub.core.models import DirectoryIdentity


MARIA = DirectoryIdentity(username="mlopez", email="mlopez@corp.test", given_name="Maria", surname="Lopez")
MARIA_DN = "CN=Maria Lopez,OU=People,DC=corp,DC=test"
ADMIN_DN = "CN=svc-admin,OU=Service,DC=corp,DC=test"
SERVICE_DN = "CN=svc-reader,OU=Service,DC=corp,DC=test"


class FakeSession:
    def __init__(self, directory):
        self.directory = directory

    def find_identity(self, username):
        return self.directory.identities.get(username)

    def find_dn(self, username):
        return self.directory.dns.get(username)

    def search_people(self):
        return list(self.directory.identities.values())

    def modify_password(self, user_dn, new_password, old_password=None):
        self.directory.writes.append((user_dn, old_password is None))
        if self.directory.ignore_writes:
            return
        username = next(name for name, dn in self.directory.dns.items() if dn == user_dn)
        self.directory.passwords[username] = new_password


class FakeConnector:
    """Scripted directory: per-transport availability plus a password table."""

    def __init__(self, down=(), allow_anonymous=True):
        self.down = set(down)
        self.allow_anonymous = allow_anonymous
        self.ignore_writes = False
        self.identities = {"mlopez": MARIA}
        self.dns = {"mlopez": MARIA_DN}
        self.passwords = {"mlopez": "OldPassw0rd!", ADMIN_DN: "admin-pw", SERVICE_DN: "reader-pw"}
        self.sessions = []
        self.writes = []

    def _principal(self, user):
        if "\\" in user:
            return user.split("\\", 1)[1]
        for username, dn in self.dns.items():
            if dn == user:
                return username
        if "@" in user:
            return user.split("@", 1)[0]
        return user

    @contextmanager
    def session(self, transport, *, user=None, password=None, timeout=5.0):
        self.sessions.append((transport, user))
        if transport in self.down:
            raise ConnectionUnavailable(f"{transport} unreachable")
        if user is None:
            if not self.allow_anonymous:
                raise AuthFailed("anonymous bind refused")
        elif self.passwords.get(self._principal(user)) != password:
            raise AuthFailed("invalid credentials")
        yield FakeSession(self)


@pytest.fixture
def settings():
    return DirectorySettings(
        host="dc01.corp.test",
        base_dn="DC=corp,DC=test",
        domain="CORP",
        email_domain="corp.test",
        transports=["ldaps", "starttls", "plain"],
        auth_timeout=2.0,
        search_timeout=2.0,
        change_timeout=2.0,
    )


def _client(settings, connector, **kwargs):
    return DirectoryClient(settings, connector=connector, **kwargs)


class TestAuthenticate:
    def test_binds_over_first_transport(self, settings):
        connector = FakeConnector()

        identity = _client(settings, connector).authenticate("mlopez", "OldPassw0rd!")

        assert identity == MARIA
        assert connector.sessions == [("ldaps", "CORP\\mlopez")]

    def test_falls_back_when_transport_unavailable(self, settings):
        connector = FakeConnector(down={"ldaps", "starttls"})

        identity = _client(settings, connector).authenticate("mlopez", "OldPassw0rd!")

        assert identity == MARIA
        assert [transport for transport, _ in connector.sessions] == ["ldaps", "starttls", "plain"]

    def test_wrong_password_stops_immediately(self, settings):
        connector = FakeConnector()

        with pytest.raises(AuthFailed):
            _client(settings, connector).authenticate("mlopez", "wrong")

        assert len(connector.sessions) == 1

    @pytest.mark.parametrize("username, secret", [("mlopez", ""), ("", "pw"), ("  ", "pw")])
    def test_empty_credentials_never_reach_directory(self, settings, username, secret):
        connector = FakeConnector()

        with pytest.raises(AuthFailed):
            _client(settings, connector).authenticate(username, secret)

        assert connector.sessions == []

    def test_unreachable_directory(self, settings):
        connector = FakeConnector(down={"ldaps", "starttls", "plain"})

        with pytest.raises(ConnectionUnavailable) as exc:
            _client(settings, connector).authenticate("mlopez", "OldPassw0rd!")

        assert len(exc.value.attempts) == 3

    def test_bound_but_entry_missing(self, settings):
        connector = FakeConnector()
        connector.identities = {}

        with pytest.raises(AuthFailed):
            _client(settings, connector).authenticate("mlopez", "OldPassw0rd!")


class TestFetchAllIdentities:
    def test_service_account_search(self, settings):
        settings.service_bind_dn = SERVICE_DN
        settings.service_bind_password = "reader-pw"
        connector = FakeConnector()

        identities = _client(settings, connector).fetch_all_identities()

        assert identities == [MARIA]
        assert connector.sessions == [("ldaps", SERVICE_DN)]

    def test_anonymous_after_service_bind_rejected(self, settings):
        settings.service_bind_dn = SERVICE_DN
        settings.service_bind_password = "stale"
        connector = FakeConnector()

        identities = _client(settings, connector).fetch_all_identities()

        assert identities == [MARIA]
        assert connector.sessions[-1] == ("ldaps", None)
        assert len(connector.sessions) == 4

    def test_unreachable_directory_returns_empty(self, settings):
        connector = FakeConnector(down={"ldaps", "starttls", "plain"})

        assert _client(settings, connector).fetch_all_identities() == []

    def test_anonymous_refused_returns_empty(self, settings):
        connector = FakeConnector(allow_anonymous=False)

        assert _client(settings, connector).fetch_all_identities() == []


class TestCheckConnection:
    def test_service_bind_reachable(self, settings):
        settings.service_bind_dn = SERVICE_DN
        settings.service_bind_password = "reader-pw"
        connector = FakeConnector(down={"ldaps"})

        status = _client(settings, connector).check_connection()

        assert status["reachable"] is True
        assert status["strategy"] == "service/starttls"
        assert [a["outcome"] for a in status["attempts"]] == ["unavailable", "success"]

    def test_anonymous_bind_reachable(self, settings):
        connector = FakeConnector()

        status = _client(settings, connector).check_connection()

        assert status["strategy"] == "anonymous/ldaps"
        assert connector.sessions == [("ldaps", None)]

    def test_unreachable_never_raises(self, settings):
        connector = FakeConnector(down={"ldaps", "starttls", "plain"})

        status = _client(settings, connector).check_connection()

        assert status["reachable"] is False
        assert status["strategy"] is None
        assert len(status["attempts"]) == 3

    def test_unexpected_error_reported_unreachable(self, settings):
        class BrokenConnector(FakeConnector):
            @contextmanager
            def session(self, transport, *, user=None, password=None, timeout=5.0):
                raise RuntimeError("driver bug")
                yield

        status = _client(settings, BrokenConnector()).check_connection()

        assert status == {"reachable": False, "strategy": None, "attempts": []}


class TestChangeSecret:
    def test_policy_violation_makes_no_network_call(self, settings):
        connector = FakeConnector()

        with pytest.raises(PolicyRejected) as exc:
            _client(settings, connector).change_secret("mlopez", "OldPassw0rd!", "short")

        assert connector.sessions == []
        assert exc.value.violations

    def test_username_hint_is_applied(self, settings):
        connector = FakeConnector()

        with pytest.raises(PolicyRejected):
            _client(settings, connector).change_secret("mlopez", "OldPassw0rd!", "Mlopez#2024!x")

        assert connector.sessions == []

    def test_changes_and_verifies(self, settings):
        connector = FakeConnector()

        report = _client(settings, connector).change_secret("mlopez", "OldPassw0rd!", "Nu3v@Clave#Segura")

        assert report.strategy == "ldaps"
        assert connector.passwords["mlopez"] == "Nu3v@Clave#Segura"
        assert connector.writes == [(MARIA_DN, False)]

    def test_wrong_current_password(self, settings):
        connector = FakeConnector()

        with pytest.raises(AuthFailed):
            _client(settings, connector).change_secret("mlopez", "nope", "Nu3v@Clave#Segura")

        assert connector.writes == []

    def test_admin_account_resets_password(self, settings):
        settings.admin_bind_dn = ADMIN_DN
        settings.admin_bind_password = "admin-pw"
        connector = FakeConnector()

        _client(settings, connector).change_secret("mlopez", "OldPassw0rd!", "Nu3v@Clave#Segura")

        assert connector.writes == [(MARIA_DN, True)]
        assert ("ldaps", ADMIN_DN) in connector.sessions

    def test_unconfirmed_write(self, settings):
        connector = FakeConnector()
        connector.ignore_writes = True

        with pytest.raises(ChangeUnverified):
            _client(settings, connector).change_secret("mlopez", "OldPassw0rd!", "Nu3v@Clave#Segura")

    def test_falls_back_to_http_api(self, settings):
        settings.change_api_url = "https://pwd.corp.test/api/change"
        settings.change_api_token = "api-token"
        connector = FakeConnector(down={"ldaps", "starttls"})
        posted = []

        def post(url, json, headers, timeout):
            posted.append((url, headers))
            connector.passwords[json["username"]] = json["new_password"]
            return SimpleNamespace(status_code=204)

        report = _client(settings, connector, http=SimpleNamespace(post=post)).change_secret(
            "mlopez", "OldPassw0rd!", "Nu3v@Clave#Segura"
        )

        assert report.strategy == "http_api"
        assert [(a.strategy, a.outcome) for a in report.attempts] == [
            ("ldaps", "unavailable"),
            ("starttls", "unavailable"),
            ("helper", "skipped"),
            ("http_api", "success"),
        ]
        assert posted[0][1]["Authorization"] == "Bearer api-token"

    def test_no_write_mechanism_available(self, settings):
        connector = FakeConnector(down={"ldaps", "starttls"})

        with pytest.raises(ConnectionUnavailable) as exc:
            _client(settings, connector).change_secret("mlopez", "OldPassw0rd!", "Nu3v@Clave#Segura")

        assert not isinstance(exc.value, ChangeUnverified)
        assert connector.passwords["mlopez"] == "OldPassw0rd!"
