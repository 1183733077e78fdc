import pytest

from identity_hub.config.settings import MatchingSettings
from identity_hub.core.authenticator import HybridAuthenticator, hash_secret, verify_secret
from identity_hub.core.errors import (
    GENERIC_LOGIN_MESSAGE,
    AccountDisabled,
    AccountNotFound,
    AuthFailed,
    BadSecret,
    IdentityNotProvisioned,
    NoLocalSecret,
    WrongAuthMode,
)
from identity_hub.core.models import AuthMode, DirectoryIdentity, LocalAccount
from identity_hub.core.permissions import RolePermissionResolver
from identity_hub.core.tokens import TokenService

from tests.conftest import FIXED_NOW


MARIA_DIR = DirectoryIdentity(username="mlopez", email="MLopez@corp.test", given_name="Maria", surname="Lopez")

PERMISSIONS = RolePermissionResolver({
    "default_role": "employee",
    "positions": {"IT Manager": "admin"},
    "roles": {
        "admin": {"accounts": ["create", "read", "update", "delete"]},
        "employee": {"profile": ["read", "update"]},
    },
})


@pytest.fixture
def tokens():
    return TokenService("test-jwt-secret-with-32-bytes-min")


@pytest.fixture
def make_authenticator(fake_directory, store, tokens, fixed_clock, recording_audit):
    def build(settings=None):
        return HybridAuthenticator(
            fake_directory,
            store,
            PERMISSIONS,
            settings=settings or MatchingSettings(),
            tokens=tokens,
            clock=fixed_clock,
            audit=recording_audit,
        )
    return build


@pytest.fixture
def authenticator(make_authenticator):
    return make_authenticator()


def _local(username, password=None, **kwargs):
    kwargs.setdefault("email", f"{username}@corp.test")
    return LocalAccount(
        username=username,
        local_secret_hash=hash_secret(password, rounds=4) if password else None,
        **kwargs,
    )


class TestSecrets:
    def test_hash_roundtrip(self):
        hashed = hash_secret("S3cret!pass", rounds=4)

        assert hashed.startswith("$2")
        assert verify_secret("S3cret!pass", hashed)
        assert not verify_secret("other", hashed)

    def test_missing_or_malformed_hash(self):
        assert not verify_secret("x", None)
        assert not verify_secret("x", "not-a-bcrypt-hash")


class TestDirectoryPath:
    def test_existing_directory_account(self, authenticator, fake_directory, store, tokens, recording_audit):
        fake_directory.add_user(MARIA_DIR, "DirPassw0rd!")
        store.create(LocalAccount(
            username="mlopez", email="mlopez@corp.test", auth_mode=AuthMode.DIRECTORY,
            linked_erp_id="1", position="IT Manager",
        ))

        result = authenticator.authenticate("mlopez", "DirPassw0rd!")

        assert result.auth_method is AuthMode.DIRECTORY
        assert result.permissions.role == "admin"
        assert result.account.last_login == FIXED_NOW
        assert store.get_by_username("mlopez").last_login == FIXED_NOW
        assert tokens.verify(result.access_token)["username"] == "mlopez"
        assert result.trace == ["start", "directory_attempt", "success"]
        assert recording_audit.types() == ["login_success"]

    def test_links_erp_backed_local_account(self, authenticator, fake_directory, store):
        fake_directory.add_user(MARIA_DIR, "DirPassw0rd!")
        store.create(_local("maria.lopez", full_name_source_erp="Maria Lopez Garcia", linked_erp_id="1"))

        result = authenticator.authenticate("mlopez", "DirPassw0rd!")

        assert result.account.username == "mlopez"
        assert result.account.auth_mode is AuthMode.DIRECTORY
        assert result.account.email == "mlopez@corp.test"
        assert store.get_by_username("maria.lopez") is None
        assert store.get_by_linked_erp_id("1").username == "mlopez"

    def test_not_provisioned(self, authenticator, fake_directory, store, recording_audit):
        fake_directory.add_user(MARIA_DIR, "DirPassw0rd!")
        store.create(_local("carlos.ruiz", full_name_source_erp="Carlos Ruiz", linked_erp_id="2"))

        with pytest.raises(IdentityNotProvisioned) as exc:
            authenticator.authenticate("mlopez", "DirPassw0rd!")

        assert exc.value.public_message == GENERIC_LOGIN_MESSAGE
        assert store.get_by_username("mlopez") is None
        failure = recording_audit.events[-1]
        assert failure.event_type == "login_failure"
        assert failure.details == {"path": "directory", "reason": "identity_not_provisioned"}
        assert failure.success is False

    def test_unlinked_local_accounts_are_not_candidates(self, authenticator, fake_directory, store):
        fake_directory.add_user(MARIA_DIR, "DirPassw0rd!")
        store.create(_local("maria.lopez", full_name_source_erp="Maria Lopez"))

        with pytest.raises(IdentityNotProvisioned):
            authenticator.authenticate("mlopez", "DirPassw0rd!")

    def test_disabled_directory_account(self, authenticator, fake_directory, store):
        fake_directory.add_user(MARIA_DIR, "DirPassw0rd!")
        store.create(LocalAccount(
            username="mlopez", email="mlopez@corp.test", auth_mode=AuthMode.DIRECTORY, active=False,
        ))

        with pytest.raises(AccountDisabled):
            authenticator.authenticate("mlopez", "DirPassw0rd!")

    def test_low_confidence_link_allowed_by_default(self, authenticator, fake_directory, store):
        fake_directory.add_user(
            DirectoryIdentity(username="adiaz", email="adiaz@corp.test", given_name="Ana", surname="Diaz"), "Clave#2024x"
        )
        store.create(_local("ana.dias", full_name_source_erp="Ana Dias", linked_erp_id="3"))

        result = authenticator.authenticate("adiaz", "Clave#2024x")

        assert result.account.username == "adiaz"

    def test_low_confidence_link_refused_when_confidence_required(self, make_authenticator, fake_directory, store):
        fake_directory.add_user(
            DirectoryIdentity(username="adiaz", email="adiaz@corp.test", given_name="Ana", surname="Diaz"), "Clave#2024x"
        )
        store.create(_local("ana.dias", full_name_source_erp="Ana Dias", linked_erp_id="3"))
        authenticator = make_authenticator(MatchingSettings(login_requires_confidence=True))

        with pytest.raises(IdentityNotProvisioned):
            authenticator.authenticate("adiaz", "Clave#2024x")


class TestLocalPath:
    def test_local_login(self, authenticator, store, recording_audit):
        store.create(_local("contractor", "Loc4l!Secret", linked_erp_id="9"))

        result = authenticator.authenticate("contractor", "Loc4l!Secret")

        assert result.auth_method is AuthMode.LOCAL
        assert result.permissions.role == "employee"
        assert result.trace == ["start", "directory_attempt", "local_fallback", "local_attempt", "success"]
        assert recording_audit.events[-1].details["method"] == "local"

    def test_directory_unreachable_falls_back(self, authenticator, fake_directory, store):
        fake_directory.reachable = False
        store.create(_local("contractor", "Loc4l!Secret"))

        assert authenticator.authenticate("contractor", "Loc4l!Secret").auth_method is AuthMode.LOCAL

    def test_unexpected_directory_error_falls_back(self, store, tokens, fixed_clock, recording_audit):
        class ExplodingDirectory:
            def authenticate(self, username, secret):
                raise OSError("socket reset outside the connector")

        authenticator = HybridAuthenticator(
            ExplodingDirectory(), store, PERMISSIONS, tokens=tokens, clock=fixed_clock, audit=recording_audit,
        )
        store.create(_local("maria.lopez", "OldPassw0rd!"))

        result = authenticator.authenticate("maria.lopez", "OldPassw0rd!")

        assert result.auth_method is AuthMode.LOCAL
        assert result.trace == ["start", "directory_attempt", "local_fallback", "local_attempt", "success"]

    def test_unknown_account(self, authenticator):
        with pytest.raises(AccountNotFound):
            authenticator.authenticate("ghost", "whatever")

    def test_directory_account_cannot_use_local_path(self, authenticator, store):
        store.create(_local("mlopez", "Loc4l!Secret", auth_mode=AuthMode.DIRECTORY))

        with pytest.raises(WrongAuthMode):
            authenticator.authenticate("mlopez", "Loc4l!Secret")

    def test_account_without_secret(self, authenticator, store):
        store.create(_local("nosecret"))

        with pytest.raises(NoLocalSecret):
            authenticator.authenticate("nosecret", "anything")

    def test_wrong_secret(self, authenticator, store, recording_audit):
        store.create(_local("contractor", "Loc4l!Secret"))

        with pytest.raises(BadSecret):
            authenticator.authenticate("contractor", "wrong")

        assert recording_audit.events[-1].details == {"path": "local", "reason": "bad_secret"}

    def test_disabled_local_account(self, authenticator, store):
        store.create(_local("contractor", "Loc4l!Secret", active=False))

        with pytest.raises(AccountDisabled):
            authenticator.authenticate("contractor", "Loc4l!Secret")

    @pytest.mark.parametrize(
        "setup, username, password",
        [
            (None, "ghost", "x"),
            ({"auth_mode": AuthMode.DIRECTORY}, "dir.user", "x"),
            ({}, "plain.user", "wrong"),
        ],
    )
    def test_failures_share_generic_message(self, authenticator, store, setup, username, password):
        if setup is not None:
            store.create(_local(username, "Loc4l!Secret", **setup))

        with pytest.raises(AuthFailed) as exc:
            authenticator.authenticate(username, password)

        assert exc.value.public_message == GENERIC_LOGIN_MESSAGE
        assert exc.value.to_dict() == {"error": "auth_failed", "message": GENERIC_LOGIN_MESSAGE}

    def test_login_never_creates_accounts(self, authenticator, store):
        with pytest.raises(AccountNotFound):
            authenticator.authenticate("newcomer", "Whatever1!")

        assert store.list_accounts() == []
