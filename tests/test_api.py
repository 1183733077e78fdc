"""HTTP-level tests for the Flask application."""
import pytest

from identity_hub.core.authenticator import hash_secret
from identity_hub.core.errors import GENERIC_LOGIN_MESSAGE
from identity_hub.core.models import AuthMode, DirectoryIdentity, ErpPersonRecord, LocalAccount
from identity_hub.core.service import IdentityService
from identity_hub.flask_app import create_app


NEW_PASSWORD = "Nu3v@Clave#Segura"


@pytest.fixture
def service(app_config, fake_directory, store, erp_roster, recording_audit):
    return IdentityService(
        app_config,
        directory=fake_directory,
        store=store,
        erp_source=erp_roster,
        audit_event=recording_audit,
    )


@pytest.fixture
def app(app_config, service):
    flask_app = create_app(cfg=app_config, service=service)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def local_account(store):
    return store.create(LocalAccount(
        username="contractor", email="contractor@corp.test", given_name="Pablo", surname="Mena",
        local_secret_hash=hash_secret("Loc4l!Secret", rounds=4), linked_erp_id="9",
    ))


def _login(client, username="contractor", password="Loc4l!Secret"):
    return client.post("/api/auth/login", json={"username": username, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


# ─────────────────────────────────────────────────────────────────────────────
# Health
# ─────────────────────────────────────────────────────────────────────────────

def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.data == b"ok"
    assert response.content_type.startswith("text/plain")


def test_ready(app, client):
    assert client.get("/ready").status_code == 200

    app.config["IDENTITY_SERVICE"] = None
    assert client.get("/ready").status_code == 503


def test_unknown_route_is_json_404(client):
    response = client.get("/api/nowhere")

    assert response.status_code == 404
    assert response.get_json()["error"] == "Not Found"


# ─────────────────────────────────────────────────────────────────────────────
# Login
# ─────────────────────────────────────────────────────────────────────────────

class TestLogin:
    def test_local_login(self, client, local_account):
        response = _login(client)

        assert response.status_code == 200
        body = response.get_json()
        assert body["auth_method"] == "local"
        assert body["account"]["username"] == "contractor"
        assert "local_secret_hash" not in body["account"]
        assert body["permissions"]["role"] == "employee"
        assert body["access_token"]

    def test_directory_login(self, client, fake_directory, store):
        fake_directory.add_user(
            DirectoryIdentity(username="mlopez", email="mlopez@corp.test", given_name="Maria", surname="Lopez"),
            "DirPassw0rd!",
        )
        store.create(LocalAccount(username="mlopez", email="mlopez@corp.test", auth_mode=AuthMode.DIRECTORY))

        response = _login(client, "mlopez", "DirPassw0rd!")

        assert response.status_code == 200
        assert response.get_json()["auth_method"] == "directory"

    @pytest.mark.critical
    @pytest.mark.parametrize(
        "username, password",
        [("contractor", "wrong"), ("ghost", "Loc4l!Secret")],
    )
    def test_failures_are_generic(self, client, local_account, username, password):
        response = _login(client, username, password)

        assert response.status_code == 401
        assert response.get_json() == {"error": "auth_failed", "message": GENERIC_LOGIN_MESSAGE}

    def test_missing_field(self, client):
        response = client.post("/api/auth/login", json={"username": "contractor"})

        assert response.status_code == 400
        assert response.get_json()["message"] == "Field 'password' is required"

    def test_body_must_be_object(self, client):
        response = client.post("/api/auth/login", json=["contractor", "x"])

        assert response.status_code == 400
        assert response.get_json()["error"] == "Bad Request"

    def test_directory_unreachable_still_allows_local(self, client, fake_directory, local_account):
        fake_directory.reachable = False

        assert _login(client).status_code == 200


# ─────────────────────────────────────────────────────────────────────────────
# Authenticated endpoints
# ─────────────────────────────────────────────────────────────────────────────

class TestAuthenticatedEndpoints:
    def test_me(self, client, local_account):
        token = _login(client).get_json()["access_token"]

        response = client.get("/api/auth/me", headers=_bearer(token))

        assert response.status_code == 200
        body = response.get_json()
        assert body["account"]["username"] == "contractor"
        assert "local_secret_hash" not in body["account"]
        assert body["permissions"]["role"] == "employee"

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Basic abc"}, {"Authorization": "Bearer not-a-jwt"}],
    )
    def test_me_requires_valid_token(self, client, headers):
        response = client.get("/api/auth/me", headers=headers)

        assert response.status_code == 401
        assert response.get_json()["error"] == "unauthorized"

    def test_me_for_deactivated_account(self, client, local_account, store):
        token = _login(client).get_json()["access_token"]
        local_account.active = False
        store.update(local_account)

        assert client.get("/api/auth/me", headers=_bearer(token)).status_code == 401

    def test_change_password(self, client, local_account):
        token = _login(client).get_json()["access_token"]

        response = client.post(
            "/api/auth/change-password",
            headers=_bearer(token),
            json={"current_password": "Loc4l!Secret", "new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD},
        )

        assert response.status_code == 200
        assert response.get_json() == {
            "status": "changed", "username": "contractor", "auth_mode": "local", "strategy": "local",
        }
        assert _login(client, password=NEW_PASSWORD).status_code == 200

    def test_change_password_policy_violations(self, client, local_account):
        token = _login(client).get_json()["access_token"]

        response = client.post(
            "/api/auth/change-password",
            headers=_bearer(token),
            json={"current_password": "Loc4l!Secret", "new_password": "short", "confirm_password": "short"},
        )

        assert response.status_code == 400
        body = response.get_json()
        assert body["error"] == "policy_rejected"
        assert "Password must be at least 8 characters long" in body["violations"]

    def test_change_password_requires_token(self, client):
        response = client.post(
            "/api/auth/change-password",
            json={"current_password": "a", "new_password": "b", "confirm_password": "b"},
        )

        assert response.status_code == 401


def test_validate_password(client):
    response = client.post(
        "/api/auth/validate-password",
        json={"password": "Pablo2024", "given_name": "Pablo"},
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["is_valid"] is False
    assert body["suggestions"]


# ─────────────────────────────────────────────────────────────────────────────
# Sync
# ─────────────────────────────────────────────────────────────────────────────

class TestSync:
    def test_run(self, client, erp_roster, store):
        erp_roster.records = [ErpPersonRecord("10", "Carlos Ruiz")]

        response = client.post("/api/sync/run", headers=_bearer("sync-token"), json={"only_active": "true"})

        assert response.status_code == 200
        assert response.get_json()["created"] == 1
        assert store.get_by_linked_erp_id("10") is not None

    def test_wrong_token(self, client, store):
        response = client.post("/api/sync/run", headers=_bearer("nope"))

        assert response.status_code == 401
        assert store.list_accounts() == []

    def test_missing_token(self, client):
        assert client.post("/api/sync/run").status_code == 401

    def test_not_configured(self, app, client):
        app.config["APP_CONFIG"].sync_api_token = ""

        response = client.post("/api/sync/run", headers=_bearer("sync-token"))

        assert response.status_code == 503

    def test_status_before_any_run(self, client, erp_roster, store, local_account):
        erp_roster.records = [ErpPersonRecord("10", "Carlos Ruiz"), ErpPersonRecord("11", "Ana Diaz")]
        store.create(LocalAccount(username="old.user", email="old.user@corp.test", active=False))

        response = client.get("/api/sync/status", headers=_bearer("sync-token"))

        assert response.status_code == 200
        body = response.get_json()
        assert body["erp_available"] is True
        assert body["erp_roster_size"] == 2
        assert body["accounts"] == {"active": 1, "inactive": 1}
        assert body["last_run"] is None
        assert body["directory"]["reachable"] is True

    def test_status_reports_last_run(self, client, erp_roster):
        erp_roster.records = [ErpPersonRecord("10", "Carlos Ruiz")]
        client.post("/api/sync/run", headers=_bearer("sync-token"))

        body = client.get("/api/sync/status", headers=_bearer("sync-token")).get_json()

        assert body["last_run"]["created"] == 1
        assert body["accounts"] == {"active": 1, "inactive": 0}

    def test_status_with_directory_down(self, client, fake_directory):
        fake_directory.reachable = False

        body = client.get("/api/sync/status", headers=_bearer("sync-token")).get_json()

        assert body["directory"]["reachable"] is False
        assert body["directory"]["strategy"] is None

    def test_status_can_skip_directory_check(self, client, fake_directory):
        body = client.get("/api/sync/status?directory=0", headers=_bearer("sync-token")).get_json()

        assert "directory" not in body
        assert ("check_connection",) not in fake_directory.calls

    def test_status_requires_token(self, client):
        assert client.get("/api/sync/status").status_code == 401
        assert client.get("/api/sync/status", headers=_bearer("nope")).status_code == 401
