"""
HTTP surface tests using FastAPI's TestClient.
"""

from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

from conftest import authentication_credential, credential_id_for, registration_credential
from passkey_auth.errors import StorageUnavailable
from passkey_auth.helpers import base64url_to_bytes

ALICE_KEY = credential_id_for("alice-key")


def register(client: TestClient, username: str = "alice_01", credential_id: str = ALICE_KEY):
    begin = client.post("/api/register/begin", json={"username": username})
    assert begin.status_code == 200
    body = begin.json()
    challenge = base64url_to_bytes(body["publicKey"]["challenge"])
    return client.post(
        "/api/register/complete",
        json={
            "username": username,
            "credential": registration_credential(credential_id, challenge).model_dump(),
            "challengeToken": body["challengeToken"],
        },
    )


def login(client: TestClient, credential_id: str = ALICE_KEY):
    begin = client.post("/api/authenticate/begin").json()
    challenge = base64url_to_bytes(begin["publicKey"]["challenge"])
    return client.post(
        "/api/authenticate/complete",
        json={
            "credential": authentication_credential(credential_id, challenge).model_dump(),
            "challengeToken": begin["challengeToken"],
        },
    )


def test_health(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_health_reports_unreachable_store(client: TestClient, kv, monkeypatch):
    monkeypatch.setattr(kv, "ping", AsyncMock(side_effect=StorageUnavailable()))

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["detail"]["kind"] == "StorageUnavailable"
    assert response.json()["detail"]["action"] == "retry"


class TestRegistration:
    def test_register_sets_cookie_and_token(self, client: TestClient):
        response = register(client)

        assert response.status_code == 200
        body = response.json()
        assert body["verified"] is True
        assert body["username"] == "alice_01"
        assert body["credentialId"] == ALICE_KEY
        assert body["sessionToken"]
        assert body["expiresAt"].endswith("Z")
        assert client.cookies.get("passkey_session")

    def test_invalid_username_is_422(self, client: TestClient):
        response = client.post("/api/register/begin", json={"username": "al--ice"})

        assert response.status_code == 422
        messages = [item["msg"] for item in response.json()["detail"]]
        assert "Username cannot contain consecutive underscores or hyphens" in messages

    def test_replayed_token_is_400(self, client: TestClient):
        begin = client.post("/api/register/begin", json={"username": "alice_01"}).json()
        payload = {
            "username": "alice_01",
            "credential": registration_credential(
                ALICE_KEY, base64url_to_bytes(begin["publicKey"]["challenge"])
            ).model_dump(),
            "challengeToken": begin["challengeToken"],
        }
        assert client.post("/api/register/complete", json=payload).status_code == 200

        response = client.post("/api/register/complete", json=payload)

        assert response.status_code == 400
        assert response.json()["detail"]["kind"] == "InvalidOrExpiredChallenge"
        assert response.json()["detail"]["action"] == "restart"

    def test_already_registered(self, client: TestClient):
        register(client)
        client.cookies.clear()

        response = register(client)

        assert response.status_code == 200
        body = response.json()
        assert body["alreadyRegistered"] is True
        assert body["message"] == "Passkey already registered. Sign in with it to continue."
        assert body["sessionToken"] is None
        assert body["expiresAt"] is None
        assert "passkey_session" not in response.cookies
        assert not client.get("/api/auth/status").json()["authenticated"]

    def test_second_passkey_is_409(self, client: TestClient):
        register(client)

        response = register(client, credential_id=credential_id_for("alice-other-key"))

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "UsernameTaken"

    def test_credential_as_json_string(self, client: TestClient):
        """Browsers that stringify the credential are accepted too."""
        begin = client.post("/api/register/begin", json={"username": "alice_01"}).json()
        credential = registration_credential(ALICE_KEY, base64url_to_bytes(begin["publicKey"]["challenge"]))

        response = client.post(
            "/api/register/complete",
            json={
                "username": "alice_01",
                "credential": credential.model_dump_json(),
                "challengeToken": begin["challengeToken"],
            },
        )

        assert response.status_code == 200


class TestAuthentication:
    def test_login(self, client: TestClient):
        register(client)
        client.cookies.clear()

        response = login(client)

        assert response.status_code == 200
        assert response.json()["username"] == "alice_01"
        assert client.cookies.get("passkey_session")

    def test_unknown_credential_is_404(self, client: TestClient):
        response = login(client, credential_id_for("never-registered"))

        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "CredentialNotFound"
        assert response.json()["detail"]["action"] == "register"

    def test_storage_outage_is_503(self, client: TestClient, challenges):
        failing = AsyncMock()
        failing.add.side_effect = StorageUnavailable()
        challenges.kv = failing

        response = client.post("/api/authenticate/begin")

        assert response.status_code == 503
        assert response.json()["detail"]["action"] == "retry"


class TestSession:
    def test_status_without_session(self, client: TestClient):
        response = client.get("/api/auth/status")

        assert response.status_code == 200
        assert response.json() == {
            "authenticated": False,
            "userId": None,
            "username": None,
            "sessionId": None,
            "loginTime": None,
            "expiresAt": None,
        }

    def test_status_by_cookie(self, client: TestClient):
        register(client)

        body = client.get("/api/auth/status").json()

        assert body["authenticated"] is True
        assert body["username"] == "alice_01"

    def test_status_by_bearer(self, client: TestClient):
        token = register(client).json()["sessionToken"]
        client.cookies.clear()

        body = client.get("/api/auth/status", headers={"Authorization": f"Bearer {token}"}).json()

        assert body["authenticated"] is True
        assert body["username"] == "alice_01"

    def test_status_after_expiry(self, client: TestClient, clock):
        register(client)

        clock.advance(days=7, seconds=1)

        assert client.get("/api/auth/status").json()["authenticated"] is False

    def test_refresh(self, client: TestClient, clock):
        first = register(client).json()

        clock.advance(days=1)
        response = client.post("/api/auth/refresh")

        assert response.status_code == 200
        assert response.json()["expiresAt"] > first["expiresAt"]

    def test_refresh_without_session_is_401(self, client: TestClient):
        response = client.post("/api/auth/refresh")

        assert response.status_code == 401
        assert response.json()["detail"]["kind"] == "NotAuthenticated"

    def test_logout(self, client: TestClient):
        token = register(client).json()["sessionToken"]

        response = client.post("/api/auth/logout", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json() == {"message": "Logged out successfully", "username": "alice_01"}
        status = client.get("/api/auth/status", headers={"Authorization": f"Bearer {token}"})
        assert status.json()["authenticated"] is False

    def test_logout_is_idempotent(self, client: TestClient):
        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert response.json()["username"] == "Unknown"

    def test_me(self, client: TestClient):
        register(client)

        body = client.get("/api/auth/me").json()

        assert body["user"]["username"] == "alice_01"
        assert body["session"]["expiresAt"]

    def test_me_without_session_is_401(self, client: TestClient):
        assert client.get("/api/auth/me").status_code == 401


class TestAccount:
    def test_check_username(self, client: TestClient):
        assert client.post("/api/check-username", json={"username": "bob_99"}).json() == {
            "available": True,
            "errors": [],
        }

        reserved = client.post("/api/check-username", json={"username": "admin"}).json()
        assert reserved["available"] is False
        assert "This username is reserved and cannot be used" in reserved["errors"]

    def test_list_credentials(self, client: TestClient):
        register(client)

        response = client.get("/api/users/alice_01/credentials")

        assert response.status_code == 200
        assert [item["id"] for item in response.json()["credentials"]] == [ALICE_KEY]

    def test_list_credentials_of_another_user_is_401(self, client: TestClient):
        register(client)

        assert client.get("/api/users/bob_02/credentials").status_code == 401
