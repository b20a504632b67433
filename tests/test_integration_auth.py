"""Integration tests for the HTTP auth surface.

Tests the complete flows including:
- Registration and activation
- Login with legacy fallback
- Token refresh and revocation
- Password reset and change
- Admin account tools
"""

import pytest
from fastapi.testclient import TestClient

from migente_auth import app as app_module
from migente_auth.bootstrap import bootstrap_admin
from migente_auth.service.runtime import get_runtime
from migente_auth.storage.models import TokenPurpose

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _signup(client, email="a@x.com", password=PASSWORD, role="employer"):
    return client.post(
        "/v1/auth/register",
        json={
            "email": email,
            "password": password,
            "profile": {"role": role, "first_name": "Ana", "last_name": "Reyes"},
        },
    )


def _activated(client, email="a@x.com", password=PASSWORD):
    user_id = _signup(client, email, password).json()["data"]["user_id"]
    response = client.post("/v1/auth/activate", json={"email": email, "user_id": user_id})
    assert response.status_code == 200
    return user_id


def _login(client, email="a@x.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _admin_headers(client):
    auth = get_runtime().auth
    bootstrap_admin(auth, "admin@x.com", "Admin-Password-1")
    token = _login(client, "admin@x.com", "Admin-Password-1").json()["data"]["access_token"]
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_then_activate_then_login(self, client):
        response = _signup(client)
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["success"] is True
        user_id = body["data"]["user_id"]

        denied = _login(client)
        assert denied.status_code == 401
        assert denied.json()["error"]["code"] == "unauthorized"

        activated = client.post("/v1/auth/activate", json={"email": "a@x.com", "user_id": user_id})
        assert activated.status_code == 200

        login = _login(client)
        assert login.status_code == 200
        data = login.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["user"] == {"id": user_id, "email": "a@x.com", "role": "employer"}

    def test_duplicate_register_conflicts(self, client):
        _signup(client)
        response = _signup(client)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_validation_errors_do_not_echo_input(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "not-an-email",
                "password": "short",
                "profile": {"first_name": "A", "last_name": "B"},
            },
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert "short" not in response.text
        assert all("input" not in detail for detail in body["error"]["details"])

    def test_activate_mismatch_fails(self, client):
        user_id = _signup(client).json()["data"]["user_id"]
        response = client.post("/v1/auth/activate", json={"email": "b@x.com", "user_id": user_id})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "activation failed"

    def test_confirm_activation_token(self, client):
        _signup(client)
        store = get_runtime().store
        token = store.list_ephemeral_tokens("a@x.com", TokenPurpose.ACTIVATION)[0].token
        response = client.post("/v1/auth/activate/confirm", json={"email": "a@x.com", "token": token})
        assert response.status_code == 200
        again = client.post("/v1/auth/activate/confirm", json={"email": "a@x.com", "token": token})
        assert again.status_code == 401

    def test_resend_activation(self, client):
        _signup(client)
        response = client.post("/v1/auth/activation/resend", json={"email": "a@x.com"})
        assert response.status_code == 200
        store = get_runtime().store
        assert len(store.list_ephemeral_tokens("a@x.com", TokenPurpose.ACTIVATION)) == 2

        missing = client.post("/v1/auth/activation/resend", json={"email": "nobody@x.com"})
        assert missing.status_code == 404

    def test_email_available(self, client):
        assert client.get("/v1/auth/email-available", params={"email": "a@x.com"}).json()["data"][
            "available"
        ]
        _signup(client)
        data = client.get("/v1/auth/email-available", params={"email": "A@x.com"}).json()["data"]
        assert data == {"email": "a@x.com", "available": False}


class TestSessions:
    def test_refresh_rotates_and_rejects_replay(self, client):
        _activated(client)
        first = _login(client).json()["data"]
        second = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert second.status_code == 200
        assert second.json()["data"]["refresh_token"] != first["refresh_token"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "unauthorized"

    def test_revoke_is_idempotent_and_blocks_refresh(self, client):
        _activated(client)
        token = _login(client).json()["data"]["refresh_token"]
        for _ in range(2):
            response = client.post("/v1/auth/revoke", json={"refresh_token": token})
            assert response.status_code == 200
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": token})
        assert refresh.status_code == 401

    def test_me_requires_bearer(self, client):
        user_id = _activated(client)
        assert client.get("/v1/me").status_code == 401
        token = _login(client).json()["data"]["access_token"]
        response = client.get("/v1/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == user_id
        assert data["active"] is True
        assert data["last_access_at"] is not None

    def test_legacy_only_login_materializes(self, client):
        runtime = get_runtime()
        runtime.store.create_legacy_credential(
            "legacy-42",
            "old@x.com",
            runtime.auth.passwords.hash_legacy(PASSWORD),
            active=True,
        )
        response = _login(client, "old@x.com")
        assert response.status_code == 200
        assert response.json()["data"]["user"]["id"] == "legacy-42"
        assert runtime.store.get_user("legacy-42") is not None

    def test_correlation_and_security_headers(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.json()["checks"]["database"]["type"] == "memory"


class TestPasswords:
    def test_forgot_then_reset(self, client):
        _activated(client)
        response = client.post("/v1/auth/password/forgot", json={"email": "a@x.com"})
        assert response.status_code == 202
        assert response.json()["data"] == {"status": "accepted"}

        rows = get_runtime().store.list_ephemeral_tokens("a@x.com", TokenPurpose.PASSWORD_RESET)
        assert len(rows) == 1 and rows[0].used_at is None
        reset = client.post(
            "/v1/auth/password/reset",
            json={"email": "a@x.com", "token": rows[0].token, "new_password": "BrandNewPass456!"},
        )
        assert reset.status_code == 200

        assert _login(client).status_code == 401
        assert _login(client, password="BrandNewPass456!").status_code == 200

        reused = client.post(
            "/v1/auth/password/reset",
            json={"email": "a@x.com", "token": rows[0].token, "new_password": "AnotherPass789!"},
        )
        assert reused.status_code == 401

    def test_forgot_unknown_email_is_accepted(self, client):
        response = client.post("/v1/auth/password/forgot", json={"email": "nobody@x.com"})
        assert response.status_code == 202

    def test_change_password(self, client):
        _activated(client)
        token = _login(client).json()["data"]["access_token"]
        headers = {"Authorization": f"Bearer {token}"}
        same = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": PASSWORD},
            headers=headers,
        )
        assert same.status_code == 400
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "BrandNewPass456!"},
            headers=headers,
        )
        assert response.status_code == 200
        assert _login(client, password="BrandNewPass456!").status_code == 200


class TestAdmin:
    def test_admin_endpoints_require_admin(self, client):
        _activated(client)
        token = _login(client).json()["data"]["access_token"]
        response = client.get("/v1/admin/users/anything", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_account_lifecycle(self, client):
        headers = _admin_headers(client)
        user_id = _activated(client)

        account = client.get(f"/v1/admin/users/{user_id}", headers=headers).json()["data"]
        assert account["email"] == "a@x.com"
        credential_id = account["credential_id"]

        set_pw = client.put(
            f"/v1/admin/users/{user_id}/password",
            json={"new_password": "AdminChosen123!"},
            headers=headers,
        )
        assert set_pw.status_code == 200
        assert _login(client, password="AdminChosen123!").status_code == 200

        updated = client.put(
            f"/v1/admin/credentials/{credential_id}",
            json={"email": "moved@x.com"},
            headers=headers,
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["email"] == "moved@x.com"
        assert _login(client, "moved@x.com", "AdminChosen123!").status_code == 200

        deactivated = client.post(f"/v1/admin/users/{user_id}/deactivate", headers=headers)
        assert deactivated.status_code == 200
        assert _login(client, "moved@x.com", "AdminChosen123!").status_code == 401

        purged = client.delete(f"/v1/admin/users/{user_id}", headers=headers)
        assert purged.status_code == 200
        missing = client.get(f"/v1/admin/users/{user_id}", headers=headers)
        assert missing.status_code == 404

    def test_credential_update_requires_a_field(self, client):
        headers = _admin_headers(client)
        response = client.put("/v1/admin/credentials/1", json={}, headers=headers)
        assert response.status_code == 400

    def test_admin_cannot_purge_self(self, client):
        headers = _admin_headers(client)
        admin_id = get_runtime().store.get_user_by_email("admin@x.com").id
        response = client.delete(f"/v1/admin/users/{admin_id}", headers=headers)
        assert response.status_code == 400

    def test_deactivated_user_cannot_self_activate(self, client):
        headers = _admin_headers(client)
        user_id = _activated(client)
        client.post(f"/v1/admin/users/{user_id}/deactivate", headers=headers)

        activate = client.post("/v1/auth/activate", json={"email": "a@x.com", "user_id": user_id})
        assert activate.status_code == 400
        resend = client.post("/v1/auth/activation/resend", json={"email": "a@x.com"})
        assert resend.status_code == 404
        assert _login(client).status_code == 401
        account = client.get(f"/v1/admin/users/{user_id}", headers=headers).json()["data"]
        assert account["locked_out"] is True and account["active"] is False

        restored = client.post(f"/v1/admin/users/{user_id}/reactivate", headers=headers)
        assert restored.status_code == 200
        assert _login(client).status_code == 200
