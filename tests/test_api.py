"""HTTP-level tests: envelopes, cookies and route wiring."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from idbadge.app import app
from idbadge.service.badges import SESSION_COOKIE, SIGNATURE_COOKIE, TRUSTED_DEVICE_COOKIE

PASSWORD = "correct horse battery"


@pytest.fixture
def client(runtime):
    with TestClient(app) as test_client:
        yield test_client


def _register_and_verify(client, emails, email="api@example.com"):
    response = client.post("/v2/user/register", json={"email": email, "password": PASSWORD})
    assert response.status_code == 201
    token = emails.last_token(email)
    return client.get("/v2/user/register/verifyEmail", params={"token": token}, follow_redirects=False)


def _set_cookie_headers(response):
    return {header.split("=", 1)[0]: header for header in response.headers.get_list("set-cookie")}


class TestEnvelope:
    def test_health(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_unauthenticated_request(self, client):
        response = client.get("/v2/user")
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"

    def test_request_body_validation(self, client):
        response = client.post("/v2/login", json={"email": "a@example.com", "password": "x", "extra": True})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_service_validation(self, client):
        response = client.post("/v2/user/register", json={"email": "a@example.com", "password": "12345678"})
        assert response.status_code == 422
        assert response.json()["error"]["message"] == "Password cannot be all digits."

    def test_missing_token_query(self, client):
        assert client.get("/v2/user/register/acceptInvitation").status_code == 422
        assert client.get("/v2/user/register/verifyEmail").status_code == 422

    def test_unknown_token_is_not_found(self, client):
        response = client.get("/v2/user/register/verifyEmail", params={"token": "0" * 32})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_rate_limited(self, client):
        headers = {"X-Forwarded-For": "198.51.100.20"}
        for _ in range(20):
            assert client.post("/v2/user/forgotPassword", json={"email": "x@example.com"}, headers=headers).status_code == 200
        response = client.post("/v2/user/forgotPassword", json={"email": "x@example.com"}, headers=headers)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"


class TestSessionCookies:
    def test_verify_email_sets_badge_cookies(self, client, emails):
        response = _register_and_verify(client, emails)
        assert response.status_code == 302
        assert response.headers["location"] == "/app/#/"
        cookies = _set_cookie_headers(response)
        assert "HttpOnly" not in cookies[SESSION_COOKIE]
        assert "HttpOnly" in cookies[SIGNATURE_COOKIE]

        user = client.get("/v2/user")
        assert user.status_code == 200
        assert user.json()["data"]["email"] == "api@example.com"
        assert user.json()["data"]["emailVerified"] is True

    def test_login_and_logout(self, client, emails):
        _register_and_verify(client, emails)
        client.cookies.clear()

        bad = client.post("/v2/login", json={"email": "api@example.com", "password": "wrong passphrase"})
        assert bad.status_code == 401

        response = client.post("/v2/login", json={"email": "api@example.com", "password": PASSWORD})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["badge"]["kind"] == "full"
        assert data["mfaRequired"] is False
        assert client.get("/v2/account").status_code == 200

        client.post("/v2/user/logout")
        client.cookies.clear()
        assert client.get("/v2/user").status_code == 401

    def test_bearer_header(self, client, emails):
        _register_and_verify(client, emails)
        payload = client.cookies.get(SESSION_COOKIE)
        signature = client.cookies.get(SIGNATURE_COOKIE)
        client.cookies.clear()
        response = client.get("/v2/user", headers={"Authorization": f"Bearer {payload}.{signature}"})
        assert response.status_code == 200

    def test_tampered_signature_rejected(self, client, emails):
        _register_and_verify(client, emails)
        payload = client.cookies.get(SESSION_COOKIE)
        client.cookies.clear()
        response = client.get("/v2/user", headers={"Authorization": f"Bearer {payload}.forged"})
        assert response.status_code == 401


class TestMfaOverHttp:
    def _enable_totp(self, client, runtime, clock):
        secret = client.post("/v2/user/mfa/totp").json()["data"]["secret"]
        now = clock()
        for offset, complete in ((-15, False), (15, True)):
            code = runtime.credentials.generate_totp(secret, (now + timedelta(seconds=offset)).timestamp())
            response = client.post("/v2/user/mfa/complete", json={"code": code})
            assert response.json()["data"] == {"complete": complete}
        clock.advance(minutes=5)
        return secret

    def test_partial_badge_only_reaches_mfa_completion(self, client, emails, runtime, clock):
        _register_and_verify(client, emails)
        secret = self._enable_totp(client, runtime, clock)
        assert client.get("/v2/user/mfa").json()["data"] == {"variant": "totp"}
        client.cookies.clear()

        response = client.post("/v2/login", json={"email": "api@example.com", "password": PASSWORD})
        assert response.json()["data"]["mfaRequired"] is True
        assert response.json()["data"]["messageCode"] == "MfaAuthRequired"
        assert client.get("/v2/user").status_code == 403
        assert client.get("/v2/account").status_code == 403

        code = runtime.credentials.generate_totp(secret, clock().timestamp())
        response = client.post("/v2/login/mfa", json={"code": code, "trust_this_device": True})
        assert response.status_code == 200
        assert response.json()["data"]["badge"]["kind"] == "full"
        assert TRUSTED_DEVICE_COOKIE in _set_cookie_headers(response)
        assert client.get("/v2/user").status_code == 200

        # The trusted device cookie skips the second factor next time
        response = client.post("/v2/login", json={"email": "api@example.com", "password": PASSWORD})
        assert response.json()["data"]["mfaRequired"] is False

    def test_backup_codes_and_disable(self, client, emails, runtime, clock):
        _register_and_verify(client, emails)
        self._enable_totp(client, runtime, clock)
        codes = client.get("/v2/user/mfa/backupCodes").json()["data"]
        assert len(codes) == 10
        assert client.delete("/v2/user/mfa").status_code == 200
        assert client.get("/v2/user/mfa").status_code == 404

    def test_sms_device_must_be_e164(self, client, emails):
        _register_and_verify(client, emails)
        response = client.post("/v2/user/mfa/sms", json={"device": "555-1234"})
        assert response.status_code == 422


class TestAccountsOverHttp:
    def test_update_and_switch(self, client, emails):
        _register_and_verify(client, emails)
        response = client.patch("/v2/account", json={"name": "Renamed", "max_password_age": 30})
        assert response.status_code == 200
        assert response.json()["data"]["maxPasswordAge"] == 30
        response = client.patch("/v2/account", json={"max_password_age": None})
        assert response.json()["data"]["maxPasswordAge"] is None
        assert response.json()["data"]["name"] == "Renamed"
        assert client.patch("/v2/account", json={"max_inactive_days": 3}).status_code == 422

        created = client.post("/v2/account", json={"name": "Second"})
        assert created.status_code == 201
        account_id = created.json()["data"]["id"]
        switched = client.post("/v2/account/switch", json={"account_id": account_id, "mode": "live"})
        assert switched.status_code == 200
        assert switched.json()["data"]["badge"]["accountId"] == account_id
        assert client.get("/v2/account").json()["data"]["id"] == account_id

    def test_invitation_routes(self, client, emails):
        _register_and_verify(client, emails)
        both = client.post(
            "/v2/account/invitations",
            json={"email": "new@example.com", "user_privilege_type": "FULL_ACCESS", "roles": ["reader"]},
        )
        assert both.status_code == 422

        created = client.post(
            "/v2/account/invitations", json={"email": "new@example.com", "user_privilege_type": "FULL_ACCESS"}
        )
        assert created.status_code == 201
        user_id = created.json()["data"]["userId"]
        assert [i["userId"] for i in client.get("/v2/account/invitations").json()["data"]] == [user_id]
        assert client.get(f"/v2/account/invitations/{user_id}").status_code == 200

        assert client.delete(f"/v2/account/invitations/{user_id}").status_code == 200
        missing = client.get(f"/v2/account/invitations/{user_id}")
        assert missing.status_code == 404
        assert missing.json()["error"]["details"]["messageCode"] == "InvitationNotFound"

    def test_accept_invitation_redirects_to_password_setup(self, client, emails):
        _register_and_verify(client, emails)
        client.post("/v2/account/invitations", json={"email": "join@example.com", "user_privilege_type": "LIMITED_ACCESS"})
        client.cookies.clear()
        response = client.get(
            "/v2/user/register/acceptInvitation",
            params={"token": emails.last_token("join@example.com")},
            follow_redirects=False,
        )
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("/app/#/resetPassword?token=")

        done = client.post(
            "/v2/user/forgotPassword/complete",
            json={"token": location.split("token=", 1)[1], "password": "joining passphrase"},
        )
        assert done.status_code == 200
        assert done.json()["data"]["badge"]["roles"] == ["reader"]
        assert client.get("/v2/account/users").status_code == 403

    def test_change_password(self, client, emails):
        _register_and_verify(client, emails)
        wrong = client.put(
            "/v2/user/changePassword", json={"old_password": "nope nope", "new_password": "a brand new passphrase"}
        )
        assert wrong.status_code == 409
        ok = client.put(
            "/v2/user/changePassword", json={"old_password": PASSWORD, "new_password": "a brand new passphrase"}
        )
        assert ok.status_code == 200
