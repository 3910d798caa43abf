"""HTTP-level tests for the /v1 routes, envelopes and middleware."""

import time
from unittest.mock import MagicMock

import pyotp
import pytest
from fastapi.testclient import TestClient

from pimify_identity.app import app
from pimify_identity.service.result import Result
from pimify_identity.service.runtime import get_runtime

PASSWORD = "Correct-Horse-9"


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def client(runtime):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def api_admin(runtime):
    return runtime.credentials.create("root@example.com", PASSWORD, role="ADMIN").unwrap()


@pytest.fixture
def api_editor(runtime):
    return runtime.credentials.create("writer@example.com", PASSWORD, role="EDITOR").unwrap()


def _login(client, email, password=PASSWORD):
    response = client.post("/v1/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _bearer(client, email):
    return {"Authorization": f"Bearer {_login(client, email)['access_token']}"}


class TestAuthRoutes:
    def test_login_envelope_and_headers(self, client, api_admin):
        response = client.post(
            "/v1/auth/login",
            json={"email": "ROOT@example.com", "password": PASSWORD},
            headers={"X-Request-ID": "req-123"},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["request_id"] == "req-123"
        assert body["data"]["token_type"] == "bearer"
        assert body["data"]["user"]["email"] == "root@example.com"
        assert body["data"]["two_factor_setup_required"] is True
        assert "password" not in str(body["data"]["user"])
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_generated_request_id(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Request-ID"]

    def test_bad_password(self, client, api_editor):
        response = client.post(
            "/v1/auth/login", json={"email": api_editor.email, "password": "Wrong-Horse-9"}
        )

        body = response.json()
        assert response.status_code == 401
        assert body["success"] is False
        assert body["error"] == "AUTH_INVALID_CREDENTIALS"
        assert body["details"] == {"remaining_attempts": 4}

    def test_login_rate_limit(self, client, api_editor):
        for _ in range(5):
            client.post("/v1/auth/login", json={"email": "ghost@example.com", "password": "x"})

        response = client.post(
            "/v1/auth/login", json={"email": api_editor.email, "password": PASSWORD}
        )

        assert response.status_code == 429
        assert response.json()["error"] == "RATE_LIMIT_EXCEEDED"
        assert int(response.headers["Retry-After"]) >= 1

    def test_malformed_body(self, client):
        response = client.post("/v1/auth/login", json={"email": "not-an-email", "password": "x"})

        body = response.json()
        assert response.status_code == 422
        assert body["error"] == "VALIDATION_ERROR"
        assert body["details"]["errors"][0]["loc"][-1] == "email"

    def test_me_requires_bearer(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"] == "AUTH_INVALID_TOKEN"

        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401

    def test_me_refresh_and_logout(self, client, api_editor):
        tokens = _login(client, api_editor.email)
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}

        me = client.get("/v1/auth/me", headers=headers).json()["data"]
        assert me["id"] == api_editor.id

        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refreshed.status_code == 200
        reused = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert reused.status_code == 401
        assert reused.json()["error"] == "AUTH_INVALID_REFRESH"

        assert client.post("/v1/auth/logout", headers=headers).status_code == 200
        assert client.get("/v1/auth/me", headers=headers).status_code == 401

    def test_forgot_password_is_uniform_and_throttled(self, client, api_editor):
        known = client.post("/v1/auth/password/forgot", json={"email": api_editor.email})
        unknown = client.post("/v1/auth/password/forgot", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["message"] == unknown.json()["message"]

        client.post("/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        limited = client.post("/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        assert limited.status_code == 429
        assert limited.headers["X-RateLimit-Limit"] == "3"

    def test_reset_with_unknown_token(self, client):
        response = client.post(
            "/v1/auth/password/reset", json={"token": "nope", "new_password": "Fresh-Password-77"}
        )
        assert response.status_code == 401
        assert response.json()["error"] == "AUTH_INVALID_TOKEN"

    def test_two_factor_enrollment(self, client, api_editor):
        headers = _bearer(client, api_editor.email)

        setup = client.post("/v1/auth/2fa/enable", headers=headers).json()["data"]
        code = pyotp.TOTP(setup["secret"]).now()
        verified = client.post("/v1/auth/2fa/verify", json={"code": code}, headers=headers)

        assert verified.status_code == 200
        status = client.get("/v1/auth/2fa/status", headers=headers).json()["data"]
        assert status["enabled"] is True

        again = client.post("/v1/auth/2fa/enable", headers=headers)
        assert again.status_code == 409
        assert again.json()["error"] == "TWO_FACTOR_ALREADY_ENABLED"

        response = client.post(
            "/v1/auth/login", json={"email": api_editor.email, "password": PASSWORD}
        )
        assert response.json()["error"] == "AUTH_REQUIRES_2FA"

    def test_two_factor_mail_only_on_enabling(self, client, runtime, api_editor, monkeypatch):
        mailer = MagicMock(return_value=Result.ok({"delivered": True}))
        monkeypatch.setattr(runtime.email, "send_two_factor_enabled", mailer)
        headers = _bearer(client, api_editor.email)
        totp = pyotp.TOTP(client.post("/v1/auth/2fa/enable", headers=headers).json()["data"]["secret"])

        first = client.post("/v1/auth/2fa/verify", json={"code": totp.now()}, headers=headers)
        second = client.post(
            "/v1/auth/2fa/verify", json={"code": totp.at(time.time(), 1)}, headers=headers
        )

        assert first.json()["data"]["newly_enabled"] is True
        assert second.json()["data"]["newly_enabled"] is False
        mailer.assert_called_once_with(api_editor.email)


class TestInvitationRoutes:
    def test_invite_and_accept(self, client, runtime, api_admin, monkeypatch):
        mailer = MagicMock(return_value=Result.ok({"delivered": True}))
        monkeypatch.setattr(runtime.email, "send_invitation", mailer)
        headers = _bearer(client, api_admin.email)

        created = client.post(
            "/v1/invitations", json={"email": "new@example.com", "role": "REVIEWER"}, headers=headers
        )
        assert created.status_code == 201
        invitation = created.json()["data"]
        assert invitation["status"] == "PENDING"
        assert "token" not in invitation and "token_hash" not in invitation

        token = mailer.call_args.args[1]
        preview = client.post("/v1/invitations/preview", json={"token": token}).json()["data"]
        assert preview["role"] == "REVIEWER"

        accepted = client.post(
            "/v1/invitations/accept",
            json={"token": token, "password": "Welcome-Aboard-42", "name": "New Person"},
        )
        assert accepted.status_code == 200
        assert accepted.json()["data"]["role"] == "REVIEWER"

        reused = client.post(
            "/v1/invitations/accept", json={"token": token, "password": "Welcome-Aboard-42"}
        )
        assert reused.status_code == 409
        assert reused.json()["error"] == "INVITE_ALREADY_USED"

        assert _login(client, "new@example.com", "Welcome-Aboard-42")["user"]["role"] == "REVIEWER"

    def test_duplicate_pending_invitation(self, client, api_admin):
        headers = _bearer(client, api_admin.email)
        client.post("/v1/invitations", json={"email": "dup@example.com"}, headers=headers)

        response = client.post("/v1/invitations", json={"email": "dup@example.com"}, headers=headers)

        assert response.status_code == 409
        assert response.json()["error"] == "INVITE_ALREADY_PENDING"

    def test_cancel_and_list(self, client, api_admin):
        headers = _bearer(client, api_admin.email)
        invitation = client.post(
            "/v1/invitations", json={"email": "c@example.com"}, headers=headers
        ).json()["data"]

        cancelled = client.post(
            f"/v1/invitations/{invitation['id']}/cancel", json={"reason": "typo"}, headers=headers
        )
        assert cancelled.json()["data"]["status"] == "CANCELLED"

        listed = client.get("/v1/invitations", params={"status": "CANCELLED"}, headers=headers)
        assert [i["id"] for i in listed.json()["data"]] == [invitation["id"]]

    def test_editor_cannot_invite_without_grant(self, client, api_admin, api_editor):
        editor_headers = _bearer(client, api_editor.email)

        denied = client.post("/v1/invitations", json={"email": "x@example.com"}, headers=editor_headers)
        assert denied.status_code == 403
        assert denied.json()["error"] == "AUTH_FORBIDDEN"

        granted = client.post(
            "/v1/admin/permissions",
            json={"user_id": api_editor.id, "permission": "users:invite", "reason": "onboarding lead"},
            headers=_bearer(client, api_admin.email),
        )
        assert granted.status_code == 201
        assert granted.json()["details"] == {"refreshed": False}

        allowed = client.post("/v1/invitations", json={"email": "x@example.com"}, headers=editor_headers)
        assert allowed.status_code == 201


class TestAdminRoutes:
    def test_permission_lifecycle(self, client, api_admin, api_editor):
        headers = _bearer(client, api_admin.email)
        grant = client.post(
            "/v1/admin/permissions",
            json={"user_id": api_editor.id, "permission": "reports:view", "reason": "audit"},
            headers=headers,
        ).json()["data"]

        effective = client.get(
            f"/v1/admin/users/{api_editor.id}/permissions/effective", headers=headers
        ).json()["data"]
        assert "reports:view" in effective["permissions"]

        revoked = client.post(
            f"/v1/admin/users/{api_editor.id}/permissions/{grant['id']}/revoke",
            json={"reason": "done"},
            headers=headers,
        )
        assert revoked.status_code == 200
        listed = client.get(f"/v1/admin/users/{api_editor.id}/permissions", headers=headers)
        assert listed.json()["data"] == []

        again = client.post(
            f"/v1/admin/users/{api_editor.id}/permissions/{grant['id']}/revoke",
            json={"reason": "done"},
            headers=headers,
        )
        assert again.status_code == 404
        assert again.json()["error"] == "PERMISSION_NOT_FOUND"

    def test_grant_without_reason_is_rejected(self, client, api_admin, api_editor):
        response = client.post(
            "/v1/admin/permissions",
            json={"user_id": api_editor.id, "permission": "reports:view", "reason": ""},
            headers=_bearer(client, api_admin.email),
        )
        assert response.status_code == 422

    def test_users_of_other_tenants_are_invisible(self, client, runtime, api_admin):
        outsider = runtime.credentials.create("o@example.com", PASSWORD, tenant_id="acme").unwrap()

        response = client.get(
            f"/v1/admin/users/{outsider.id}/permissions", headers=_bearer(client, api_admin.email)
        )
        assert response.status_code == 404

    def test_bulk_status(self, client, runtime, api_admin, api_editor):
        outsider = runtime.credentials.create("o@example.com", PASSWORD, tenant_id="acme").unwrap()

        response = client.post(
            "/v1/admin/users/bulk/status",
            json={"user_ids": [api_editor.id, outsider.id], "action": "suspend", "reason": "review"},
            headers=_bearer(client, api_admin.email),
        )

        summary = response.json()["data"]
        assert summary["updated_count"] == 1
        assert summary["success"] is False
        assert summary["failures"] == [{"user_id": outsider.id, "error": "NOT_FOUND"}]
        assert runtime.credentials.get_by_id(outsider.id).unwrap().status == "ACTIVE"

    def test_bulk_demoting_last_admin(self, client, api_admin):
        response = client.post(
            "/v1/admin/users/bulk/role",
            json={"user_ids": [api_admin.id], "role": "VIEWER"},
            headers=_bearer(client, api_admin.email),
        )
        assert response.json()["data"]["failures"] == [{"user_id": api_admin.id, "error": "LAST_ADMIN"}]

    def test_unlock(self, client, runtime, api_admin, api_editor):
        headers = _bearer(client, api_admin.email)

        not_locked = client.post(f"/v1/admin/users/{api_editor.id}/unlock", headers=headers)
        assert not_locked.status_code == 400

        runtime.credentials.update(api_editor.id, status="LOCKED").unwrap()
        unlocked = client.post(f"/v1/admin/users/{api_editor.id}/unlock", headers=headers)
        assert unlocked.json()["data"]["status"] == "ACTIVE"

    def test_user_sessions_list_and_revoke(self, client, api_admin, api_editor):
        headers = _bearer(client, api_admin.email)
        first = _login(client, api_editor.email)
        second = _login(client, api_editor.email)

        listed = client.get(f"/v1/admin/users/{api_editor.id}/sessions", headers=headers)
        sessions = listed.json()["data"]
        assert {s["id"] for s in sessions} == {first["session_id"], second["session_id"]}
        assert sessions[0]["ip_addr"] == "testclient"

        revoked = client.post(
            f"/v1/admin/users/{api_editor.id}/sessions/{first['session_id']}/revoke",
            headers=headers,
        )
        assert revoked.json()["data"] == {"revoked": 1}
        first_me = client.get(
            "/v1/auth/me", headers={"Authorization": f"Bearer {first['access_token']}"}
        )
        assert first_me.status_code == 401

        everything = client.post(f"/v1/admin/users/{api_editor.id}/sessions/revoke", headers=headers)
        assert everything.json()["data"] == {"revoked": 1}
        second_me = client.get(
            "/v1/auth/me", headers={"Authorization": f"Bearer {second['access_token']}"}
        )
        assert second_me.status_code == 401
        assert client.get(f"/v1/admin/users/{api_editor.id}/sessions", headers=headers).json()["data"] == []

    def test_revoking_a_session_of_another_user(self, client, api_admin, api_editor):
        headers = _bearer(client, api_admin.email)
        admin_session = _login(client, api_admin.email)["session_id"]

        response = client.post(
            f"/v1/admin/users/{api_editor.id}/sessions/{admin_session}/revoke", headers=headers
        )
        assert response.status_code == 404

    def test_session_routes_need_manage_permission(self, client, api_admin, api_editor):
        response = client.get(
            f"/v1/admin/users/{api_admin.id}/sessions", headers=_bearer(client, api_editor.email)
        )
        assert response.status_code == 403

    def test_admin_reset_password(self, client, api_admin, api_editor):
        headers = _bearer(client, api_admin.email)
        editor_headers = _bearer(client, api_editor.email)

        weak = client.post(
            f"/v1/admin/users/{api_editor.id}/reset-password",
            json={"new_password": "short"},
            headers=headers,
        )
        assert weak.status_code == 400

        reset = client.post(
            f"/v1/admin/users/{api_editor.id}/reset-password",
            json={"new_password": "Fresh-Password-77"},
            headers=headers,
        )
        assert reset.json()["data"] == {"user_id": api_editor.id}
        assert client.get("/v1/auth/me", headers=editor_headers).status_code == 401
        _login(client, api_editor.email, "Fresh-Password-77")

    def test_user_activity(self, client, api_admin, api_editor):
        headers = _bearer(client, api_admin.email)
        client.post(
            f"/v1/admin/users/{api_editor.id}/reset-password",
            json={"new_password": "Fresh-Password-77"},
            headers=headers,
        )

        events = client.get(f"/v1/admin/users/{api_editor.id}/activity", headers=headers).json()["data"]
        assert events[0]["action"] == "PASSWORD_RESET_COMPLETED"
        assert events[0]["actor_id"] == api_admin.id

        filtered = client.get(
            f"/v1/admin/users/{api_editor.id}/activity",
            params={"action": "LOGIN"},
            headers=headers,
        ).json()["data"]
        assert filtered == []

        bad = client.get(
            f"/v1/admin/users/{api_editor.id}/activity", params={"action": "NOPE"}, headers=headers
        )
        assert bad.status_code == 422


class TestDirectoryRoutes:
    def test_ldap_not_configured(self, client, api_admin):
        headers = _bearer(client, api_admin.email)

        response = client.get("/v1/admin/directory/ldap", headers=headers)
        assert response.status_code == 503
        assert response.json()["error"] == "NOT_CONFIGURED"

        sync = client.post("/v1/admin/directory/ldap/sync", headers=headers)
        assert sync.status_code == 503

    def test_configure_ldap_masks_secret(self, client, api_admin):
        headers = _bearer(client, api_admin.email)
        body = {
            "url": "ldaps://ldap.example.com",
            "bind_dn": "cn=svc,dc=example,dc=com",
            "bind_password": "svc-secret",
            "base_dn": "dc=example,dc=com",
        }

        saved = client.put("/v1/admin/directory/ldap", json=body, headers=headers)
        assert saved.status_code == 200
        assert saved.json()["data"]["bind_password"] == "********"

        status = client.get("/v1/admin/directory/ldap/status", headers=headers).json()["data"]
        assert status == {"in_progress": False, "logs": []}

    def test_directory_routes_need_admin(self, client, api_editor):
        response = client.get("/v1/admin/directory/ldap", headers=_bearer(client, api_editor.email))
        assert response.status_code == 403

    def test_sso_configure_and_url(self, client, api_admin):
        headers = _bearer(client, api_admin.email)
        client.put(
            "/v1/admin/directory/sso/google",
            json={
                "client_id": "cid",
                "client_secret": "secret",
                "redirect_uri": "https://pim.example.com/sso/callback",
            },
            headers=headers,
        )

        url = client.get("/v1/auth/sso/google/url", params={"state": "abc"}).json()["data"]
        assert url["authorization_url"].startswith("https://accounts.google.com/")
        assert url["state"] == "abc"

        providers = client.get("/v1/admin/directory/sso", headers=headers).json()["data"]
        assert providers[0]["client_secret"] == "********"


def test_unhandled_exception_uses_envelope(runtime, api_editor, monkeypatch):
    client = TestClient(app, raise_server_exceptions=False)
    headers = _bearer(client, api_editor.email)

    def boom(user_id):
        raise RuntimeError("database exploded at /var/lib/secret")

    monkeypatch.setattr(runtime.two_factor, "get_status", boom)
    response = client.get("/v1/auth/2fa/status", headers=headers)

    body = response.json()
    assert response.status_code == 500
    assert body["error"] == "INTERNAL_ERROR"
    assert body["message"] == "internal server error"
    assert "exploded" not in response.text


def test_healthz(client):
    body = client.get("/healthz").json()
    assert body["status"] == "healthy"
    assert body["checks"]["redis"] == {"status": "not_configured"}
