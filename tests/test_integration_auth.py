"""Integration tests for the HTTP auth flow.

Tests the complete flow including:
- Registration
- Login with password, with and without a second factor
- MFA setup, confirmation and disabling
- Role administration
- Logout
- Bearer-token mode
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from bmsauth import app as app_module
from bmsauth.service.mfa import totp_at
from bmsauth.service.runtime import get_runtime, reset_runtime_for_tests

ALICE = {"identifier": "alice@example.com", "password": "CorrectHorse1!"}
ADMIN = {"identifier": "admin@bms.com", "password": "Admin123!Secure"}


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _session_header(response) -> dict:
    cookie = response.cookies.get("session_id")
    assert cookie
    return {"session_id": cookie}


def _login(client, creds) -> dict:
    response = client.post("/v1/auth/login", json=creds)
    assert response.status_code == 200, response.text
    return response


def _make_admin(client, *, enroll: bool = True) -> tuple[dict, str | None]:
    """Register an admin through the API, promote it in the store, optionally enroll MFA."""
    client.post("/v1/auth/register", json=ADMIN)
    runtime = get_runtime()
    principal = runtime.store.find_by_identifier(ADMIN["identifier"])
    runtime.store.update_role(principal.id, "system_admin")
    headers = _session_header(_login(client, ADMIN))
    if not enroll:
        return headers, None
    setup = client.post("/v1/auth/mfa/setup", headers=headers).json()["data"]
    confirm = client.post(
        "/v1/auth/mfa/confirm",
        json={"secret": setup["secret"], "code": totp_at(setup["secret"], time.time())},
        headers=headers,
    )
    assert confirm.status_code == 200, confirm.text
    return headers, setup["secret"]


class TestRegistration:
    def test_register_creates_lowest_role_principal(self, client):
        response = client.post("/v1/auth/register", json=ALICE)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["identifier"] == "alice@example.com"
        assert body["data"]["role"] == "customer"
        assert body["data"]["mfa_enabled"] is False
        assert "password_hash" not in body["data"]
        assert "session_id" not in response.cookies

    def test_register_rejects_duplicate(self, client):
        client.post("/v1/auth/register", json=ALICE)

        response = client.post(
            "/v1/auth/register",
            json={**ALICE, "identifier": "ALICE@example.com"},
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_rejects_short_password(self, client):
        response = client.post(
            "/v1/auth/register", json={"identifier": "bob@example.com", "password": "short"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_register_cannot_choose_role(self, client):
        response = client.post("/v1/auth/register", json={**ALICE, "role": "system_admin"})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_register_validates_identifier(self, client):
        response = client.post(
            "/v1/auth/register", json={"identifier": "not an email@", "password": "CorrectHorse1!"}
        )

        assert response.status_code == 422


class TestLogin:
    def test_alice_logs_in_and_sees_herself(self, client):
        client.post("/v1/auth/register", json=ALICE)

        response = _login(client, ALICE)
        data = response.json()["data"]
        assert data["status"] == "authenticated"
        assert data["transport"] == "session"
        assert data["access_token"] is None
        set_cookie = response.headers["set-cookie"].lower()
        assert "session_id=" in set_cookie
        assert "httponly" in set_cookie

        me = client.get("/v1/auth/me", headers=_session_header(response))
        assert me.status_code == 200
        assert me.json()["data"]["id"] == data["user_id"]
        assert me.json()["data"]["role"] == "customer"

    def test_fullwidth_identifier_logs_in_with_same_input(self, client):
        fullwidth = "ａｌｉｃｅ@example.com"
        registered = client.post(
            "/v1/auth/register", json={"identifier": fullwidth, "password": ALICE["password"]}
        )
        assert registered.json()["data"]["identifier"] == "alice@example.com"

        response = client.post(
            "/v1/auth/login", json={"identifier": fullwidth, "password": ALICE["password"]}
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "authenticated"

    def test_cookie_alone_authenticates(self, client):
        client.post("/v1/auth/register", json=ALICE)
        _login(client, ALICE)

        assert client.get("/v1/auth/me").status_code == 200

    def test_invalid_credentials_are_vague(self, client):
        client.post("/v1/auth/register", json=ALICE)

        wrong_password = client.post("/v1/auth/login", json={**ALICE, "password": "nope"})
        unknown_user = client.post(
            "/v1/auth/login", json={"identifier": "ghost@example.com", "password": "nope"}
        )

        for response in (wrong_password, unknown_user):
            assert response.status_code == 401
            assert response.json()["error"]["code"] == "invalid_credentials"
        assert wrong_password.json()["error"]["message"] == unknown_user.json()["error"]["message"]
        assert get_runtime().store.count_sessions() == 0

    def test_throttled_after_repeated_failures(self, client):
        client.post("/v1/auth/register", json=ALICE)
        for _ in range(5):
            client.post("/v1/auth/login", json={**ALICE, "password": "nope"})

        response = client.post("/v1/auth/login", json=ALICE)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0

    def test_me_requires_authentication(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_logout_destroys_session(self, client):
        client.post("/v1/auth/register", json=ALICE)
        headers = _session_header(_login(client, ALICE))

        response = client.post("/v1/auth/logout", headers=headers)

        assert response.status_code == 200
        assert client.get("/v1/auth/me", headers=headers).status_code == 401
        assert get_runtime().store.count_sessions() == 0


class TestMfaFlow:
    def test_admin_must_pass_second_factor(self, client):
        _, secret = _make_admin(client)
        fresh = TestClient(app_module.app)

        response = fresh.post("/v1/auth/login", json=ADMIN)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "mfa_required"
        assert data["mfa_ticket"]
        assert "session_id" not in response.cookies

        good = totp_at(secret, time.time())
        wrong = f"{(int(good) + 3) % 1_000_000:06d}"
        for _ in range(3):
            bad = fresh.post(
                "/v1/auth/login/mfa", json={"mfa_ticket": data["mfa_ticket"], "code": wrong}
            )
            assert bad.status_code == 401
            assert bad.json()["error"]["code"] == "invalid_mfa_code"

        ok = fresh.post("/v1/auth/login/mfa", json={"mfa_ticket": data["mfa_ticket"], "code": good})
        assert ok.status_code == 200
        assert ok.json()["data"]["role"] == "system_admin"
        assert fresh.get("/v1/auth/me", headers=_session_header(ok)).status_code == 200

    def test_mfa_without_ticket(self, client):
        response = client.post("/v1/auth/login/mfa", json={"mfa_ticket": "nothing", "code": "123456"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "no_pending_mfa"

    def test_inline_code(self, client):
        _, secret = _make_admin(client)

        response = client.post(
            "/v1/auth/login", json={**ADMIN, "mfa_code": totp_at(secret, time.time())}
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "authenticated"

    def test_setup_does_not_enable_until_confirmed(self, client):
        client.post("/v1/auth/register", json=ALICE)
        headers = _session_header(_login(client, ALICE))

        setup = client.post("/v1/auth/mfa/setup", headers=headers)
        assert setup.status_code == 200
        data = setup.json()["data"]
        assert data["otpauth_uri"].startswith("otpauth://totp/BMS:")
        assert data["qr_code"].startswith("data:image/svg+xml;base64,")
        principal = get_runtime().store.find_by_identifier("alice@example.com")
        assert principal.mfa_enabled is False

        bad = client.post(
            "/v1/auth/mfa/confirm", json={"secret": data["secret"], "code": "abcdef"}, headers=headers
        )
        assert bad.status_code == 401
        assert bad.json()["error"]["code"] == "invalid_mfa_code"

    def test_disable_mfa(self, client):
        headers, secret = _make_admin(client)

        response = client.post(
            "/v1/auth/mfa/disable",
            json={"code": totp_at(secret, time.time())},
            headers=headers,
        )

        assert response.status_code == 200
        assert get_runtime().store.find_by_identifier(ADMIN["identifier"]).mfa_enabled is False

    def test_mfa_handlers_run_off_the_event_loop(self, client, monkeypatch):
        offloaded = []
        original = asyncio.to_thread

        async def recording_to_thread(func, /, *args, **kwargs):
            offloaded.append(getattr(func, "__name__", repr(func)))
            return await original(func, *args, **kwargs)

        monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)
        _, secret = _make_admin(client)
        ticket = TestClient(app_module.app).post("/v1/auth/login", json=ADMIN).json()["data"]
        client.post(
            "/v1/auth/login/mfa",
            json={"mfa_ticket": ticket["mfa_ticket"], "code": totp_at(secret, time.time())},
        )

        assert {"login", "enroll_mfa", "confirm_mfa", "verify_mfa"} <= set(offloaded)


class TestAdministration:
    def test_admin_lists_and_updates_roles(self, client):
        headers, _ = _make_admin(client, enroll=False)
        alice_id = client.post("/v1/auth/register", json=ALICE).json()["data"]["id"]

        listing = client.get("/v1/users", headers=headers)
        assert listing.status_code == 200
        identifiers = {item["identifier"] for item in listing.json()["data"]["items"]}
        assert identifiers == {"admin@bms.com", "alice@example.com"}

        updated = client.put(
            f"/v1/users/{alice_id}/role", json={"role": "sales_clerk"}, headers=headers
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["role"] == "sales_clerk"

    def test_non_admin_forbidden_and_anonymous_unauthorized(self, client):
        client.post("/v1/auth/register", json=ALICE)
        headers = _session_header(_login(client, ALICE))

        forbidden = client.get("/v1/users", headers=headers)
        assert forbidden.status_code == 403
        assert forbidden.json()["error"]["code"] == "forbidden"

        anonymous = TestClient(app_module.app).get("/v1/users")
        assert anonymous.status_code == 401

    def test_unknown_role_and_user(self, client):
        headers, _ = _make_admin(client, enroll=False)

        missing = client.put("/v1/users/missing/role", json={"role": "customer"}, headers=headers)
        assert missing.status_code == 404
        principal = get_runtime().store.find_by_identifier(ADMIN["identifier"])
        bogus = client.put(
            f"/v1/users/{principal.id}/role", json={"role": "overlord"}, headers=headers
        )
        assert bogus.status_code == 400


class TestBearerMode:
    @pytest.fixture(autouse=True)
    def bearer_runtime(self, monkeypatch):
        monkeypatch.setenv("AUTH_TRANSPORT", "bearer")
        reset_runtime_for_tests()

    def test_login_returns_token(self, client):
        client.post("/v1/auth/register", json=ALICE)

        response = _login(client, ALICE)
        data = response.json()["data"]
        assert data["transport"] == "bearer"
        assert data["token_type"] == "bearer"
        assert "session_id" not in response.cookies

        auth = {"Authorization": f"Bearer {data['access_token']}"}
        me = client.get("/v1/auth/me", headers=auth)
        assert me.status_code == 200
        assert me.json()["data"]["transport"] == "bearer"
        assert get_runtime().store.count_sessions() == 0

    def test_bad_tokens_are_unauthorized(self, client):
        for header in ("Bearer not.a.token", "Basic abc", "Bearer"):
            response = client.get("/v1/auth/me", headers={"Authorization": header})
            assert response.status_code == 401

    def test_session_header_is_ignored(self, client):
        response = client.get("/v1/auth/me", headers={"session_id": "anything"})

        assert response.status_code == 401


class TestSurface:
    def test_health(self, client):
        response = client.get("/v1/health")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "healthy"

    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_internal_error_is_generic(self, client, monkeypatch):
        runtime = get_runtime()

        def _boom(identifier):
            raise RuntimeError("disk full at /var/lib/bmsauth/state.json")

        monkeypatch.setattr(runtime.store, "find_by_identifier", _boom)

        response = client.post("/v1/auth/login", json=ALICE)

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "state.json" not in response.text
