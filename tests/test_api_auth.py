"""Integration tests for api/routes/v1/auth.py through the FastAPI TestClient.

Each test builds an isolated app over a named shared-memory SQLite database
(see conftest.make_client). OAuth provider HTTP calls go to a MagicMock.

Covers:
- CSRF: token endpoint sets a readable cookie; POSTs without the echo get 403;
  Bearer POSTs without credential cookies are exempt, with them they are checked
- database strategy: register, login, session, logout, cookie flags, no-store
- jwt strategy: login returns a token pair, refresh rotates, replay revokes
  the family and clears cookies
- error envelope: credential_invalid, validation_error, duplicate email
- OAuth: providers list, start redirect + state cookie, callback sign-in,
  forged state rejected before any provider call, provider error param
- password reset and email verification endpoints
- magic links: request (always 202, CSRF), verify sets credential cookies and
  redirects, links are single use, disabled feature is 404
- rate limits: enforced from each app's own settings with separate counters
"""

from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

from sqlalchemy import text

from auth.models import OAuthProfile, OAuthTokens
from auth.providers import ProviderClient, github
from conftest import FakeClock, csrf_headers, make_client

PASSWORD = "correct-horse-battery"


def _register(client, email="alice@example.com", password=PASSWORD):
    return client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": password, "name": "Alice"},
        headers=csrf_headers(client),
    )


def _login(client, email="alice@example.com", password=PASSWORD):
    return client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password},
        headers=csrf_headers(client),
    )


def _set_cookies(resp):
    return resp.headers.get_list("set-cookie")


def _count(runtime, sql, **params):
    with runtime.store.engine.connect() as conn:
        return conn.execute(text(sql), params).scalar_one()


def _link_while_signed_in(client, runtime):
    """Register, then run the GitHub handshake with the credential cookies still set."""
    user_id = _register(client).json()["user"]["id"]
    start = client.get("/api/v1/auth/oauth/github/start", follow_redirects=False)
    state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]
    done = client.get(f"/api/v1/auth/oauth/github/callback?code=abc&state={state}", follow_redirects=False)
    assert done.status_code == 302
    cookies = _set_cookies(done)
    assert any(c.startswith("keyward_oauth=;") for c in cookies)
    assert not any(c.startswith(("keyward_session=", "keyward_access=", "keyward_refresh=")) for c in cookies)
    assert runtime.store.get_account_by_provider("github", "4242").user_id == user_id
    return user_id


class TestCsrf:
    def test_token_endpoint(self):
        with make_client("csrf_token") as (client, _runtime):
            resp = client.get("/api/v1/auth/csrf")
            assert resp.status_code == 200
            token = resp.json()["csrf_token"]
            [cookie] = _set_cookies(resp)
            assert cookie.startswith(f"keyward_csrf={token};")
            assert "HttpOnly" not in cookie
            assert resp.headers["cache-control"] == "no-store"

    def test_post_without_header_rejected(self):
        with make_client("csrf_missing") as (client, _runtime):
            client.get("/api/v1/auth/csrf")
            resp = client.post("/api/v1/auth/login", json={"email": "a@example.com", "password": "x"})
            assert resp.status_code == 403
            assert resp.json()["error"]["code"] == "csrf_rejected"

    def test_post_with_wrong_header_rejected(self):
        with make_client("csrf_wrong") as (client, _runtime):
            client.get("/api/v1/auth/csrf")
            resp = client.post(
                "/api/v1/auth/login",
                json={"email": "a@example.com", "password": "x"},
                headers={"X-CSRF-Token": "not-the-cookie"},
            )
            assert resp.status_code == 403

    def test_bearer_request_is_exempt(self):
        with make_client("csrf_bearer") as (client, _runtime):
            token = _register(client).cookies.get("keyward_session")
            client.cookies.clear()
            resp = client.post(
                "/api/v1/auth/email/verify-request",
                headers={"Authorization": f"Bearer {token}"},
            )
            assert resp.status_code == 202

    def test_bearer_with_session_cookie_is_checked(self):
        with make_client("csrf_bearer_cookie") as (client, _runtime):
            token = _register(client).cookies.get("keyward_session")
            resp = client.post(
                "/api/v1/auth/email/verify-request",
                headers={"Authorization": f"Bearer {token}"},
            )
            assert resp.status_code == 403
            assert resp.json()["error"]["code"] == "csrf_rejected"

    def test_invalid_bearer_does_not_cover_refresh_cookie(self):
        with make_client("csrf_bearer_refresh", session_strategy="jwt") as (client, _runtime):
            _register(client)
            assert client.cookies.get("keyward_refresh")
            junk = {"Authorization": "Bearer not.a.jwt"}
            resp = client.post("/api/v1/auth/refresh", headers=junk)
            assert resp.status_code == 403
            assert resp.json()["error"]["code"] == "csrf_rejected"

            resp = client.post("/api/v1/auth/refresh", headers={**junk, **csrf_headers(client)})
            assert resp.status_code == 200


class TestDatabaseStrategy:
    def test_register_sets_session_cookie(self):
        with make_client("db_register") as (client, _runtime):
            resp = _register(client)
            assert resp.status_code == 201
            body = resp.json()
            assert body["strategy"] == "database"
            assert body["user"]["email"] == "alice@example.com"
            assert body["user"]["email_verified"] is False
            assert body["session_expires_at"] is not None
            assert "password_hash" not in body["user"]
            [cookie] = _set_cookies(resp)
            assert cookie.startswith("keyward_session=")
            assert "HttpOnly" in cookie
            assert resp.headers["cache-control"] == "no-store"

    def test_duplicate_email(self):
        with make_client("db_duplicate") as (client, _runtime):
            _register(client)
            resp = _register(client, email="ALICE@example.com")
            assert resp.status_code == 409
            assert resp.json()["error"]["code"] == "storage_unique_violation"

    def test_weak_password(self):
        with make_client("db_weak") as (client, _runtime):
            resp = _register(client, password="short")
            assert resp.status_code == 422
            assert resp.json()["error"]["code"] == "weak_password"

    def test_invalid_email(self):
        with make_client("db_bad_email") as (client, _runtime):
            resp = _register(client, email="not-an-email")
            assert resp.status_code == 422
            assert resp.json()["error"]["code"] == "validation_error"

    def test_registration_disabled(self):
        with make_client("db_closed", self_registration_enabled=False) as (client, _runtime):
            resp = _register(client)
            assert resp.status_code == 403
            assert resp.json()["error"]["code"] == "registration_disabled"

    def test_login_session_logout(self):
        with make_client("db_login") as (client, _runtime):
            _register(client)
            client.cookies.clear()

            resp = _login(client)
            assert resp.status_code == 200

            session = client.get("/api/v1/auth/session")
            assert session.status_code == 200
            assert session.json()["user"]["email"] == "alice@example.com"
            assert session.json()["strategy"] == "database"

            out = client.post("/api/v1/auth/logout", headers=csrf_headers(client))
            assert out.status_code == 200
            assert any(c.startswith("keyward_session=;") for c in _set_cookies(out))

            after = client.get("/api/v1/auth/session")
            assert after.status_code == 401
            assert after.headers["www-authenticate"] == "Bearer"

    def test_logout_of_destroyed_session_via_bearer(self):
        with make_client("db_logout_bearer") as (client, runtime):
            session_id = _register(client).cookies.get("keyward_session")
            client.cookies.clear()
            headers = {"Authorization": f"Bearer {session_id}"}
            assert client.post("/api/v1/auth/logout", headers=headers).status_code == 200
            assert client.post("/api/v1/auth/logout", headers=headers).status_code == 200
            assert runtime.sessions.get(session_id) is None

    def test_wrong_password_and_unknown_email_look_the_same(self):
        with make_client("db_bad_login") as (client, _runtime):
            _register(client)
            wrong = _login(client, password="wrong-password")
            unknown = _login(client, email="ghost@example.com")
            assert wrong.status_code == unknown.status_code == 401
            assert wrong.json() == unknown.json()
            assert wrong.json()["error"]["code"] == "credential_invalid"

    def test_session_requires_credential(self):
        with make_client("db_anon") as (client, _runtime):
            resp = client.get("/api/v1/auth/session")
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "session_not_found"

    def test_refresh_not_available(self):
        with make_client("db_refresh") as (client, _runtime):
            resp = client.post("/api/v1/auth/refresh", headers=csrf_headers(client))
            assert resp.status_code == 404

    def test_expired_session(self):
        clock = FakeClock()
        with make_client("db_expired", clock=clock, session_rolling=False) as (client, _runtime):
            _register(client)
            clock.advance(minutes=61)
            assert client.get("/api/v1/auth/session").status_code == 401


class TestJwtStrategy:
    def test_login_returns_tokens(self):
        with make_client("jwt_login", session_strategy="jwt") as (client, _runtime):
            resp = _register(client)
            assert resp.status_code == 201
            tokens = resp.json()["tokens"]
            assert tokens["token_type"] == "bearer"
            assert tokens["expires_in"] == 600
            names = sorted(c.split("=", 1)[0] for c in _set_cookies(resp))
            assert names == ["keyward_access", "keyward_refresh"]

            bearer = client.get(
                "/api/v1/auth/session", headers={"Authorization": f"Bearer {tokens['access_token']}"}
            )
            assert bearer.status_code == 200
            assert bearer.json()["strategy"] == "jwt"

    def test_refresh_rotation_and_replay(self):
        with make_client("jwt_refresh", session_strategy="jwt") as (client, _runtime):
            r0 = _register(client).json()["tokens"]["refresh_token"]

            first = client.post("/api/v1/auth/refresh", json={"refresh_token": r0}, headers=csrf_headers(client))
            assert first.status_code == 200
            r1 = first.json()["refresh_token"]
            assert r1 != r0

            replay = client.post("/api/v1/auth/refresh", json={"refresh_token": r0}, headers=csrf_headers(client))
            assert replay.status_code == 401
            assert replay.json()["error"]["code"] == "token_reuse_detected"
            cleared = [c for c in _set_cookies(replay) if c.endswith("Max-Age=0")]
            assert len(cleared) == 3

            revoked = client.post("/api/v1/auth/refresh", json={"refresh_token": r1}, headers=csrf_headers(client))
            assert revoked.status_code == 401
            assert revoked.json()["error"]["code"] == "token_revoked"

    def test_refresh_from_cookie(self):
        with make_client("jwt_refresh_cookie", session_strategy="jwt") as (client, _runtime):
            _register(client)
            resp = client.post("/api/v1/auth/refresh", headers=csrf_headers(client))
            assert resp.status_code == 200
            assert any(c.startswith("keyward_refresh=") for c in _set_cookies(resp))

    def test_unknown_refresh_token(self):
        with make_client("jwt_unknown", session_strategy="jwt") as (client, _runtime):
            resp = client.post(
                "/api/v1/auth/refresh", json={"refresh_token": "a.b.c"}, headers=csrf_headers(client)
            )
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "token_invalid"

    def test_logout_revokes_refresh_family(self):
        with make_client("jwt_logout", session_strategy="jwt") as (client, _runtime):
            r0 = _register(client).json()["tokens"]["refresh_token"]
            out = client.post("/api/v1/auth/logout", json={"refresh_token": r0}, headers=csrf_headers(client))
            assert out.status_code == 200
            resp = client.post("/api/v1/auth/refresh", json={"refresh_token": r0}, headers=csrf_headers(client))
            assert resp.json()["error"]["code"] == "token_revoked"

    def test_garbage_access_token(self):
        with make_client("jwt_garbage", session_strategy="jwt") as (client, _runtime):
            resp = client.get("/api/v1/auth/session", headers={"Authorization": "Bearer not.a.jwt"})
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "token_invalid"


def _oauth_client_mock():
    mock = MagicMock(spec=ProviderClient)
    mock.exchange_code.return_value = OAuthTokens(access_token="gho_abc")
    mock.fetch_profile.return_value = OAuthProfile(
        provider_account_id="4242", email="octo@example.com", email_verified=True, name="Octo"
    )
    return mock


class TestOAuth:
    def test_providers_list(self):
        providers = {"github": github("cid", "secret")}
        with make_client("oauth_list", providers=providers) as (client, _runtime):
            resp = client.get("/api/v1/auth/providers")
            assert resp.json() == [
                {"id": "github", "label": "GitHub", "start_url": "/api/v1/auth/oauth/github/start"}
            ]

    def test_unknown_provider(self):
        with make_client("oauth_unknown") as (client, _runtime):
            resp = client.get("/api/v1/auth/oauth/myspace/start", follow_redirects=False)
            assert resp.status_code == 404

    def test_full_handshake(self):
        provider_client = _oauth_client_mock()
        providers = {"github": github("cid", "secret")}
        with make_client("oauth_flow", providers=providers, provider_client=provider_client) as (client, runtime):
            start = client.get("/api/v1/auth/oauth/github/start?callback_url=/welcome", follow_redirects=False)
            assert start.status_code == 302
            location = urlparse(start.headers["location"])
            assert location.netloc == "github.com"
            state = parse_qs(location.query)["state"][0]
            assert client.cookies.get("keyward_oauth") == state

            done = client.get(
                f"/api/v1/auth/oauth/github/callback?code=abc&state={state}", follow_redirects=False
            )
            assert done.status_code == 302
            assert done.headers["location"] == "/welcome"
            cookies = _set_cookies(done)
            assert any(c.startswith("keyward_oauth=;") for c in cookies)
            assert any(c.startswith("keyward_session=") for c in cookies)

            session = client.get("/api/v1/auth/session")
            assert session.json()["user"]["email"] == "octo@example.com"
            assert runtime.store.get_account_by_provider("github", "4242") is not None

    def test_forged_state(self):
        provider_client = _oauth_client_mock()
        providers = {"github": github("cid", "secret")}
        with make_client("oauth_forged", providers=providers, provider_client=provider_client) as (client, _rt):
            client.get("/api/v1/auth/oauth/github/start", follow_redirects=False)
            resp = client.get(
                "/api/v1/auth/oauth/github/callback?code=abc&state=forged.value", follow_redirects=False
            )
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "authentication_failed"
            assert provider_client.exchange_code.call_count == 0

    def test_provider_error_param(self):
        provider_client = _oauth_client_mock()
        providers = {"github": github("cid", "secret")}
        with make_client("oauth_denied", providers=providers, provider_client=provider_client) as (client, _rt):
            resp = client.get(
                "/api/v1/auth/oauth/github/callback?error=access_denied", follow_redirects=False
            )
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "authentication_failed"
            assert provider_client.exchange_code.call_count == 0

    def test_signed_in_user_links_account(self):
        providers = {"github": github("cid", "secret")}
        with make_client("oauth_link", providers=providers, provider_client=_oauth_client_mock()) as (
            client,
            runtime,
        ):
            user_id = _link_while_signed_in(client, runtime)
            assert _count(runtime, "SELECT count(*) FROM sessions WHERE user_id = :u", u=user_id) == 1

    def test_signed_in_jwt_user_links_account(self):
        providers = {"github": github("cid", "secret")}
        with make_client(
            "oauth_link_jwt", providers=providers, provider_client=_oauth_client_mock(), session_strategy="jwt"
        ) as (client, runtime):
            user_id = _link_while_signed_in(client, runtime)
            families = "SELECT count(DISTINCT family_id) FROM refresh_tokens WHERE user_id = :u"
            assert _count(runtime, families, u=user_id) == 1


class TestPasswordAndEmail:
    def test_reset_flow(self):
        with make_client("reset_flow") as (client, runtime):
            _register(client)
            old_session = client.cookies.get("keyward_session")

            accepted = client.post(
                "/api/v1/auth/password/reset-request",
                json={"email": "alice@example.com"},
                headers=csrf_headers(client),
            )
            assert accepted.status_code == 202

            token = runtime.request_password_reset("alice@example.com")
            done = client.post(
                "/api/v1/auth/password/reset",
                json={"email": "alice@example.com", "token": token, "new_password": "a-new-password"},
                headers=csrf_headers(client),
            )
            assert done.status_code == 200
            assert runtime.sessions.get(old_session) is None
            assert _login(client, password="a-new-password").status_code == 200

    def test_reset_request_unknown_email_is_202(self):
        with make_client("reset_unknown") as (client, _runtime):
            resp = client.post(
                "/api/v1/auth/password/reset-request",
                json={"email": "nobody@example.com"},
                headers=csrf_headers(client),
            )
            assert resp.status_code == 202

    def test_reset_with_bad_token(self):
        with make_client("reset_bad") as (client, _runtime):
            _register(client)
            resp = client.post(
                "/api/v1/auth/password/reset",
                json={"email": "alice@example.com", "token": "forged", "new_password": "a-new-password"},
                headers=csrf_headers(client),
            )
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "token_invalid"

    def test_verify_email(self):
        with make_client("verify_email") as (client, runtime):
            _register(client)
            token = runtime.request_email_verification("alice@example.com")
            resp = client.post(
                "/api/v1/auth/email/verify",
                json={"email": "alice@example.com", "token": token},
                headers=csrf_headers(client),
            )
            assert resp.status_code == 200
            assert resp.json()["email_verified"] is True

    def test_verify_request_requires_auth(self):
        with make_client("verify_anon") as (client, _runtime):
            resp = client.post("/api/v1/auth/email/verify-request", headers=csrf_headers(client))
            assert resp.status_code == 401


def _request_magic_link(client, email="alice@example.com", **extra):
    return client.post(
        "/api/v1/auth/magic-link/request",
        json={"email": email, **extra},
        headers=csrf_headers(client),
    )


class TestMagicLink:
    def test_sign_in_with_delivered_link(self):
        notifier = MagicMock()
        with make_client("magic_flow", notifier=notifier) as (client, runtime):
            accepted = _request_magic_link(client, redirect_to="/welcome")
            assert accepted.status_code == 202
            purpose, email, url = notifier.call_args.args
            assert (purpose, email) == ("magic", "alice@example.com")

            link = urlparse(url)
            done = client.get(f"{link.path}?{link.query}", follow_redirects=False)
            assert done.status_code == 302
            assert done.headers["location"] == "/welcome"
            assert done.headers["cache-control"] == "no-store"
            assert any(c.startswith("keyward_session=") for c in _set_cookies(done))

            session = client.get("/api/v1/auth/session")
            assert session.status_code == 200
            assert session.json()["user"]["email"] == "alice@example.com"
            assert session.json()["user"]["email_verified"] is True

            client.cookies.clear()
            replay = client.get(f"{link.path}?{link.query}", follow_redirects=False)
            assert replay.status_code == 401
            assert replay.json()["error"]["code"] == "token_invalid"
            assert not _set_cookies(replay)

    def test_offsite_redirect_lands_on_root(self):
        with make_client("magic_redirect") as (client, runtime):
            token = runtime.request_magic_link("alice@example.com")
            done = client.get(
                "/api/v1/auth/magic-link/verify",
                params={"email": "alice@example.com", "token": token, "redirect_to": "//evil.example/"},
                follow_redirects=False,
            )
            assert done.status_code == 302
            assert done.headers["location"] == "/"

    def test_jwt_strategy_sets_token_cookies(self):
        with make_client("magic_jwt", session_strategy="jwt") as (client, runtime):
            token = runtime.request_magic_link("alice@example.com")
            done = client.get(
                "/api/v1/auth/magic-link/verify",
                params={"email": "alice@example.com", "token": token},
                follow_redirects=False,
            )
            cookies = _set_cookies(done)
            assert any(c.startswith("keyward_access=") for c in cookies)
            assert any(c.startswith("keyward_refresh=") for c in cookies)

    def test_request_is_202_for_unknown_address(self):
        notifier = MagicMock()
        with make_client("magic_unknown", notifier=notifier, magic_link_auto_create_user=False) as (client, _rt):
            resp = _request_magic_link(client, email="nobody@example.com")
            assert resp.status_code == 202
            notifier.assert_not_called()

    def test_request_requires_csrf(self):
        with make_client("magic_csrf") as (client, _runtime):
            client.get("/api/v1/auth/csrf")
            resp = client.post("/api/v1/auth/magic-link/request", json={"email": "alice@example.com"})
            assert resp.status_code == 403
            assert resp.json()["error"]["code"] == "csrf_rejected"

    def test_forged_token(self):
        with make_client("magic_forged") as (client, runtime):
            resp = client.get(
                "/api/v1/auth/magic-link/verify",
                params={"email": "alice@example.com", "token": "forged"},
                follow_redirects=False,
            )
            assert resp.status_code == 401
            assert runtime.store.get_user_by_email("alice@example.com") is None

    def test_disabled(self):
        with make_client("magic_off", magic_link_enabled=False) as (client, _runtime):
            resp = _request_magic_link(client)
            assert resp.status_code == 404
            resp = client.get("/api/v1/auth/magic-link/verify", params={"email": "a@example.com", "token": "t"})
            assert resp.status_code == 404


class TestRateLimits:
    def test_login_limit_is_enforced_per_app(self):
        limited = {"rate_limit_enabled": True, "login_rate_limit": "2/minute"}
        with make_client("limits_a", **limited) as (client_a, _a), make_client("limits_b") as (client_b, _b):
            assert _login(client_a).status_code == 401
            assert _login(client_a).status_code == 401
            blocked = _login(client_a)
            assert blocked.status_code == 429
            assert blocked.json()["error"]["code"] == "rate_limited"
            assert "retry-after" in blocked.headers

            # Building a second app with limits off leaves the first one limited.
            for _ in range(3):
                assert _login(client_b).status_code == 401
            assert _login(client_a).status_code == 429

    def test_counters_are_not_shared_between_apps(self):
        limited = {"rate_limit_enabled": True, "login_rate_limit": "1/minute"}
        with make_client("limits_c", **limited) as (client_c, _c), make_client("limits_d", **limited) as (
            client_d,
            _d,
        ):
            assert _login(client_c).status_code == 401
            assert _login(client_c).status_code == 429
            assert _login(client_d).status_code == 401

    def test_limits_come_from_settings(self):
        with make_client("limits_e", rate_limit_enabled=True, login_rate_limit="5/minute") as (client, _rt):
            for _ in range(5):
                assert _login(client).status_code == 401
            assert _login(client).status_code == 429
