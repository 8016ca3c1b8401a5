"""Unit tests for auth/csrf.py and auth/cookies.py.

Covers:
- double-submit validation: equal passes, mismatch / missing fails
- the CSRF cookie is script-readable (no HttpOnly) and honours the policy
- require_double_submit raises CsrfRejectedError
- serialize_cookie attribute order, SameSite=None implies Secure
- invalid cookie names / values / SameSite modes rejected
- credential_cookies for both strategies; clear_credential_cookies
"""

from datetime import timedelta

import pytest

from auth.cookies import (
    ACCESS_COOKIE,
    CSRF_COOKIE,
    REFRESH_COOKIE,
    SESSION_COOKIE,
    CookiePolicy,
    clear_credential_cookies,
    credential_cookies,
    serialize_cookie,
)
from auth.csrf import CsrfGuard
from auth.errors import CsrfRejectedError
from auth.models import IssuedCredentials, Session, TokenPair
from conftest import START


class TestDoubleSubmit:
    @pytest.mark.parametrize(
        "cookie, header, expected",
        [
            ("abc", "abc", True),
            ("abc", "xyz", False),
            (None, "abc", False),
            ("abc", None, False),
            ("", "", False),
        ],
    )
    def test_validate(self, cookie, header, expected):
        assert CsrfGuard.validate_double_submit(cookie, header) is expected

    def test_require_raises(self):
        guard = CsrfGuard(CookiePolicy())
        with pytest.raises(CsrfRejectedError):
            guard.require_double_submit("abc", "xyz")
        guard.require_double_submit("abc", "abc")

    def test_issue_token_cookie_is_readable(self):
        issued = CsrfGuard(CookiePolicy(secure=True, same_site="strict")).issue_token()
        assert issued.cookie.startswith(f"{CSRF_COOKIE}={issued.token};")
        assert "HttpOnly" not in issued.cookie
        assert "Secure" in issued.cookie
        assert "SameSite=Strict" in issued.cookie

    def test_tokens_are_unique(self):
        guard = CsrfGuard(CookiePolicy())
        assert guard.issue_token().token != guard.issue_token().token


class TestSerializeCookie:
    def test_attribute_order(self):
        header = serialize_cookie(
            "sid", "abc", path="/auth", same_site="strict", secure=True, max_age=60, domain="example.com"
        )
        assert header == "sid=abc; Domain=example.com; Path=/auth; SameSite=Strict; HttpOnly; Secure; Max-Age=60"

    def test_samesite_none_forces_secure(self):
        header = serialize_cookie("sid", "abc", same_site="none", secure=False)
        assert "SameSite=None" in header
        assert header.endswith("Secure")

    def test_negative_max_age_clamped(self):
        assert serialize_cookie("sid", "", max_age=-5).endswith("Max-Age=0")

    @pytest.mark.parametrize(
        "name, value, same_site",
        [
            ("bad name", "v", "lax"),
            ("sid", "has space", "lax"),
            ("sid", "semi;colon", "lax"),
            ("sid", "v", "sometimes"),
        ],
    )
    def test_rejects_invalid(self, name, value, same_site):
        with pytest.raises(ValueError):
            serialize_cookie(name, value, same_site=same_site)


class TestCredentialCookies:
    def test_session_cookie_max_age(self):
        session = Session(
            id="sess-abc",
            user_id="u1",
            expires_at=START + timedelta(minutes=30),
            created_at=START,
        )
        issued = IssuedCredentials(strategy="database", user_id="u1", session=session)
        [cookie] = credential_cookies(issued, CookiePolicy(), now=START)
        assert cookie.startswith(f"{SESSION_COOKIE}=sess-abc;")
        assert "HttpOnly" in cookie
        assert cookie.endswith("Max-Age=1800")

    def test_token_cookies(self):
        pair = TokenPair(
            access_token="acc",
            refresh_token="fam.jti.secret",
            access_expires_in=600,
            refresh_expires_in=86400,
            family_id="fam",
        )
        issued = IssuedCredentials(strategy="jwt", user_id="u1", tokens=pair)
        access, refresh = credential_cookies(issued, CookiePolicy(refresh_path="/api/v1/auth"), now=START)
        assert access.startswith(f"{ACCESS_COOKIE}=acc;")
        assert access.endswith("Max-Age=600")
        assert refresh.startswith(f"{REFRESH_COOKIE}=fam.jti.secret;")
        assert "Path=/api/v1/auth" in refresh

    def test_clear_credential_cookies(self):
        cleared = clear_credential_cookies(CookiePolicy())
        assert [c.split("=", 1)[0] for c in cleared] == [SESSION_COOKIE, ACCESS_COOKIE, REFRESH_COOKIE]
        assert all(c.endswith("Max-Age=0") for c in cleared)
