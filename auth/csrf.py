"""
auth/csrf.py -- Double-submit CSRF tokens.

issue_token() returns a random token plus the Set-Cookie directive that stores
it. The client echoes the cookie value in the X-CSRF-Token header (or a
csrf_token body field); validate_double_submit() requires both to be present
and equal. No server-side state: validity is structural.

The CSRF cookie is script-readable (no HttpOnly) and the token is also handed
back in the response body.

Every state-mutating route (register, login, logout, refresh, password and
email actions) is gated by require_double_submit(), independent of whether
the caller holds a valid session.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass

from auth.cookies import CSRF_COOKIE, CookiePolicy, policy_cookie
from auth.errors import CsrfRejectedError

CSRF_HEADER = "X-CSRF-Token"
CSRF_FORM_FIELD = "csrf_token"


@dataclass(frozen=True)
class CsrfToken:
    token: str
    cookie: str  # Set-Cookie directive


class CsrfGuard:
    def __init__(self, policy: CookiePolicy, *, max_age: int | None = None) -> None:
        self.policy = policy
        self.max_age = max_age

    def issue_token(self) -> CsrfToken:
        token = secrets.token_urlsafe(32)
        cookie = policy_cookie(CSRF_COOKIE, token, self.policy, max_age=self.max_age, http_only=False)
        return CsrfToken(token=token, cookie=cookie)

    @staticmethod
    def validate_double_submit(cookie_token: str | None, header_token: str | None) -> bool:
        """True only when both values are present, non-empty and equal (constant time)."""
        if not cookie_token or not header_token:
            return False
        return hmac.compare_digest(cookie_token.encode("utf-8"), header_token.encode("utf-8"))

    def require_double_submit(self, cookie_token: str | None, header_token: str | None) -> None:
        if not self.validate_double_submit(cookie_token, header_token):
            raise CsrfRejectedError("CSRF double-submit check failed")
