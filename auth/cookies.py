"""
auth/cookies.py -- Set-Cookie serialization for every cookie keyward emits.

The core produces cookie directives as plain header strings so it stays
independent of the web framework. The HTTP layer appends them verbatim:

    response.headers.append("set-cookie", directive)

Wire format:
    name=value; [Domain=d; ]Path=/; SameSite=<Lax|Strict|None>; [HttpOnly; ][Secure; ][Max-Age=N]

Cookie flags:
  keyward_session, keyward_access, keyward_refresh -- HttpOnly; scripts never
      need to read a bearer credential.
  keyward_oauth -- HttpOnly, Max-Age = state TTL; cleared on completion.
  keyward_csrf -- NOT HttpOnly. The double-submit pattern needs page script to
      read it and echo it in X-CSRF-Token. The token is also returned in the
      body of GET /auth/csrf for clients that cannot read cookies.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

from auth.models import IssuedCredentials

SESSION_COOKIE = "keyward_session"
ACCESS_COOKIE = "keyward_access"
REFRESH_COOKIE = "keyward_refresh"
CSRF_COOKIE = "keyward_csrf"
OAUTH_STATE_COOKIE = "keyward_oauth"

_TOKEN_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_VALUE_RE = re.compile(r"^[\x21\x23-\x2B\x2D-\x3A\x3C-\x5B\x5D-\x7E]*$")

_SAME_SITE = {"lax": "Lax", "strict": "Strict", "none": "None"}


@dataclass(frozen=True)
class CookiePolicy:
    """Site-wide cookie attributes taken from settings."""

    secure: bool = False
    same_site: str = "lax"
    domain: str | None = None
    # Path for the refresh cookie; narrow it to the auth routes in production.
    refresh_path: str = "/"

    @classmethod
    def from_settings(cls, settings, *, refresh_path: str = "/") -> "CookiePolicy":
        return cls(
            secure=settings.secure_cookies,
            same_site=settings.cookie_samesite,
            domain=settings.cookie_domain or None,
            refresh_path=refresh_path,
        )


def serialize_cookie(
    name: str,
    value: str,
    *,
    path: str = "/",
    same_site: str = "lax",
    http_only: bool = True,
    secure: bool = False,
    max_age: int | None = None,
    domain: str | None = None,
) -> str:
    """Render one Set-Cookie header value.

    Raises ValueError for names or values that would need quoting, and for an
    unknown SameSite mode. SameSite=None always carries Secure, since browsers
    drop it otherwise.
    """
    if not _TOKEN_RE.match(name):
        raise ValueError(f"Invalid cookie name: {name!r}")
    if not _VALUE_RE.match(value):
        raise ValueError(f"Invalid characters in value of cookie {name!r}")
    mode = _SAME_SITE.get(same_site.lower())
    if mode is None:
        raise ValueError(f"Invalid SameSite mode: {same_site!r}")
    parts = [f"{name}={value}"]
    if domain:
        parts.append(f"Domain={domain}")
    parts.append(f"Path={path}")
    parts.append(f"SameSite={mode}")
    if http_only:
        parts.append("HttpOnly")
    if secure or mode == "None":
        parts.append("Secure")
    if max_age is not None:
        parts.append(f"Max-Age={max(0, int(max_age))}")
    return "; ".join(parts)


def policy_cookie(
    name: str,
    value: str,
    policy: CookiePolicy,
    *,
    max_age: int | None = None,
    http_only: bool = True,
    path: str = "/",
) -> str:
    return serialize_cookie(
        name,
        value,
        path=path,
        same_site=policy.same_site,
        http_only=http_only,
        secure=policy.secure,
        max_age=max_age,
        domain=policy.domain,
    )


def clear_cookie(name: str, policy: CookiePolicy, *, path: str = "/", http_only: bool = True) -> str:
    """Directive that deletes a cookie (empty value, Max-Age=0)."""
    return policy_cookie(name, "", policy, max_age=0, http_only=http_only, path=path)


# ---------------------------------------------------------------------------
# Credential cookies
# ---------------------------------------------------------------------------


def credential_cookies(issued: IssuedCredentials, policy: CookiePolicy, *, now: datetime) -> list[str]:
    """Cookie directives that carry freshly issued credentials to a browser."""
    if issued.session is not None:
        max_age = int((issued.session.expires_at - now).total_seconds())
        return [policy_cookie(SESSION_COOKIE, issued.session.id, policy, max_age=max_age)]
    if issued.tokens is not None:
        return [
            policy_cookie(ACCESS_COOKIE, issued.tokens.access_token, policy, max_age=issued.tokens.access_expires_in),
            policy_cookie(
                REFRESH_COOKIE,
                issued.tokens.refresh_token,
                policy,
                max_age=issued.tokens.refresh_expires_in,
                path=policy.refresh_path,
            ),
        ]
    return []


def clear_credential_cookies(policy: CookiePolicy) -> list[str]:
    return [
        clear_cookie(SESSION_COOKIE, policy),
        clear_cookie(ACCESS_COOKIE, policy),
        clear_cookie(REFRESH_COOKIE, policy, path=policy.refresh_path),
    ]
