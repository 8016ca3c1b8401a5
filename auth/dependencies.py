"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and CSRF.

The credential for a request is looked up in priority order:
  1. Authorization: Bearer <credential> header -- API clients.
  2. Strategy cookie -- keyward_session (database) or keyward_access (jwt),
     set by the login, register and OAuth callback routes.

Both converge on strategy.verify(), so route code never knows which strategy
is configured.

try_get_auth_context() is the soft variant (returns None on failure).
get_auth_context() / get_current_user() raise the AuthError from the core,
which the handler in api/main.py turns into the standard 401 envelope.

CSRF:
  require_csrf() enforces the double-submit check on state-changing routes
  for cookie-carrying browser requests: the keyward_csrf cookie must equal the
  X-CSRF-Token header (or the csrf_token form field). A request is exempt only
  when its credential can come from nowhere but the Authorization header: it
  carries a Bearer value and none of the credential cookies (keyward_session,
  keyward_access, keyward_refresh). Whether the Bearer value is valid plays no
  part; a Bearer request that also carries a credential cookie is checked.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.cookies import ACCESS_COOKIE, CSRF_COOKIE, REFRESH_COOKIE, SESSION_COOKIE
from auth.csrf import CSRF_FORM_FIELD, CSRF_HEADER
from auth.errors import AuthError, SessionNotFoundError, TokenInvalidError
from auth.models import AuthContext, User
from auth.runtime import AuthRuntime

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")
_CREDENTIAL_COOKIES = (SESSION_COOKIE, ACCESS_COOKIE, REFRESH_COOKIE)


def get_runtime(request: Request) -> AuthRuntime:
    return request.app.state.auth


def bearer_credential(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def extract_credential(request: Request, runtime: AuthRuntime) -> str | None:
    """Return the raw credential from the Bearer header or the strategy cookie."""
    credential = bearer_credential(request)
    if credential:
        return credential
    cookie = SESSION_COOKIE if runtime.strategy.name == "database" else ACCESS_COOKIE
    return request.cookies.get(cookie) or None


def try_get_auth_context(request: Request) -> AuthContext | None:
    """Authenticate the request, returning None on any auth failure. Never raises AuthError."""
    try:
        return get_auth_context(request)
    except AuthError:
        return None


def get_auth_context(request: Request) -> AuthContext:
    """Require a valid credential. Raises the core's AuthError (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(ctx: AuthContext = Depends(get_auth_context)): ...
    """
    runtime = get_runtime(request)
    credential = extract_credential(request, runtime)
    if not credential:
        if runtime.strategy.name == "database":
            raise SessionNotFoundError("No session credential on request")
        raise TokenInvalidError("No access token on request")
    return runtime.authenticate(credential)


def get_current_user(request: Request) -> User:
    """Require a valid credential belonging to an active user."""
    runtime = get_runtime(request)
    credential = extract_credential(request, runtime)
    if not credential:
        # Reuse get_auth_context() for the strategy-specific error.
        get_auth_context(request)
    user, context = runtime.current_user(credential)
    request.state.auth_context = context
    return user


async def require_csrf(request: Request) -> None:
    """Double-submit check for cookie-authenticated, state-changing requests.

    Use as a route dependency:
        @router.post("/auth/logout", dependencies=[Depends(require_csrf)])
    """
    if bearer_credential(request) and not any(request.cookies.get(name) for name in _CREDENTIAL_COOKIES):
        return
    submitted = request.headers.get(CSRF_HEADER)
    if not submitted and request.headers.get("content-type", "").startswith(_FORM_TYPES):
        form = await request.form()
        value = form.get(CSRF_FORM_FIELD)
        submitted = value if isinstance(value, str) else None
    get_runtime(request).csrf.require_double_submit(request.cookies.get(CSRF_COOKIE), submitted)
