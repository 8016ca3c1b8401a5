"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  GET  /api/v1/auth/csrf                        -- issue CSRF token (cookie + body)
  POST /api/v1/auth/register                    -- create password user; sets credential cookies
  POST /api/v1/auth/login                       -- password login; sets credential cookies
  POST /api/v1/auth/logout                      -- revoke credential; clears cookies
  GET  /api/v1/auth/session                     -- current user and credential expiry
  POST /api/v1/auth/refresh                     -- rotate refresh token (jwt strategy only)
  GET  /api/v1/auth/providers                   -- enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}/start      -- redirect to the provider
  GET  /api/v1/auth/oauth/{provider}/callback   -- complete the handshake; redirect back
  POST /api/v1/auth/password/reset-request      -- mint a reset token (always 202)
  POST /api/v1/auth/password/reset              -- consume token; set password; revoke all
  POST /api/v1/auth/email/verify-request        -- mint an email verification token
  POST /api/v1/auth/email/verify                -- consume verification token
  POST /api/v1/auth/magic-link/request          -- email a single-use sign-in link (always 202)
  GET  /api/v1/auth/magic-link/verify           -- consume the link; set credential cookies; redirect

Security:
  [H2] login, register, refresh, reset-request and both magic-link routes are
       rate-limited per IP.
  [C1] AuthRuntime.login() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries credentials.
  CSRF: every POST runs require_csrf (double-submit) unless it carries a
       Bearer header and no credential cookie.
  Errors from the core (AuthError) propagate to the handler in api/main.py.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter, limits_disabled, login_limit, refresh_limit, register_limit
from api.models import (
    AuthResponse,
    CsrfResponse,
    EmailVerifyRequest,
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    MagicLinkRequest,
    MessageResponse,
    OAuthProviderInfo,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from auth.cookies import (
    OAUTH_STATE_COOKIE,
    REFRESH_COOKIE,
    SESSION_COOKIE,
    clear_credential_cookies,
    credential_cookies,
)
from auth.dependencies import bearer_credential, get_current_user, get_runtime, require_csrf, try_get_auth_context
from auth.errors import AuthError, ProviderError, TokenExpiredError, TokenReuseDetectedError, TokenRevokedError
from auth.models import IssuedCredentials, TokenPair, User
from auth.oauth import safe_redirect_target
from auth.runtime import AuthRuntime

# Auth policy:
# - GET  /auth/csrf, /auth/providers, /auth/oauth/*:   public
# - POST /auth/register, /auth/login, /auth/refresh:  public + CSRF + rate limit
# - POST /auth/password/*, /auth/email/verify:        public + CSRF
# - POST /auth/magic-link/request:                     public + CSRF + rate limit
# - GET  /auth/magic-link/verify:                      public + rate limit (the token is the proof)
# - POST /auth/logout:                                CSRF (revoking needs no prior auth)
# - GET  /auth/session, POST /auth/email/verify-request: requires auth (get_current_user)
router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client_meta(request: Request) -> tuple[Optional[str], Optional[str]]:
    ip = request.client.host if request.client else None
    return ip, request.headers.get("user-agent")


def _set_cookies(response, cookies: list[str]) -> None:
    for cookie in cookies:
        response.headers.append("set-cookie", cookie)


def _credentials_response(
    runtime: AuthRuntime,
    user: User,
    credentials: IssuedCredentials,
    *,
    status_code: int = 200,
) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=AuthResponse.build(user, credentials).model_dump(mode="json"),
        headers=_NO_STORE,
    )
    _set_cookies(resp, credential_cookies(credentials, runtime.cookie_policy, now=runtime.now()))
    return resp


# ---------------------------------------------------------------------------
# CSRF
# ---------------------------------------------------------------------------


@router.get("/auth/csrf", response_model=CsrfResponse)
def issue_csrf(request: Request) -> JSONResponse:
    """Issue a CSRF token.

    The token is returned in the body and set in the keyward_csrf cookie,
    which is readable by JavaScript (not HttpOnly). Clients echo it in the
    X-CSRF-Token header on every POST.
    """
    issued = get_runtime(request).csrf.issue_token()
    resp = JSONResponse(content=CsrfResponse(csrf_token=issued.token).model_dump(), headers=_NO_STORE)
    _set_cookies(resp, [issued.cookie])
    return resp


# ---------------------------------------------------------------------------
# Registration / login / logout
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201, dependencies=[Depends(require_csrf)])
@limiter.limit(register_limit, exempt_when=limits_disabled)  # [H2] -- BELOW @router so the route wraps the limiter
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a password user and sign them in with the configured strategy.

    Returns 409 when the email is already registered and 403 when
    self-registration is disabled.
    """
    runtime = get_runtime(request)
    if not runtime.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    ip, user_agent = _client_meta(request)
    try:
        result = runtime.register(body.email, body.password, name=body.name, ip=ip, user_agent=user_agent)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail={"code": "weak_password", "message": str(exc)}) from exc
    return _credentials_response(runtime, result.user, result.credentials, status_code=201)


@router.post("/auth/login", response_model=AuthResponse, dependencies=[Depends(require_csrf)])
@limiter.limit(login_limit, exempt_when=limits_disabled)  # [H2] brute-force mitigation
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set credential cookies.

    Wrong email and wrong password produce the same 401 "credential_invalid".
    """
    runtime = get_runtime(request)
    ip, user_agent = _client_meta(request)
    result = runtime.login(body.email, body.password, ip=ip, user_agent=user_agent)
    return _credentials_response(runtime, result.user, result.credentials)


@router.post("/auth/logout", response_model=MessageResponse, dependencies=[Depends(require_csrf)])
def logout(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Revoke the session (database) or the refresh family (jwt) and clear cookies.

    Idempotent: an unknown or missing credential still returns 200.
    """
    runtime = get_runtime(request)
    if runtime.strategy.name == "database":
        credential = bearer_credential(request) or request.cookies.get(SESSION_COOKIE)
    else:
        credential = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    runtime.logout(credential)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump(), headers=_NO_STORE)
    _set_cookies(resp, clear_credential_cookies(runtime.cookie_policy))
    return resp


@router.get("/auth/session", response_model=SessionResponse)
def session(request: Request, user: User = Depends(get_current_user)) -> SessionResponse:
    """Return the authenticated user and when the presented credential expires."""
    context = request.state.auth_context
    return SessionResponse(
        user=UserResponse.from_user(user),
        strategy=context.strategy,
        expires_at=context.expires_at,
    )


# ---------------------------------------------------------------------------
# Refresh (jwt strategy)
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=TokenResponse, dependencies=[Depends(require_csrf)])
@limiter.limit(refresh_limit, exempt_when=limits_disabled)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Rotate a refresh token (from the body, else the keyward_refresh cookie).

    A replayed, revoked or expired refresh token also clears the credential
    cookies so the browser stops presenting it.
    """
    runtime = get_runtime(request)
    if runtime.strategy.name != "jwt":
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Refresh is only available with the jwt strategy."},
        )
    presented = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE) or ""
    ip, user_agent = _client_meta(request)
    try:
        result = runtime.refresh(presented, ip=ip, user_agent=user_agent)
    except (TokenReuseDetectedError, TokenRevokedError, TokenExpiredError) as exc:
        resp = _auth_error_response(exc)
        _set_cookies(resp, clear_credential_cookies(runtime.cookie_policy))
        return resp

    issued = IssuedCredentials(
        strategy="jwt",
        user_id=result.user_id,
        tokens=TokenPair(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            access_expires_in=result.access_expires_in,
            refresh_expires_in=result.refresh_expires_in,
            family_id=result.family_id,
        ),
    )
    resp = JSONResponse(content=TokenResponse.from_rotation(result).model_dump(), headers=_NO_STORE)
    _set_cookies(resp, credential_cookies(issued, runtime.cookie_policy, now=runtime.now()))
    return resp


def _auth_error_response(exc: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(**exc.to_payload())).model_dump(),
        headers={**_NO_STORE, "WWW-Authenticate": "Bearer"},
    )


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no provider is configured.
    """
    providers = get_runtime(request).oauth.providers.values()
    return [
        OAuthProviderInfo(id=p.id, label=p.label, start_url=f"/api/v1/auth/oauth/{p.id}/start") for p in providers
    ]


def _provider_or_404(runtime: AuthRuntime, provider_id: str):
    provider = runtime.oauth.get_provider(provider_id)
    if provider is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Unknown OAuth provider."},
        )
    return provider


@router.get("/auth/oauth/{provider_id}/start")
def oauth_start(request: Request, provider_id: str, callback_url: Optional[str] = None) -> RedirectResponse:
    """Redirect to the provider's consent screen with a signed state value.

    callback_url is where the browser lands after a successful login. Only
    same-site relative paths are honoured; anything else becomes "/".
    """
    runtime = get_runtime(request)
    provider = _provider_or_404(runtime, provider_id)
    start = runtime.oauth.start_oauth(provider, callback_url)
    resp = RedirectResponse(start.authorization_url, status_code=302, headers=_NO_STORE)
    _set_cookies(resp, [start.cookie])
    return resp


@router.get("/auth/oauth/{provider_id}/callback")
def oauth_callback(
    request: Request,
    provider_id: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
) -> RedirectResponse:
    """Complete the handshake and redirect to the callback_url given at start.

    When the browser is already signed in, the provider account is linked to
    that user instead of signing in as a different one.
    """
    runtime = get_runtime(request)
    provider = _provider_or_404(runtime, provider_id)
    if error:
        raise ProviderError(f"{provider_id} returned error={error[:64]}")
    current = try_get_auth_context(request)
    ip, user_agent = _client_meta(request)
    result = runtime.oauth.complete_oauth(
        provider,
        code,
        state,
        request.cookies.get(OAUTH_STATE_COOKIE),
        link_to_user_id=current.user_id if current is not None else None,
        ip=ip,
        user_agent=user_agent,
    )
    resp = RedirectResponse(result.redirect_to, status_code=302, headers=_NO_STORE)
    cookies = [result.clear_cookie]
    if result.credentials is not None:
        cookies += credential_cookies(result.credentials, runtime.cookie_policy, now=runtime.now())
    _set_cookies(resp, cookies)
    return resp


# ---------------------------------------------------------------------------
# Password reset / email verification
# ---------------------------------------------------------------------------


@router.post(
    "/auth/password/reset-request",
    response_model=MessageResponse,
    status_code=202,
    dependencies=[Depends(require_csrf)],
)
@limiter.limit(register_limit, exempt_when=limits_disabled)
def password_reset_request(request: Request, body: PasswordResetRequest) -> MessageResponse:
    """Mint a reset token. Always 202, whether or not the email exists."""
    get_runtime(request).request_password_reset(body.email)
    return MessageResponse(message="If the account exists, a reset link has been sent.")


@router.post("/auth/password/reset", response_model=MessageResponse, dependencies=[Depends(require_csrf)])
def password_reset(request: Request, body: PasswordResetConfirm) -> JSONResponse:
    """Set a new password. Every session and refresh family of the user is revoked."""
    runtime = get_runtime(request)
    try:
        runtime.reset_password(body.email, body.token, body.new_password)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail={"code": "weak_password", "message": str(exc)}) from exc
    resp = JSONResponse(content=MessageResponse(message="Password updated.").model_dump(), headers=_NO_STORE)
    _set_cookies(resp, clear_credential_cookies(runtime.cookie_policy))
    return resp


@router.post(
    "/auth/email/verify-request",
    response_model=MessageResponse,
    status_code=202,
    dependencies=[Depends(require_csrf)],
)
def email_verify_request(request: Request, user: User = Depends(get_current_user)) -> MessageResponse:
    get_runtime(request).request_email_verification(user.email)
    return MessageResponse(message="If the address is unverified, a verification link has been sent.")


@router.post("/auth/email/verify", response_model=UserResponse, dependencies=[Depends(require_csrf)])
def email_verify(request: Request, body: EmailVerifyRequest) -> UserResponse:
    user = get_runtime(request).verify_email(body.email, body.token)
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Magic links
# ---------------------------------------------------------------------------


def _magic_links_or_404(runtime: AuthRuntime) -> None:
    if not runtime.magic_link_enabled:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Magic link sign-in is disabled."},
        )


@router.post(
    "/auth/magic-link/request",
    response_model=MessageResponse,
    status_code=202,
    dependencies=[Depends(require_csrf)],
)
@limiter.limit(register_limit, exempt_when=limits_disabled)
def magic_link_request(request: Request, body: MagicLinkRequest) -> MessageResponse:
    """Email a sign-in link. Always 202, whether or not the email exists."""
    runtime = get_runtime(request)
    _magic_links_or_404(runtime)
    runtime.request_magic_link(body.email, body.redirect_to)
    return MessageResponse(message="If sign-in is possible for that address, a link has been sent.")


@router.get("/auth/magic-link/verify")
@limiter.limit(login_limit, exempt_when=limits_disabled)
def magic_link_verify(
    request: Request,
    email: str,
    token: str,
    redirect_to: Optional[str] = None,
) -> RedirectResponse:
    """Consume a magic link, sign the user in and redirect to redirect_to.

    A used, expired or foreign link is a 401 "token_invalid"; the browser
    gets no cookies.
    """
    runtime = get_runtime(request)
    _magic_links_or_404(runtime)
    ip, user_agent = _client_meta(request)
    result = runtime.verify_magic_link(email, token, ip=ip, user_agent=user_agent)
    resp = RedirectResponse(safe_redirect_target(redirect_to), status_code=302, headers=_NO_STORE)
    _set_cookies(resp, credential_cookies(result.credentials, runtime.cookie_policy, now=runtime.now()))
    return resp
