"""
auth/oauth.py -- Authorization-code handshake: state binding, exchange, user resolution.

Flow:
  start_oauth()    builds the provider's authorization URL and a signed state
                   value, returned both in the URL and as the keyward_oauth
                   cookie (HttpOnly, Max-Age = state TTL).
  complete_oauth() runs on the callback:
    1. state param must equal the state cookie (double-submit) and carry a
       valid HMAC, be unexpired, and name this provider. Otherwise
       StateMismatchError, before any network call.
    2. code -> provider tokens (bounded timeout)          ProviderError
    3. tokens -> normalized profile                       ProfileFetchFailedError
    4. find or create the local user, or link to link_to_user_id
    5. strategy.issue() materializes a session or token pair, except when
       linking to link_to_user_id (the caller already holds credentials)
    6. return the post-login redirect and a cookie-clearing directive

State format:
  base64url(json {"p": provider, "r": callback, "n": nonce, "t": issued_at})
  + "." + hex HMAC-SHA256(SECRET_KEY, payload)

  Nothing is stored server-side. The cookie is cleared on completion, so the
  state is single-use in effect.

PKCE:
  The code verifier is HMAC(SECRET_KEY, "pkce:" + nonce), so it can be
  recomputed on the callback without storing it and never appears in the URL
  or cookie. The S256 challenge is computed with authlib.

Security notes:
  [H1] A first-time provider login is linked to an existing local user by
       email only when the provider reports that email verified and
       oauth_link_by_email is on.
  [H5] Every handshake failure reaches the client as the same generic
       "authentication_failed" error (see auth/errors.py).
  [H6] The post-login redirect is always a same-site relative path. Absolute
       and protocol-relative URLs fall back to "/" (open-redirect prevention).

Logging: only provider ids and truncated nonces. State values, codes and
provider tokens are never logged.

Layer rule: no imports from api/. Settings from core/ are read only in
OAuthOrchestrator.from_settings().
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from authlib.common.urls import add_params_to_uri
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from auth.clock import Clock, utcnow
from auth.cookies import OAUTH_STATE_COOKIE, CookiePolicy, clear_cookie, serialize_cookie
from auth.csrf import CsrfGuard
from auth.errors import (
    AccountLinkConflictError,
    CredentialInvalidError,
    ProfileFetchFailedError,
    ProviderError,
    StateMismatchError,
    UserNotFoundError,
)
from auth.models import Account, IssuedCredentials, OAuthProfile, OAuthTokens, User
from auth.providers import OAuthProvider, ProviderClient
from auth.strategy import SessionStrategy

if TYPE_CHECKING:
    from auth.store import StorageAdapter
    from core.config import Settings

logger = logging.getLogger("keyward.auth.oauth")

# Tolerated forward drift between instances that sign and verify state.
_STATE_FUTURE_SKEW = 60


# ---------------------------------------------------------------------------
# Redirect targets [H6]
# ---------------------------------------------------------------------------


def safe_redirect_target(target: str | None, default: str = "/") -> str:
    """Return target if it is a same-site relative path, else default."""
    if not target or not target.startswith("/") or target.startswith("//") or "\\" in target:
        return default
    return target


# ---------------------------------------------------------------------------
# State codec
# ---------------------------------------------------------------------------


def _b64e(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64d(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


@dataclass(frozen=True)
class OAuthState:
    value: str
    provider_id: str
    callback_url: str
    nonce: str
    issued_at: int


class OAuthStateCodec:
    """Sign and verify OAuth state values with the service secret."""

    def __init__(self, secret_key: str, *, ttl_seconds: int = 600, clock: Clock = utcnow) -> None:
        self._secret = secret_key.encode()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _sign(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue(self, provider_id: str, callback_url: str) -> OAuthState:
        nonce = secrets.token_urlsafe(16)
        issued_at = int(self._clock().timestamp())
        body = json.dumps({"p": provider_id, "r": callback_url, "n": nonce, "t": issued_at}, separators=(",", ":"))
        payload = _b64e(body.encode("utf-8"))
        value = f"{payload}.{self._sign(payload)}"
        return OAuthState(value, provider_id, callback_url, nonce, issued_at)

    def decode(self, value: str, provider_id: str) -> OAuthState:
        """Verify signature, age and provider. Any failure raises StateMismatchError."""
        payload, sep, signature = value.rpartition(".")
        expected = self._sign(payload).encode("ascii")
        if not sep or not payload or not hmac.compare_digest(signature.encode("utf-8"), expected):
            raise StateMismatchError("OAuth state signature mismatch")
        try:
            data = json.loads(_b64d(payload))
            state = OAuthState(
                value=value,
                provider_id=str(data["p"]),
                callback_url=str(data["r"]),
                nonce=str(data["n"]),
                issued_at=int(data["t"]),
            )
        except (ValueError, KeyError, TypeError, binascii.Error):
            raise StateMismatchError("OAuth state cannot be decoded") from None
        now = int(self._clock().timestamp())
        if now > state.issued_at + self.ttl_seconds or state.issued_at > now + _STATE_FUTURE_SKEW:
            raise StateMismatchError("OAuth state expired")
        if state.provider_id != provider_id:
            raise StateMismatchError("OAuth state issued for another provider")
        return state

    def pkce_verifier(self, nonce: str) -> str:
        digest = hmac.new(self._secret, f"pkce:{nonce}".encode("ascii"), hashlib.sha256).digest()
        return _b64e(digest)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OAuthStart:
    authorization_url: str
    state: str
    cookie: str  # Set-Cookie directive for the state cookie


@dataclass(frozen=True)
class OAuthResult:
    user: User
    # None when the callback linked an account to an already signed-in user.
    credentials: IssuedCredentials | None
    redirect_to: str
    clear_cookie: str  # Set-Cookie directive removing the state cookie
    created: bool = False


class OAuthOrchestrator:
    """Drives the authorization-code flow for the configured providers.

    Usage:
        start = orchestrator.start_oauth(orchestrator.get_provider("github"), "/dashboard")
        # redirect to start.authorization_url, Set-Cookie: start.cookie
        result = orchestrator.complete_oauth(provider, code, state_param, state_cookie)
    """

    def __init__(
        self,
        providers: Mapping[str, OAuthProvider],
        store: StorageAdapter,
        strategy: SessionStrategy,
        client: ProviderClient,
        state_codec: OAuthStateCodec,
        *,
        cookie_policy: CookiePolicy,
        redirect_uri_template: str,
        link_by_email: bool = True,
        clock: Clock = utcnow,
    ) -> None:
        self.providers = dict(providers)
        self._store = store
        self._strategy = strategy
        self._client = client
        self._codec = state_codec
        self._policy = cookie_policy
        self._redirect_uri_template = redirect_uri_template
        self.link_by_email = link_by_email
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        providers: Mapping[str, OAuthProvider],
        store: StorageAdapter,
        strategy: SessionStrategy,
        *,
        client: ProviderClient | None = None,
        clock: Clock = utcnow,
    ) -> "OAuthOrchestrator":
        return cls(
            providers,
            store,
            strategy,
            client or ProviderClient(timeout=settings.oauth_timeout_seconds),
            OAuthStateCodec(settings.secret_key, ttl_seconds=settings.oauth_state_ttl_seconds, clock=clock),
            cookie_policy=CookiePolicy.from_settings(settings),
            redirect_uri_template=settings.base_url.rstrip("/") + settings.oauth_callback_path,
            link_by_email=settings.oauth_link_by_email,
            clock=clock,
        )

    def get_provider(self, provider_id: str) -> OAuthProvider | None:
        return self.providers.get(provider_id)

    def redirect_uri(self, provider: OAuthProvider) -> str:
        return self._redirect_uri_template.format(provider=provider.id)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start_oauth(self, provider: OAuthProvider, callback_url: str | None = None) -> OAuthStart:
        """Build the authorization URL and the signed state cookie."""
        state = self._codec.issue(provider.id, safe_redirect_target(callback_url))
        params = {
            "client_id": provider.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri(provider),
            "scope": " ".join(provider.scopes),
            "state": state.value,
        }
        if provider.use_pkce:
            params["code_challenge"] = create_s256_code_challenge(self._codec.pkce_verifier(state.nonce))
            params["code_challenge_method"] = "S256"
        params.update(provider.authorization_params)
        url = add_params_to_uri(provider.authorization_url, list(params.items()))
        logger.info("OAuth start provider=%s nonce=%s****", provider.id, state.nonce[:6])
        return OAuthStart(authorization_url=url, state=state.value, cookie=self._state_cookie(state.value))

    def _state_cookie(self, value: str) -> str:
        # The callback is a cross-site top-level navigation: Strict would drop the cookie.
        same_site = "none" if self._policy.same_site == "none" else "lax"
        return serialize_cookie(
            OAUTH_STATE_COOKIE,
            value,
            same_site=same_site,
            http_only=True,
            secure=self._policy.secure,
            max_age=self._codec.ttl_seconds,
            domain=self._policy.domain,
        )

    # ------------------------------------------------------------------
    # Complete
    # ------------------------------------------------------------------

    def complete_oauth(
        self,
        provider: OAuthProvider,
        code: str | None,
        state_param: str | None,
        state_cookie: str | None,
        link_to_user_id: str | None = None,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> OAuthResult:
        if not CsrfGuard.validate_double_submit(state_cookie, state_param):
            logger.warning("OAuth callback for %s rejected: state cookie/param mismatch", provider.id)
            raise StateMismatchError("OAuth state param does not match state cookie")
        state = self._codec.decode(state_param, provider.id)
        if not code:
            raise ProviderError("OAuth callback carried no authorization code")

        verifier = self._codec.pkce_verifier(state.nonce) if provider.use_pkce else None
        tokens = self._client.exchange_code(provider, code, self.redirect_uri(provider), verifier)
        profile = self._client.fetch_profile(provider, tokens)

        user, created = self._resolve_user(provider, profile, tokens, link_to_user_id)
        if not user.is_active:
            raise CredentialInvalidError("OAuth login for a deactivated user")
        credentials = None
        if link_to_user_id is None:
            credentials = self._strategy.issue(user, ip=ip, user_agent=user_agent)
        logger.info(
            "OAuth complete provider=%s user=%s created=%s linked=%s nonce=%s****",
            provider.id,
            user.id,
            created,
            link_to_user_id is not None,
            state.nonce[:6],
        )
        return OAuthResult(
            user=user,
            credentials=credentials,
            redirect_to=safe_redirect_target(state.callback_url),
            clear_cookie=clear_cookie(OAUTH_STATE_COOKIE, self._policy),
            created=created,
        )

    def _resolve_user(
        self,
        provider: OAuthProvider,
        profile: OAuthProfile,
        tokens: OAuthTokens,
        link_to_user_id: str | None,
    ) -> tuple[User, bool]:
        account = self._store.get_account_by_provider(provider.id, profile.provider_account_id)

        if link_to_user_id:
            target = self._store.get_user(link_to_user_id)
            if target is None:
                raise UserNotFoundError("Link target user does not exist")
            if account is not None:
                if account.user_id != target.id:
                    raise AccountLinkConflictError("Provider account is linked to another user")
                return target, False
            self._link(target, provider, profile, tokens)
            return target, False

        if account is not None:
            user = self._store.get_user(account.user_id)
            if user is None:
                raise UserNotFoundError("Linked account points at a missing user")
            return user, False

        if not profile.email:
            raise ProfileFetchFailedError(f"{provider.id} profile has no email address")

        existing = self._store.get_user_by_email(profile.email)
        if existing is not None:
            if not (self.link_by_email and profile.email_verified):
                # [H1] An unverified address could belong to someone else.
                raise AccountLinkConflictError("Email belongs to an existing account; sign in to link it")
            self._link(existing, provider, profile, tokens)
            if existing.email_verified_at is None:
                self._store.update_user(existing.id, email_verified_at=self._clock())
            return existing, False

        user = self._store.create_user(
            User(
                email=profile.email,
                name=profile.name,
                image=profile.image,
                email_verified_at=self._clock() if profile.email_verified else None,
            )
        )
        self._link(user, provider, profile, tokens)
        return user, True

    def _link(self, user: User, provider: OAuthProvider, profile: OAuthProfile, tokens: OAuthTokens) -> None:
        expires_at = None
        if tokens.expires_in:
            expires_at = self._clock() + timedelta(seconds=tokens.expires_in)
        self._store.link_account(
            Account(
                user_id=user.id,
                provider=provider.id,
                provider_account_id=profile.provider_account_id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                token_type=tokens.token_type,
                expires_at=expires_at,
                scope=tokens.scope,
                id_token=tokens.id_token,
            )
        )
        logger.info("Linked %s account to user %s", provider.id, user.id)
