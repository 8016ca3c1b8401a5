"""
auth/providers.py -- OAuth provider descriptors and the HTTP client that talks to them.

A provider is pure data (OAuthProvider): endpoints, scopes, token body style,
and how to turn the provider's answer into an OAuthProfile. The orchestrator in
auth/oauth.py never branches on provider id; everything provider-specific is a
field here.

Supported providers:
  github -- static endpoints; form token body; /user plus /user/emails.
  google -- static endpoints; OIDC userinfo.
  oidc   -- generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.) with
            endpoints from the issuer's /.well-known/openid-configuration
            or given explicitly; profile from userinfo when available,
            otherwise from the id_token returned by the token endpoint.

Security notes:
  [H1] An email is only marked verified when the provider says so. GitHub
       accepts only the entry that is both primary=true and verified=true from
       /user/emails. Unverified emails are never used to link to an existing
       local user.

  id_token claims are read without signature verification. The token came
  directly from the provider's token endpoint over TLS in the same request
  (OIDC Core 3.1.3.7), and aud must still name our client id.

  Every provider call carries a bounded timeout. Any failure raises
  ProviderError (code exchange) or ProfileFetchFailedError (profile), and the
  handshake stops before any local state is created.

Layer rule: no imports from api/. Settings from core/ are read only in
providers_from_settings().
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Literal

import requests
from jose import JWTError, jwt

from auth.errors import ProfileFetchFailedError, ProviderError
from auth.models import OAuthProfile, OAuthTokens

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("keyward.auth.providers")

ProfileMapper = Callable[[dict], OAuthProfile]


@dataclass(frozen=True)
class OAuthProvider:
    """Everything the orchestrator needs to run one provider's code flow."""

    id: str
    label: str
    client_id: str
    client_secret: str
    authorization_url: str
    token_url: str
    scopes: tuple[str, ...] = ()
    authorization_params: Mapping[str, str] = field(default_factory=dict)
    token_style: Literal["form", "json"] = "form"
    token_headers: Mapping[str, str] = field(default_factory=dict)
    userinfo_url: str | None = None
    profile_mapper: ProfileMapper | None = None
    profile_from_id_token: bool = False
    # Secondary endpoint listing the user's emails (GitHub).
    emails_url: str | None = None
    use_pkce: bool = True


# ---------------------------------------------------------------------------
# Profile mappers -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


def map_github_profile(data: dict) -> OAuthProfile:
    # /user's email is whatever the user made public; it is not proof of ownership.
    return OAuthProfile(
        provider_account_id=str(data["id"]),
        email=data.get("email"),
        email_verified=False,
        name=data.get("name") or data.get("login"),
        image=data.get("avatar_url"),
        raw=data,
    )


def map_oidc_claims(data: dict) -> OAuthProfile:
    """Standard OIDC claims (userinfo response or id_token payload)."""
    verified = data.get("email_verified", False)
    if isinstance(verified, str):
        verified = verified.lower() == "true"
    return OAuthProfile(
        provider_account_id=str(data["sub"]),
        email=data.get("email"),
        email_verified=bool(verified),
        name=data.get("name"),
        image=data.get("picture"),
        raw=data,
    )


# ---------------------------------------------------------------------------
# Built-in descriptors
# ---------------------------------------------------------------------------


def github(client_id: str, client_secret: str) -> OAuthProvider:
    return OAuthProvider(
        id="github",
        label="GitHub",
        client_id=client_id,
        client_secret=client_secret,
        authorization_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        scopes=("read:user", "user:email"),
        token_style="form",
        token_headers={"Accept": "application/json"},
        userinfo_url="https://api.github.com/user",
        profile_mapper=map_github_profile,
        emails_url="https://api.github.com/user/emails",
    )


def google(client_id: str, client_secret: str) -> OAuthProvider:
    return OAuthProvider(
        id="google",
        label="Google",
        client_id=client_id,
        client_secret=client_secret,
        authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",  # noqa: S106 -- URL, not a password
        scopes=("openid", "email", "profile"),
        authorization_params={"access_type": "offline", "prompt": "select_account"},
        token_style="form",
        userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
        profile_mapper=map_oidc_claims,
    )


@dataclass(frozen=True)
class OidcMetadata:
    """The endpoints keyward uses from an issuer's discovery document."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str | None = None
    jwks_uri: str | None = None


def discover_oidc(issuer: str, *, http: requests.Session | None = None, timeout: float = 10.0) -> OidcMetadata:
    """Fetch <issuer>/.well-known/openid-configuration. Raises ProviderError on any failure.

    The document must name the same issuer it was fetched from (OIDC
    Discovery 4.3) and carry both the authorization and token endpoints.
    """
    normalized = issuer.rstrip("/")
    url = f"{normalized}/.well-known/openid-configuration"
    getter = http.get if http is not None else requests.get
    try:
        resp = getter(url, headers={"Accept": "application/json"}, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning("OIDC discovery for %s failed: %s", normalized, type(exc).__name__)
        raise ProviderError(f"OIDC discovery for {normalized} failed") from exc

    if not isinstance(data, dict) or str(data.get("issuer", "")).rstrip("/") != normalized:
        raise ProviderError(f"OIDC discovery document does not belong to {normalized}")
    if not data.get("authorization_endpoint") or not data.get("token_endpoint"):
        raise ProviderError(f"OIDC discovery document for {normalized} lacks required endpoints")
    return OidcMetadata(
        issuer=normalized,
        authorization_endpoint=data["authorization_endpoint"],
        token_endpoint=data["token_endpoint"],
        userinfo_endpoint=data.get("userinfo_endpoint") or None,
        jwks_uri=data.get("jwks_uri") or None,
    )


def oidc(
    client_id: str,
    client_secret: str,
    *,
    issuer: str | None = None,
    authorization_url: str | None = None,
    token_url: str | None = None,
    userinfo_url: str | None = None,
    label: str = "SSO",
    http: requests.Session | None = None,
    timeout: float = 10.0,
) -> OAuthProvider:
    """Generic OIDC provider.

    With an issuer, endpoints come from its discovery document; explicitly
    passed URLs still win. Without one, authorization_url and token_url are
    required.
    """
    if issuer:
        metadata = discover_oidc(issuer, http=http, timeout=timeout)
        authorization_url = authorization_url or metadata.authorization_endpoint
        token_url = token_url or metadata.token_endpoint
        userinfo_url = userinfo_url or metadata.userinfo_endpoint
    if not authorization_url or not token_url:
        raise ValueError("oidc() needs an issuer or both authorization_url and token_url")
    return OAuthProvider(
        id="oidc",
        label=label,
        client_id=client_id,
        client_secret=client_secret,
        authorization_url=authorization_url,
        token_url=token_url,
        scopes=("openid", "email", "profile"),
        token_style="form",
        userinfo_url=userinfo_url or None,
        profile_mapper=map_oidc_claims if userinfo_url else None,
        profile_from_id_token=not userinfo_url,
    )


def providers_from_settings(settings: Settings, *, http: requests.Session | None = None) -> dict[str, OAuthProvider]:
    """Return every provider whose client id and secret are both configured.

    An OIDC provider also needs OIDC_ISSUER or both explicit endpoints. A
    failed discovery is logged and leaves that one provider out.
    """
    providers: dict[str, OAuthProvider] = {}
    if settings.github_client_id and settings.github_client_secret:
        providers["github"] = github(settings.github_client_id, settings.github_client_secret)
    if settings.google_client_id and settings.google_client_secret:
        providers["google"] = google(settings.google_client_id, settings.google_client_secret)
    if (
        settings.oidc_client_id
        and settings.oidc_client_secret
        and (settings.oidc_issuer or (settings.oidc_authorization_url and settings.oidc_token_url))
    ):
        try:
            providers["oidc"] = oidc(
                settings.oidc_client_id,
                settings.oidc_client_secret,
                issuer=settings.oidc_issuer or None,
                authorization_url=settings.oidc_authorization_url or None,
                token_url=settings.oidc_token_url or None,
                userinfo_url=settings.oidc_userinfo_url or None,
                label=settings.oidc_display_name,
                http=http,
                timeout=settings.oauth_timeout_seconds,
            )
        except ProviderError:
            logger.error("%s OAuth provider disabled: OIDC discovery failed", settings.oidc_display_name)
    for provider in providers.values():
        logger.info("%s OAuth provider registered", provider.label)
    return providers


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


class ProviderClient:
    """Blocking HTTP calls to provider token / userinfo endpoints.

    Wraps a requests.Session so connection pooling is shared across calls.
    Every request carries `timeout` (seconds).
    """

    def __init__(self, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.timeout = timeout
        self._http = session or requests.Session()

    def close(self) -> None:
        self._http.close()

    def exchange_code(
        self,
        provider: OAuthProvider,
        code: str,
        redirect_uri: str,
        code_verifier: str | None = None,
    ) -> OAuthTokens:
        """POST the authorization code to the token endpoint. Raises ProviderError on any failure."""
        body = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": provider.client_id,
            "client_secret": provider.client_secret,
        }
        if code_verifier:
            body["code_verifier"] = code_verifier
        headers = {"Accept": "application/json", **provider.token_headers}
        try:
            if provider.token_style == "json":
                resp = self._http.post(provider.token_url, json=body, headers=headers, timeout=self.timeout)
            else:
                resp = self._http.post(provider.token_url, data=body, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Token exchange with %s failed: %s", provider.id, type(exc).__name__)
            raise ProviderError(f"Token exchange with {provider.id} failed") from exc

        # GitHub answers 200 with {"error": ...} on a bad code.
        if not isinstance(data, dict) or data.get("error") or not data.get("access_token"):
            error = data.get("error") if isinstance(data, dict) else None
            logger.warning("Token exchange with %s rejected: %s", provider.id, error or "no access_token")
            raise ProviderError(f"Token exchange with {provider.id} rejected")

        expires_in = data.get("expires_in")
        return OAuthTokens(
            access_token=data["access_token"],
            token_type=data.get("token_type"),
            refresh_token=data.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            scope=data.get("scope"),
            id_token=data.get("id_token"),
        )

    def fetch_profile(self, provider: OAuthProvider, tokens: OAuthTokens) -> OAuthProfile:
        """Resolve a normalized profile. Raises ProfileFetchFailedError on any failure."""
        if provider.profile_from_id_token:
            profile = self._profile_from_id_token(provider, tokens)
        else:
            profile = self._profile_from_userinfo(provider, tokens)
        if provider.emails_url:
            profile = self._with_verified_email(provider, tokens, profile)
        if not profile.provider_account_id:
            raise ProfileFetchFailedError(f"{provider.id} profile has no stable account id")
        return profile

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _get_json(self, provider: OAuthProvider, url: str, tokens: OAuthTokens) -> Any:
        headers = {"Authorization": f"Bearer {tokens.access_token}", "Accept": "application/json"}
        try:
            resp = self._http.get(url, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Profile request to %s failed: %s", provider.id, type(exc).__name__)
            raise ProfileFetchFailedError(f"Profile request to {provider.id} failed") from exc

    def _profile_from_userinfo(self, provider: OAuthProvider, tokens: OAuthTokens) -> OAuthProfile:
        if not provider.userinfo_url or provider.profile_mapper is None:
            raise ProfileFetchFailedError(f"{provider.id} has no userinfo endpoint configured")
        data = self._get_json(provider, provider.userinfo_url, tokens)
        try:
            return provider.profile_mapper(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise ProfileFetchFailedError(f"{provider.id} userinfo response is missing fields") from exc

    def _profile_from_id_token(self, provider: OAuthProvider, tokens: OAuthTokens) -> OAuthProfile:
        if not tokens.id_token:
            raise ProfileFetchFailedError(f"{provider.id} returned no id_token")
        try:
            claims = jwt.get_unverified_claims(tokens.id_token)
        except JWTError as exc:
            raise ProfileFetchFailedError(f"{provider.id} id_token is malformed") from exc
        aud = claims.get("aud")
        audiences = [aud] if isinstance(aud, str) else list(aud or [])
        if provider.client_id not in audiences:
            raise ProfileFetchFailedError(f"{provider.id} id_token was issued to another client")
        try:
            return map_oidc_claims(claims)
        except (KeyError, TypeError, ValueError) as exc:
            raise ProfileFetchFailedError(f"{provider.id} id_token is missing sub") from exc

    def _with_verified_email(self, provider: OAuthProvider, tokens: OAuthTokens, profile: OAuthProfile) -> OAuthProfile:
        """Replace the profile email with the primary verified one, if there is one [H1]."""
        emails = self._get_json(provider, provider.emails_url, tokens)
        if not isinstance(emails, list):
            raise ProfileFetchFailedError(f"{provider.id} emails response is not a list")
        for entry in emails:
            if isinstance(entry, dict) and entry.get("primary") and entry.get("verified") and entry.get("email"):
                return replace(profile, email=entry["email"], email_verified=True)
        return replace(profile, email_verified=False)
