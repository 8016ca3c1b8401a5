"""
auth/tokens.py -- Access token signing/verification and refresh token minting.

Security design decisions:
  Access tokens: python-jose compact JWS signed with the keystore's active key
       (ES256 or RS256). The header carries the kid so tokens signed before a
       key rotation still verify against the previous key. Claims are
       {sub, iss, aud, sid?, org?, role?, iat, exp}.

  Verification: exp and nbf are checked here, not by python-jose, so that the
       injected Clock and the configured skew allowance decide expiry. Each
       failure maps to one error kind: TokenInvalidError, TokenExpiredError,
       KeyNotFoundError, IssuerMismatchError, AudienceMismatchError.
       Verification never mutates state.

  Refresh tokens: opaque "<family_id>.<jti>.<random>" strings, random being
       32 bytes from secrets. Only HMAC-SHA256(SECRET_KEY, token) is stored, so
       a database leak alone does not yield usable tokens. The hash is
       deterministic, which gives O(1) lookup by hash [H4]. bcrypt's slowness is
       unnecessary for 256-bit random secrets.

Layer rule: no imports from api/. Settings from core/ are read only in
from_settings(); everything else arrives through the constructor.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Sequence
from dataclasses import replace
from datetime import timedelta
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.clock import Clock, utcnow
from auth.errors import (
    AudienceMismatchError,
    IssuerMismatchError,
    TokenExpiredError,
    TokenInvalidError,
)
from auth.keystore import KeystoreManager
from auth.models import AccessTokenClaims, ClaimsInput, RefreshMeta, RefreshTokenRecord, TokenPair
from auth.store import RefreshTokenStore

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("keyward.auth.tokens")

# python-jose checks are switched off; the service checks these itself below.
_DECODE_OPTIONS = {
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "verify_iss": False,
}


# ---------------------------------------------------------------------------
# Refresh token helpers
# ---------------------------------------------------------------------------


def hash_refresh_token(secret_key: str, token: str) -> str:
    """Return HMAC-SHA256(secret_key, token) as hex."""
    return hmac.new(secret_key.encode(), token.encode(), hashlib.sha256).hexdigest()


def split_refresh_token(token: str) -> tuple[str, str] | None:
    """Return (family_id, jti) from an opaque refresh token, or None if malformed.

    For logging and audit only. The database lookup is always by hash.
    """
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        return None
    return parts[0], parts[1]


def _new_identifier() -> str:
    return secrets.token_hex(16)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class JwtTokenService:
    """Issues and verifies access tokens; mints and persists refresh tokens.

    Usage:
        service = JwtTokenService.from_settings(keystore, store, settings)
        pair = service.issue_token_pair(user.id)
        claims = service.verify_access_token(pair.access_token)
    """

    def __init__(
        self,
        keystore: KeystoreManager,
        refresh_store: RefreshTokenStore,
        *,
        secret_key: str,
        issuer: str,
        audience: str | None = None,
        access_ttl_seconds: int = 600,
        refresh_ttl_seconds: int = 30 * 86400,
        clock_skew_seconds: int = 60,
        include_org_role: bool = False,
        clock: Clock = utcnow,
    ) -> None:
        self.keystore = keystore
        self._refresh_store = refresh_store
        self._secret_key = secret_key
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.clock_skew_seconds = clock_skew_seconds
        self.include_org_role = include_org_role
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        keystore: KeystoreManager,
        refresh_store: RefreshTokenStore,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> "JwtTokenService":
        return cls(
            keystore,
            refresh_store,
            secret_key=settings.secret_key,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience or None,
            access_ttl_seconds=settings.access_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_ttl_seconds,
            clock_skew_seconds=settings.jwt_clock_skew_seconds,
            include_org_role=settings.jwt_include_org_role,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, claims_input: ClaimsInput) -> tuple[str, AccessTokenClaims]:
        """Sign a new access token with the active key. Returns (token, claims)."""
        key = self.keystore.get_active_key()
        iat = int(self._clock().timestamp())
        claims = AccessTokenClaims(
            sub=claims_input.sub,
            iss=self.issuer,
            aud=self.audience,
            iat=iat,
            exp=iat + self.access_ttl_seconds,
            sid=claims_input.sid,
            org=claims_input.org if self.include_org_role else None,
            role=claims_input.role if self.include_org_role else None,
        )
        payload = {k: v for k, v in vars(claims).items() if v is not None}
        token = jwt.encode(payload, key.private_key, algorithm=key.alg, headers={"kid": key.kid, "typ": "JWT"})
        return token, claims

    def verify_access_token(
        self,
        token: str,
        *,
        issuer: str | None = None,
        audience: str | Sequence[str] | None = None,
        clock_skew: int | None = None,
    ) -> AccessTokenClaims:
        """Verify signature, time claims, issuer and audience. Returns the claims.

        issuer / audience default to the service's configured values; an
        empty configured value disables that check. clock_skew defaults to
        the configured allowance and applies to both exp and nbf.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenInvalidError("Malformed token header") from exc
        kid = header.get("kid")
        if not kid:
            raise TokenInvalidError("Token header has no kid")
        key = self.keystore.find_verification_key(kid)
        if header.get("alg") != key.alg:
            raise TokenInvalidError("Token alg does not match key alg")
        try:
            payload = jwt.decode(token, key.public_key, algorithms=[key.alg], options=_DECODE_OPTIONS)
        except JWTError as exc:
            raise TokenInvalidError("Signature verification failed") from exc

        skew = self.clock_skew_seconds if clock_skew is None else clock_skew
        now = int(self._clock().timestamp())
        exp = payload.get("exp")
        iat = payload.get("iat")
        nbf = payload.get("nbf")
        sub = payload.get("sub")
        if not isinstance(exp, (int, float)) or not isinstance(iat, (int, float)):
            raise TokenInvalidError("Token is missing exp or iat")
        if not isinstance(sub, str) or not sub:
            raise TokenInvalidError("Token is missing sub")
        if now >= exp + skew:
            raise TokenExpiredError("Token has expired")
        if nbf is not None and (not isinstance(nbf, (int, float)) or now + skew < nbf):
            raise TokenInvalidError("Token is not yet valid")

        expected_iss = issuer if issuer is not None else self.issuer
        if expected_iss and payload.get("iss") != expected_iss:
            raise IssuerMismatchError("Unexpected token issuer")

        expected_aud = audience if audience is not None else self.audience
        if expected_aud:
            wanted = {expected_aud} if isinstance(expected_aud, str) else set(expected_aud)
            presented = payload.get("aud")
            present = {presented} if isinstance(presented, str) else set(presented or [])
            if not wanted & present:
                raise AudienceMismatchError("Unexpected token audience")

        return AccessTokenClaims(
            sub=sub,
            iss=payload.get("iss", ""),
            iat=int(iat),
            exp=int(exp),
            aud=payload.get("aud"),
            sid=payload.get("sid"),
            org=payload.get("org"),
            role=payload.get("role"),
            nbf=int(nbf) if nbf is not None else None,
        )

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def hash_token(self, token: str) -> str:
        return hash_refresh_token(self._secret_key, token)

    def mint_refresh_record(
        self,
        user_id: str,
        family_id: str,
        *,
        parent_jti: str | None = None,
        meta: RefreshMeta | None = None,
    ) -> tuple[str, RefreshTokenRecord]:
        """Build an unsaved record and its opaque secret. Returns (token, record)."""
        meta = meta or RefreshMeta()
        now = self._clock()
        jti = _new_identifier()
        token = f"{family_id}.{jti}.{secrets.token_urlsafe(32)}"
        record = RefreshTokenRecord(
            family_id=family_id,
            jti=jti,
            user_id=user_id,
            token_hash=self.hash_token(token),
            expires_at=now + timedelta(seconds=self.refresh_ttl_seconds),
            parent_jti=parent_jti,
            session_id=meta.session_id,
            ip=meta.ip,
            user_agent=meta.user_agent,
            created_at=now,
        )
        return token, record

    def issue_refresh_token(self, user_id: str, meta: RefreshMeta | None = None) -> str:
        """Start a new family: persist a root record and return the opaque secret (never the hash)."""
        token, record = self.mint_refresh_record(user_id, _new_identifier(), meta=meta)
        self._refresh_store.save(record)
        logger.debug("Refresh family %s**** started for user %s", record.family_id[:8], user_id)
        return token

    def issue_token_pair(
        self,
        user_id: str,
        *,
        session_id: str | None = None,
        org: str | None = None,
        role: str | None = None,
        meta: RefreshMeta | None = None,
    ) -> TokenPair:
        meta = meta or RefreshMeta()
        if session_id and not meta.session_id:
            meta = replace(meta, session_id=session_id)
        access_token, _claims = self.issue_access_token(
            ClaimsInput(sub=user_id, sid=meta.session_id, org=org, role=role)
        )
        refresh_token = self.issue_refresh_token(user_id, meta)
        family_id, _jti = split_refresh_token(refresh_token)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_in=self.access_ttl_seconds,
            refresh_expires_in=self.refresh_ttl_seconds,
            family_id=family_id,
        )
