"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these classes only own the shape of the data.

All timestamps are timezone-aware UTC datetimes. auth/store.py converts them
to and from fixed-width ISO-8601 strings at the persistence boundary.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@dataclass
class User:
    """A local identity.

    password_hash is None for OAuth-only users (they have no local password).
    It is a tagged digest ("bcrypt:...", "argon2id:...") produced by
    auth.hasher.TaggedHasher.
    """

    email: str
    id: str | None = None
    name: str | None = None
    image: str | None = None
    password_hash: str | None = None
    role: str = "user"
    email_verified_at: datetime | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Account:
    """A provider identity linked to a local user.

    (provider, provider_account_id) is unique: one provider identity maps to
    exactly one local user.
    """

    user_id: str
    provider: str  # "github", "google", "oidc"
    provider_account_id: str  # provider's stable user ID
    id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    id_token: str | None = None


# ---------------------------------------------------------------------------
# Sessions (database strategy)
# ---------------------------------------------------------------------------


@dataclass
class Session:
    """An opaque server-side session. The id is the bearer credential.

    Invariant: expires_at > created_at. An expired session is treated as
    absent at read time whether or not a sweep has removed it.
    """

    id: str
    user_id: str
    expires_at: datetime
    created_at: datetime
    updated_at: datetime | None = None
    # Sliding window for rolling sessions; None means "use the manager default".
    ttl_seconds: int | None = None
    rolling: bool = False


# ---------------------------------------------------------------------------
# Signing keys
# ---------------------------------------------------------------------------


@dataclass
class SigningKey:
    """The active key pair. private_key and public_key are PEM strings."""

    kid: str
    alg: str
    private_key: str
    public_key: str
    created_at: datetime


@dataclass
class RetiredKey:
    """A previous key, kept for verification only until expires_at."""

    kid: str
    alg: str
    public_key: str
    retired_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class VerificationKey:
    kid: str
    alg: str
    public_key: str


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


@dataclass
class ClaimsInput:
    """Caller-supplied claims for issue_access_token(). iat/exp are added by the service."""

    sub: str
    sid: str | None = None
    org: str | None = None
    role: str | None = None


@dataclass(frozen=True)
class AccessTokenClaims:
    """Verified claim set of an access token. Immutable once issued."""

    sub: str
    iss: str
    iat: int
    exp: int
    aud: str | list[str] | None = None
    sid: str | None = None
    org: str | None = None
    role: str | None = None
    nbf: int | None = None


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


@dataclass
class RefreshTokenRecord:
    """One link in a refresh token family.

    States:
      current  -- rotated_at is None and revoked_at is None
      rotated  -- rotated_at set (exactly once, never cleared)
      revoked  -- revoked_at set; terminal for the whole family

    token_hash is HMAC-SHA256(SECRET_KEY, opaque token). The opaque token
    itself is never persisted.
    """

    family_id: str
    jti: str
    user_id: str
    token_hash: str
    expires_at: datetime
    parent_jti: str | None = None  # None for the family root
    session_id: str | None = None
    rotated_at: datetime | None = None
    revoked_at: datetime | None = None
    ip: str | None = None
    user_agent: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class RefreshMeta:
    """Request metadata recorded on each refresh token record."""

    session_id: str | None = None
    ip: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
    family_id: str
    token_type: str = "bearer"


@dataclass(frozen=True)
class RotationResult:
    access_token: str
    refresh_token: str
    user_id: str
    family_id: str
    jti: str
    parent_jti: str
    access_expires_in: int
    refresh_expires_in: int
    session_id: str | None = None
    token_type: str = "bearer"


# ---------------------------------------------------------------------------
# Verification tokens (email verification, password reset)
# ---------------------------------------------------------------------------


@dataclass
class VerificationToken:
    """A single-use token. Only the HMAC hash is stored."""

    identifier: str  # e.g. "verify:alice@example.com", "reset:alice@example.com"
    token_hash: str
    expires_at: datetime
    id: str | None = None
    created_at: datetime | None = None
    consumed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Strategy results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuedCredentials:
    """What a SessionStrategy hands back after a successful authentication.

    Exactly one of session / tokens is set, depending on the strategy.
    """

    strategy: str  # "database" or "jwt"
    user_id: str
    session: Session | None = None
    tokens: TokenPair | None = None


@dataclass(frozen=True)
class AuthContext:
    """The verified identity behind a request credential."""

    user_id: str
    strategy: str
    session_id: str | None = None
    expires_at: datetime | None = None
    claims: AccessTokenClaims | None = None


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str
    token_type: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None
    id_token: str | None = None


@dataclass(frozen=True)
class OAuthProfile:
    """Provider profile normalized to the fields the core needs."""

    provider_account_id: str
    email: str | None = None
    email_verified: bool = False
    name: str | None = None
    image: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
