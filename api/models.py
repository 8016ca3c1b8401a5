"""
API request and response models for keyward REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import IssuedCredentials, RotationResult, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@" with something on both sides and a dot in the
# domain. Ownership is proven by the verification token, not by syntax.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt reads only 72 bytes; argon2 has no practical limit. The cap bounds
# hashing work per request.
PASSWORD_MAX_LENGTH = 128


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _EmailModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=320, pattern=EMAIL_PATTERN)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


class RegisterRequest(_EmailModel):
    """Request body for POST /api/v1/auth/register."""

    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    name: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(_EmailModel):
    """Request body for POST /api/v1/auth/login."""

    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh and /logout.

    Browser clients send nothing and rely on the keyward_refresh cookie.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=512)


class PasswordResetRequest(_EmailModel):
    """Request body for POST /api/v1/auth/password/reset-request."""


class PasswordResetConfirm(_EmailModel):
    """Request body for POST /api/v1/auth/password/reset."""

    token: str = Field(min_length=1, max_length=512)
    new_password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class EmailVerifyRequest(_EmailModel):
    """Request body for POST /api/v1/auth/email/verify."""

    token: str = Field(min_length=1, max_length=512)


class MagicLinkRequest(_EmailModel):
    """Request body for POST /api/v1/auth/magic-link/request.

    redirect_to is where the link lands after sign-in. Anything but a
    same-site relative path is dropped.
    """

    redirect_to: Optional[str] = Field(default=None, max_length=2048)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. password_hash never leaves the server."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: Optional[str] = None
    image: Optional[str] = None
    role: str
    email_verified: bool

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            image=user.image,
            role=user.role,
            email_verified=user.email_verified_at is not None,
        )


class TokenResponse(BaseModel):
    """Access/refresh pair for the jwt strategy (POST /auth/refresh)."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int

    @classmethod
    def from_rotation(cls, result: RotationResult) -> "TokenResponse":
        return cls(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.access_expires_in,
            refresh_expires_in=result.refresh_expires_in,
        )


class AuthResponse(BaseModel):
    """Response for login, register and the session endpoint.

    Exactly one of session_expires_at (database strategy) or tokens (jwt
    strategy) is set.
    """

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    strategy: str
    session_expires_at: Optional[datetime] = None
    tokens: Optional[TokenResponse] = None

    @classmethod
    def build(cls, user: User, credentials: IssuedCredentials) -> "AuthResponse":
        tokens = None
        if credentials.tokens is not None:
            pair = credentials.tokens
            tokens = TokenResponse(
                access_token=pair.access_token,
                refresh_token=pair.refresh_token,
                token_type=pair.token_type,
                expires_in=pair.access_expires_in,
                refresh_expires_in=pair.refresh_expires_in,
            )
        return cls(
            user=UserResponse.from_user(user),
            strategy=credentials.strategy,
            session_expires_at=credentials.session.expires_at if credentials.session is not None else None,
            tokens=tokens,
        )


class SessionResponse(BaseModel):
    """Response for GET /api/v1/auth/session."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    strategy: str
    expires_at: Optional[datetime] = None


class CsrfResponse(BaseModel):
    """Response for GET /api/v1/auth/csrf. The same value is set in the keyward_csrf cookie."""

    model_config = ConfigDict(frozen=True)

    csrf_token: str


class OAuthProviderInfo(BaseModel):
    """One entry in GET /api/v1/auth/providers."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    start_url: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
