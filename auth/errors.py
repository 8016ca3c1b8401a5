"""
auth/errors.py -- Closed error taxonomy for the auth core.

Every failure the core can report is one member of ErrorKind and is raised as
the matching AuthError subclass. Callers branch on exc.kind (or the subclass),
never on message text.

Storage failures are translated into StorageUniqueViolationError or
StorageConnectionError at the adapter boundary (auth/store.py) and surface
unchanged through the core. The core never retries: a failed rotation is
final and the client must re-authenticate.

to_payload() is what the HTTP layer writes to the response body. It carries
only the public code and message. OAuth handshake failures share one public
code ("authentication_failed") so a caller cannot tell a forged state from a
provider outage [H5].

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TOKEN_INVALID = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"
    TOKEN_REVOKED = "token_revoked"
    KEY_NOT_FOUND = "key_not_found"
    KEY_NOT_CONFIGURED = "key_not_configured"
    SESSION_NOT_FOUND = "session_not_found"
    STATE_MISMATCH = "state_mismatch"
    PROVIDER_ERROR = "provider_error"
    PROFILE_FETCH_FAILED = "profile_fetch_failed"
    CREDENTIAL_INVALID = "credential_invalid"
    ISSUER_MISMATCH = "issuer_mismatch"
    AUDIENCE_MISMATCH = "audience_mismatch"
    STORAGE_UNIQUE_VIOLATION = "storage_unique_violation"
    STORAGE_CONNECTION_ERROR = "storage_connection_error"
    CSRF_REJECTED = "csrf_rejected"
    ACCOUNT_LINK_CONFLICT = "account_link_conflict"
    USER_NOT_FOUND = "user_not_found"


class AuthError(Exception):
    """Base class for every error raised by the auth core.

    Subclasses fix kind, status_code and public_message. The constructor
    message is internal detail for logs only and is never sent to clients.
    """

    kind: ErrorKind = ErrorKind.TOKEN_INVALID
    status_code: int = 401
    public_code: str | None = None
    public_message: str = "Authentication required."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)

    @property
    def code(self) -> str:
        return self.public_code or self.kind.value

    def to_payload(self) -> dict[str, str]:
        """Return a JSON-serialisable payload without internal detail."""
        return {"code": self.code, "message": self.public_message}


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenInvalidError(AuthError):
    kind = ErrorKind.TOKEN_INVALID
    public_message = "Token is invalid."


class TokenExpiredError(AuthError):
    kind = ErrorKind.TOKEN_EXPIRED
    public_message = "Token has expired."


class TokenReuseDetectedError(AuthError):
    """A rotated refresh token was presented again. The whole family is revoked."""

    kind = ErrorKind.TOKEN_REUSE_DETECTED
    public_message = "Token has been revoked. Please sign in again."

    def __init__(self, family_id: str, message: str | None = None) -> None:
        super().__init__(message)
        self.family_id = family_id


class TokenRevokedError(AuthError):
    kind = ErrorKind.TOKEN_REVOKED
    public_message = "Token has been revoked. Please sign in again."


class IssuerMismatchError(AuthError):
    kind = ErrorKind.ISSUER_MISMATCH
    public_message = "Token is invalid."


class AudienceMismatchError(AuthError):
    kind = ErrorKind.AUDIENCE_MISMATCH
    public_message = "Token is invalid."


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


class KeyNotFoundError(AuthError):
    kind = ErrorKind.KEY_NOT_FOUND
    public_message = "Token is invalid."


class KeyNotConfiguredError(AuthError):
    """No active signing key. Fatal at startup."""

    kind = ErrorKind.KEY_NOT_CONFIGURED
    status_code = 500
    public_message = "Signing keys are not configured."


# ---------------------------------------------------------------------------
# Sessions / credentials
# ---------------------------------------------------------------------------


class SessionNotFoundError(AuthError):
    kind = ErrorKind.SESSION_NOT_FOUND
    public_message = "Session not found or expired."


class CredentialInvalidError(AuthError):
    kind = ErrorKind.CREDENTIAL_INVALID
    public_message = "Invalid email or password."


class CsrfRejectedError(AuthError):
    kind = ErrorKind.CSRF_REJECTED
    status_code = 403
    public_message = "CSRF token missing or invalid."


class UserNotFoundError(AuthError):
    kind = ErrorKind.USER_NOT_FOUND
    status_code = 404
    public_message = "User not found."


# ---------------------------------------------------------------------------
# OAuth [H5] -- all three share the generic public code
# ---------------------------------------------------------------------------


class StateMismatchError(AuthError):
    kind = ErrorKind.STATE_MISMATCH
    public_code = "authentication_failed"
    public_message = "Authentication failed. Please try again."


class ProviderError(AuthError):
    kind = ErrorKind.PROVIDER_ERROR
    public_code = "authentication_failed"
    public_message = "Authentication failed. Please try again."


class ProfileFetchFailedError(AuthError):
    kind = ErrorKind.PROFILE_FETCH_FAILED
    public_code = "authentication_failed"
    public_message = "Authentication failed. Please try again."


class AccountLinkConflictError(AuthError):
    kind = ErrorKind.ACCOUNT_LINK_CONFLICT
    status_code = 409
    public_message = "This sign-in conflicts with an existing account."


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageUniqueViolationError(AuthError):
    kind = ErrorKind.STORAGE_UNIQUE_VIOLATION
    status_code = 409
    public_message = "Resource already exists."


class StorageConnectionError(AuthError):
    """Transient storage failure. Callers may retry with their own policy."""

    kind = ErrorKind.STORAGE_CONNECTION_ERROR
    status_code = 503
    public_message = "Service temporarily unavailable."
