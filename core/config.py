"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for keyward happen here. No module should
call os.getenv() or os.environ.get() directly. Composition roots (api/main.py,
main.py) call get_settings() once and pass the Settings object, or the values
taken from it, into every component they construct. Components never call
get_settings() themselves, so tests can build them with any configuration.

Design patterns used:
  Cached factory via lru_cache: get_settings() instantiates Settings once at
      first call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, session_strategy -> SESSION_STRATEGY).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. The refresh token
       hash, OAuth state signature and verification token hash are all
       HMAC-SHA256 keyed by it.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would silently invalidate every
       stored refresh token hash on restart.

  [M8] SameSite=None cookies are only honoured by browsers when Secure is also
       set, so COOKIE_SAMESITE=none forces secure_cookies on.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import re
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("keyward.config")

# ---------------------------------------------------------------------------
# Duration strings ("10m", "1h", "30d")
# ---------------------------------------------------------------------------

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw])\s*$", re.IGNORECASE)

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}


def parse_duration(value: str | int) -> int:
    """Convert a duration such as "10m", "1h" or "30d" into seconds.

    Bare integers (or digit-only strings) are taken as seconds. Raises
    ValueError for anything else so a typo in .env fails at startup rather than
    producing tokens that never expire.
    """
    if isinstance(value, int):
        if value <= 0:
            raise ValueError(f"Duration must be positive, got {value!r}")
        return value
    text = value.strip()
    if text.isdigit():
        return parse_duration(int(text))
    match = _DURATION_RE.match(text)
    if match is None:
        raise ValueError(f"Invalid duration {value!r}; expected e.g. '15m', '1h', '30d'")
    amount, unit = match.groups()
    seconds = int(amount) * _UNIT_SECONDS[unit.lower()]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive, got {value!r}")
    return seconds


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true). The
    model_validator enforces production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///keyward.db"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    # Selected once at startup by auth.strategy.build_strategy().
    session_strategy: Literal["database", "jwt"] = "database"
    session_ttl_minutes: int = 60
    session_rolling: bool = True

    # ------------------------------------------------------------------
    # JWT
    # ------------------------------------------------------------------

    jwt_issuer: str = "keyward"
    jwt_audience: str = "keyward"
    jwt_algorithm: Literal["ES256", "RS256"] = "ES256"
    jwt_access_ttl: str = "10m"
    jwt_refresh_ttl: str = "30d"
    jwt_clock_skew_seconds: int = 60
    jwt_include_org_role: bool = False

    # ------------------------------------------------------------------
    # Keystore
    # ------------------------------------------------------------------

    # Empty string keeps the keystore in memory only (keys regenerate on restart).
    keystore_path: str = ""
    key_retention: int = 3
    key_rotation_days: int = 90
    key_overlap_days: int = 7

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    cookie_samesite: Literal["lax", "strict", "none"] = "lax"
    cookie_domain: str = ""

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    base_url: str = "http://localhost:8000"
    oauth_callback_path: str = "/api/v1/auth/oauth/{provider}/callback"
    oauth_state_ttl_seconds: int = 600
    oauth_timeout_seconds: float = 10.0
    # Link a first-time provider login to an existing local user with the same
    # email. Only applied when the provider reports the email as verified [H1].
    oauth_link_by_email: bool = True

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    # Issuer URL; endpoints are read from its /.well-known/openid-configuration.
    # Explicit URLs below override the discovered ones.
    oidc_issuer: str = ""
    oidc_authorization_url: str = ""
    oidc_token_url: str = ""
    oidc_userinfo_url: str = ""
    oidc_display_name: str = "SSO"

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    password_hasher: Literal["bcrypt", "argon2id"] = "bcrypt"
    bcrypt_rounds: int = 12
    password_min_length: int = 8
    verification_token_ttl_minutes: int = 60
    password_reset_ttl_minutes: int = 30

    # ------------------------------------------------------------------
    # Magic links (passwordless email sign-in)
    # ------------------------------------------------------------------

    magic_link_enabled: bool = True
    magic_link_ttl_minutes: int = 15
    # Create a user for an unknown address on first use. Also needs
    # SELF_REGISTRATION_ENABLED.
    magic_link_auto_create_user: bool = True
    magic_link_verify_path: str = "/api/v1/auth/magic-link/verify"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # Host header allow-list for TrustedHostMiddleware. Restrict in production.
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    register_rate_limit: str = "5/minute"
    refresh_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Registration / maintenance
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    cleanup_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def access_ttl_seconds(self) -> int:
        return parse_duration(self.jwt_access_ttl)

    @property
    def refresh_ttl_seconds(self) -> int:
        return parse_duration(self.jwt_refresh_ttl)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Refresh tokens and OAuth state will not survive restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Refresh tokens will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_durations(self) -> "Settings":
        """Fail at startup on malformed TTL strings instead of at first login."""
        parse_duration(self.jwt_access_ttl)
        parse_duration(self.jwt_refresh_ttl)
        if self.session_ttl_minutes <= 0:
            raise ValueError("SESSION_TTL_MINUTES must be positive.")
        if self.key_retention < 0:
            raise ValueError("KEY_RETENTION must not be negative.")
        if self.magic_link_ttl_minutes <= 0:
            raise ValueError("MAGIC_LINK_TTL_MINUTES must be positive.")
        return self

    @model_validator(mode="after")
    def validate_cookie_policy(self) -> "Settings":
        """SameSite=None requires Secure [M8]."""
        if self.cookie_samesite == "none" and not self.secure_cookies:
            logger.warning("COOKIE_SAMESITE=none requires Secure cookies; enabling SECURE_COOKIES.")
            self.secure_cookies = True
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings instance.

    Only composition roots call this. In tests, construct Settings(...)
    directly, or call get_settings.cache_clear() after changing the environment.
    """
    return Settings()
